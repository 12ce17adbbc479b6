"""Privileged bonus-pool adjustments."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.credit_accounts import compare_and_set, ensure_account, load_balance
from services.credit_cycle import reset_cycle
from services.credit_errors import InvalidLedgerRequest, LedgerBusy, LedgerUnauthorized, store_errors
from services.credit_ledger import ledger_attempts
from services.credit_metadata import AdminAdjustmentMetadata, caller_extra
from services.credit_transactions import append_transaction, get_request_state, normalize_request_id

logger = logging.getLogger(__name__)


def is_ledger_admin(actor_id: Optional[str]) -> bool:
    actor = str(actor_id or "").strip()
    return bool(actor) and actor in {str(item).strip() for item in settings.LEDGER_ADMIN_USER_IDS}


async def admin_adjust_bonus(
    actor_id: str,
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
    request_id: Optional[Any] = None,
) -> Dict[str, Any]:
    """Add to or remove from a user's bonus pool, effective immediately.

    The total is clamped so it never drops below what is already used or
    reserved from the pool; the delta actually applied is logged.
    """
    if not is_ledger_admin(actor_id):
        logger.warning("Rejected bonus adjustment for user %s by non-admin actor %s", user_id, actor_id)
        raise LedgerUnauthorized("Admin capability required to adjust bonus credits")
    if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
        raise InvalidLedgerRequest("amount must be a non-zero integer")
    adjustment_reason = str(reason or "").strip()
    if not adjustment_reason:
        raise InvalidLedgerRequest("reason is required for admin adjustments")
    key = normalize_request_id(request_id) if request_id else str(uuid.uuid4())
    extra = caller_extra(metadata)

    await ensure_account(user_id, db)
    await reset_cycle(user_id, db)

    async with store_errors("admin_adjust_bonus"):
        for _ in ledger_attempts():
            balance = await load_balance(user_id, db, for_update=True)
            state = await get_request_state(user_id, key, db)
            previous = state.entries.get("admin_adjustment")
            if previous is not None:
                await db.rollback()
                recorded = previous.details
                return {
                    "ok": True,
                    "idempotent": True,
                    "request_id": key,
                    "new_bonus_total": recorded.new_bonus_total,
                    "applied_amount": recorded.applied_amount,
                    "requested_amount": recorded.requested_amount,
                    "remaining_bonus": int(previous.balance_bonus_after or 0),
                }

            floor = balance.bonus_credits_used + balance.reserved_bonus
            new_total = max(balance.bonus_credits_total + amount, floor, 0)
            applied = new_total - balance.bonus_credits_total
            updated = balance.evolve(bonus_credits_total=new_total)
            if not await compare_and_set(db, balance, updated):
                await db.rollback()
                continue
            try:
                await append_transaction(
                    user_id,
                    db,
                    transaction_type="admin_adjustment",
                    request_id=key,
                    amount=applied,
                    bonus_amount=abs(applied),
                    pool="bonus",
                    balance=updated,
                    description=adjustment_reason,
                    created_by=actor_id,
                    metadata=AdminAdjustmentMetadata(
                        actor_id=actor_id,
                        reason=adjustment_reason,
                        requested_amount=amount,
                        applied_amount=applied,
                        new_bonus_total=new_total,
                        extra=extra,
                    ),
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                continue

            logger.info(
                "Admin %s adjusted bonus credits for user %s by %s (requested %s): %s",
                actor_id,
                user_id,
                applied,
                amount,
                adjustment_reason,
            )
            return {
                "ok": True,
                "request_id": key,
                "new_bonus_total": new_total,
                "applied_amount": applied,
                "requested_amount": amount,
                "remaining_bonus": updated.remaining_bonus,
            }

    raise LedgerBusy(f"Bonus adjustment for user {user_id} kept losing to concurrent writers")
