"""Billing-cycle rollover for credit accounts."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.credit_accounts import AccountBalance, add_months, as_utc, compare_and_set, ensure_account, load_balance, utc_now
from services.credit_errors import LedgerBusy, store_errors
from services.credit_metadata import ForfeitureMetadata
from services.credit_transactions import append_transaction

logger = logging.getLogger(__name__)

ROLLOVER_NAMESPACE = uuid.UUID("6f1c8a52-1d0e-4b7c-9a51-3f2e9d7c4b10")


def rollover_cap(balance: AccountBalance) -> int:
    return max(int(settings.BONUS_ROLLOVER_CAP_CYCLES), 0) * balance.monthly_credits_per_cycle


def split_rollover(balance: AccountBalance) -> Tuple[int, int]:
    """Return ``(carried_over, forfeited)`` unused bonus for a cycle boundary."""
    unused = balance.remaining_bonus
    if balance.unlimited:
        return unused, 0
    forfeited = max(unused - rollover_cap(balance), 0)
    return unused - forfeited, forfeited


def forfeiture_request_id(user_id: str, cycle_end_at: datetime) -> str:
    """One forfeiture key per user and cycle boundary."""
    return str(uuid.uuid5(ROLLOVER_NAMESPACE, f"{user_id}:{as_utc(cycle_end_at).isoformat()}"))


def next_window(balance: AccountBalance, now: datetime) -> Tuple[datetime, datetime]:
    period = max(int(settings.BILLING_PERIOD_MONTHS), 1)
    start, end = balance.cycle_start_at, balance.cycle_end_at
    while end <= now:
        start, end = end, add_months(end, period)
    return start, end


async def reset_cycle(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Roll the account into its current billing cycle if the old one ended.

    Deferred while any reservation is outstanding; those holds are settled
    against the old cycle first.
    """
    current_time = as_utc(now) if now else utc_now()
    await ensure_account(user_id, db)

    async with store_errors("reset_cycle"):
        for _ in range(max(int(settings.CREDIT_LEDGER_MAX_RETRIES), 1)):
            balance = await load_balance(user_id, db)
            if current_time < balance.cycle_end_at:
                return {"reset": False, "reason": "cycle_active"}
            if balance.has_outstanding_reservations:
                logger.info(
                    "Deferring cycle reset for user %s: %s monthly / %s bonus still reserved",
                    user_id,
                    balance.reserved_monthly,
                    balance.reserved_bonus,
                )
                return {"reset": False, "reason": "reservations_outstanding"}

            start, end = next_window(balance, current_time)
            carried, forfeited = split_rollover(balance)
            updated = balance.evolve(
                monthly_credits_used=0,
                reserved_monthly=0,
                bonus_credits_used=balance.bonus_credits_used + forfeited,
                cycle_start_at=start,
                cycle_end_at=end,
            )
            if not await compare_and_set(db, balance, updated):
                await db.rollback()
                continue

            if forfeited:
                try:
                    await append_transaction(
                        user_id,
                        db,
                        transaction_type="usage",
                        request_id=forfeiture_request_id(user_id, balance.cycle_end_at),
                        amount=-forfeited,
                        bonus_amount=forfeited,
                        balance=updated,
                        description="Bonus credits above rollover cap forfeited",
                        metadata=ForfeitureMetadata(
                            rollover_cap=rollover_cap(balance),
                            carried_over=carried,
                            forfeited=forfeited,
                            previous_cycle_end_at=balance.cycle_end_at.isoformat(),
                        ),
                    )
                except IntegrityError:
                    await db.rollback()
                    continue

            await db.commit()
            logger.info(
                "Reset credit cycle for user %s to %s..%s (bonus carried=%s forfeited=%s)",
                user_id,
                start.isoformat(),
                end.isoformat(),
                carried,
                forfeited,
            )
            return {
                "reset": True,
                "cycle_start_at": start.isoformat(),
                "cycle_end_at": end.isoformat(),
                "carried_over": carried,
                "forfeited": forfeited,
            }

    raise LedgerBusy(f"Cycle reset for user {user_id} kept losing to concurrent writers")
