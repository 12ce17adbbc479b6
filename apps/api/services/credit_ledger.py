"""Credit reservation engine: reserve, commit, release.

Every mutation is one unit of work against the account row. The row lock
is taken before the request's log entries are read, so the state a decision
rests on cannot change underneath it. The write is a compare-and-set on the
row version plus the matching log insert, committed together. A lost
compare-and-set or a duplicate ``(user, request, type)`` insert rolls the
unit back and the operation re-runs from a fresh read, where the idempotency
checks pick up whatever the winning worker wrote.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.credit_accounts import AccountBalance, compare_and_set, ensure_account, load_balance
from services.credit_cycle import reset_cycle
from services.credit_errors import InvalidLedgerRequest, LedgerBusy, store_errors
from services.credit_metadata import CommitMetadata, ReleaseMetadata, ReservationMetadata, caller_extra
from services.credit_transactions import LedgerEntry, RequestState, append_transaction, get_request_state, normalize_request_id

logger = logging.getLogger(__name__)


def ledger_attempts() -> range:
    return range(max(int(settings.CREDIT_LEDGER_MAX_RETRIES), 1))


def is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def balance_payload(balance: AccountBalance) -> Dict[str, Any]:
    return {
        "remaining_monthly": balance.remaining_monthly,
        "remaining_bonus": balance.remaining_bonus,
        "tier": balance.tier,
    }


def entry_balance_payload(entry: LedgerEntry, tier: str) -> Dict[str, Any]:
    """Balances exactly as reported when ``entry`` was written."""
    return {
        "remaining_monthly": int(entry.balance_monthly_after or 0),
        "remaining_bonus": int(entry.balance_bonus_after or 0),
        "tier": tier,
    }


def reservation_feature(state: RequestState) -> Optional[str]:
    if state.reservation is None:
        return None
    return state.reservation.details.feature


async def get_status(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Current balance summary, after applying any due cycle reset."""
    await ensure_account(user_id, db)
    await reset_cycle(user_id, db)
    async with store_errors("status"):
        balance = await load_balance(user_id, db)
    return balance.to_status()


async def reserve(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    request_id: Any,
    feature: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Hold ``amount`` credits for ``request_id``, monthly pool first."""
    key = normalize_request_id(request_id)
    if not is_positive_int(amount):
        raise InvalidLedgerRequest("amount must be a positive integer")
    feature_name = str(feature or "").strip() or "unspecified"
    extra = caller_extra(metadata)

    await ensure_account(user_id, db)
    await reset_cycle(user_id, db)

    async with store_errors("reserve"):
        for _ in ledger_attempts():
            balance = await load_balance(user_id, db, for_update=True)
            state = await get_request_state(user_id, key, db)
            if state.reservation is not None:
                await db.rollback()
                return _existing_reservation(balance, state, amount)

            if balance.unlimited:
                use_monthly, use_bonus = 0, 0
            elif balance.remaining_total < amount:
                await db.rollback()
                logger.info(
                    "Insufficient credits for user %s: requested=%s monthly=%s bonus=%s",
                    user_id,
                    amount,
                    balance.remaining_monthly,
                    balance.remaining_bonus,
                )
                return {"ok": False, "reason": "insufficient_credits", **balance_payload(balance)}
            else:
                use_monthly = min(balance.remaining_monthly, amount)
                use_bonus = amount - use_monthly

            updated = balance.evolve(
                reserved_monthly=balance.reserved_monthly + use_monthly,
                reserved_bonus=balance.reserved_bonus + use_bonus,
            )
            if not await compare_and_set(db, balance, updated):
                await db.rollback()
                continue
            try:
                await append_transaction(
                    user_id,
                    db,
                    transaction_type="reservation",
                    request_id=key,
                    amount=-(use_monthly + use_bonus),
                    monthly_amount=use_monthly,
                    bonus_amount=use_bonus,
                    balance=updated,
                    description=f"Credit reservation ({feature_name})",
                    metadata=ReservationMetadata(
                        feature=feature_name,
                        requested_amount=amount,
                        reserved_monthly=use_monthly,
                        reserved_bonus=use_bonus,
                        unlimited=balance.unlimited,
                        extra=extra,
                    ),
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                continue

            logger.info(
                "Reserved %s credits for user %s request %s (monthly=%s bonus=%s feature=%s)",
                amount,
                user_id,
                key,
                use_monthly,
                use_bonus,
                feature_name,
            )
            return {
                "ok": True,
                "request_id": key,
                "reserved_monthly": use_monthly,
                "reserved_bonus": use_bonus,
                **balance_payload(updated),
            }

    raise LedgerBusy(f"Reservation for user {user_id} kept losing to concurrent writers")


def _existing_reservation(balance: AccountBalance, state: RequestState, amount: int) -> Dict[str, Any]:
    reservation = state.reservation
    if state.status != "reserved":
        raise InvalidLedgerRequest(f"request_id {state.request_id} was already {state.status}; use a new request_id")
    requested = reservation.details.requested_amount
    if requested != amount:
        raise InvalidLedgerRequest(
            f"request_id {state.request_id} is already reserved for {requested} credits, not {amount}"
        )
    return {
        "ok": True,
        "idempotent": True,
        "request_id": state.request_id,
        "reserved_monthly": reservation.monthly_amount,
        "reserved_bonus": reservation.bonus_amount,
        **balance_payload(balance),
    }


async def commit(
    user_id: str,
    db: AsyncSession,
    *,
    request_id: Any,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Finalize an outstanding reservation as used credits."""
    key = normalize_request_id(request_id)
    extra = caller_extra(metadata)

    await ensure_account(user_id, db)
    await reset_cycle(user_id, db)

    async with store_errors("commit"):
        for _ in ledger_attempts():
            balance = await load_balance(user_id, db, for_update=True)
            state = await get_request_state(user_id, key, db)
            if state.commit is not None:
                await db.rollback()
                return {
                    "ok": True,
                    "idempotent": True,
                    "request_id": key,
                    "committed_monthly": state.commit.monthly_amount,
                    "committed_bonus": state.commit.bonus_amount,
                    **entry_balance_payload(state.commit, balance.tier),
                }
            if state.status != "reserved":
                await db.rollback()
                outcome = {"ok": False, "reason": "missing_reservation", "request_id": key, "status": state.status}
                if state.release is not None:
                    outcome["released_by"] = state.release.details.released_by
                return outcome

            reservation = state.reservation
            monthly, bonus = reservation.monthly_amount, reservation.bonus_amount
            updated = balance.evolve(
                monthly_credits_used=balance.monthly_credits_used + monthly,
                bonus_credits_used=balance.bonus_credits_used + bonus,
                reserved_monthly=max(balance.reserved_monthly - monthly, 0),
                reserved_bonus=max(balance.reserved_bonus - bonus, 0),
            )
            if not await compare_and_set(db, balance, updated):
                await db.rollback()
                continue
            try:
                await append_transaction(
                    user_id,
                    db,
                    transaction_type="commit",
                    request_id=key,
                    amount=0,
                    monthly_amount=monthly,
                    bonus_amount=bonus,
                    balance=updated,
                    description="Credit usage committed",
                    metadata=CommitMetadata(
                        feature=reservation_feature(state),
                        committed_monthly=monthly,
                        committed_bonus=bonus,
                        extra=extra,
                    ),
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                continue

            logger.info("Committed %s credits for user %s request %s", monthly + bonus, user_id, key)
            return {
                "ok": True,
                "request_id": key,
                "committed_monthly": monthly,
                "committed_bonus": bonus,
                **balance_payload(updated),
            }

    raise LedgerBusy(f"Commit for user {user_id} kept losing to concurrent writers")


async def release(
    user_id: str,
    db: AsyncSession,
    *,
    request_id: Any,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    released_by: str = "caller",
) -> Dict[str, Any]:
    """Cancel an outstanding reservation without recording usage.

    A committed reservation cannot be released; callers must refund it.
    ``released_by`` marks releases issued by the stale sweep rather than the
    request's owner.
    """
    key = normalize_request_id(request_id)
    release_reason = str(reason or "").strip() or "Credit reservation released"
    extra = caller_extra(metadata)

    await ensure_account(user_id, db)
    await reset_cycle(user_id, db)

    async with store_errors("release"):
        for _ in ledger_attempts():
            balance = await load_balance(user_id, db, for_update=True)
            state = await get_request_state(user_id, key, db)
            if state.release is not None:
                await db.rollback()
                return {
                    "ok": True,
                    "reason": "already_released",
                    "request_id": key,
                    **entry_balance_payload(state.release, balance.tier),
                }
            if state.status != "reserved":
                await db.rollback()
                return {"ok": False, "reason": "missing_reservation", "request_id": key, "status": state.status}

            reservation = state.reservation
            monthly, bonus = reservation.monthly_amount, reservation.bonus_amount
            updated = balance.evolve(
                reserved_monthly=max(balance.reserved_monthly - monthly, 0),
                reserved_bonus=max(balance.reserved_bonus - bonus, 0),
            )
            if not await compare_and_set(db, balance, updated):
                await db.rollback()
                continue
            try:
                await append_transaction(
                    user_id,
                    db,
                    transaction_type="release",
                    request_id=key,
                    amount=monthly + bonus,
                    monthly_amount=monthly,
                    bonus_amount=bonus,
                    balance=updated,
                    description=release_reason,
                    metadata=ReleaseMetadata(
                        feature=reservation_feature(state),
                        reason=release_reason,
                        released_monthly=monthly,
                        released_bonus=bonus,
                        released_by=released_by,
                        extra=extra,
                    ),
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                continue

            logger.info("Released %s reserved credits for user %s request %s: %s", monthly + bonus, user_id, key, release_reason)
            return {"ok": True, "request_id": key, **balance_payload(updated)}

    raise LedgerBusy(f"Release for user {user_id} kept losing to concurrent writers")
