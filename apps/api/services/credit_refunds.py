"""Refunds and failure reconciliation for credit reservations."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.credit_accounts import compare_and_set, ensure_account, load_balance
from services.credit_cycle import reset_cycle
from services.credit_errors import InvalidLedgerRequest, LedgerBusy, LedgerError, LedgerUnavailable, store_errors
from services.credit_ledger import (
    balance_payload,
    entry_balance_payload,
    ledger_attempts,
    release,
    reservation_feature,
)
from services.credit_metadata import FailureMetadata, RefundMetadata, caller_extra
from services.credit_transactions import append_transaction, get_request_state, normalize_request_id

logger = logging.getLogger(__name__)

RECOVERABLE_STORE_ERRORS = (LedgerUnavailable, LedgerBusy)


async def refund(
    user_id: str,
    db: AsyncSession,
    *,
    request_id: Any,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Reverse a committed reservation exactly once.

    Without a commit there is nothing to undo, and the call is a successful
    no-op so defensive repeats are always safe.
    """
    key = normalize_request_id(request_id)
    refund_reason = str(reason or "").strip() or "Credit usage refunded"
    extra = caller_extra(metadata)

    await ensure_account(user_id, db)
    await reset_cycle(user_id, db)

    async with store_errors("refund"):
        for _ in ledger_attempts():
            balance = await load_balance(user_id, db, for_update=True)
            state = await get_request_state(user_id, key, db)
            if state.refund is not None:
                await db.rollback()
                return {
                    "ok": True,
                    "reason": "already_refunded",
                    "refunded": False,
                    "request_id": key,
                    **entry_balance_payload(state.refund, balance.tier),
                }
            if state.commit is None:
                await db.rollback()
                return {
                    "ok": True,
                    "reason": "nothing_to_refund",
                    "refunded": False,
                    "request_id": key,
                    "status": state.status,
                    **balance_payload(balance),
                }

            committed = state.commit
            # Usage may already have been zeroed by a cycle reset since the commit.
            refund_monthly = min(committed.monthly_amount, balance.monthly_credits_used)
            refund_bonus = min(committed.bonus_amount, balance.bonus_credits_used)
            updated = balance.evolve(
                monthly_credits_used=balance.monthly_credits_used - refund_monthly,
                bonus_credits_used=balance.bonus_credits_used - refund_bonus,
            )
            if not await compare_and_set(db, balance, updated):
                await db.rollback()
                continue
            try:
                await append_transaction(
                    user_id,
                    db,
                    transaction_type="refund",
                    request_id=key,
                    amount=refund_monthly + refund_bonus,
                    monthly_amount=refund_monthly,
                    bonus_amount=refund_bonus,
                    balance=updated,
                    description=refund_reason,
                    metadata=RefundMetadata(
                        feature=reservation_feature(state),
                        reason=refund_reason,
                        original_cost=committed.monthly_amount + committed.bonus_amount,
                        refunded_monthly=refund_monthly,
                        refunded_bonus=refund_bonus,
                        extra=extra,
                    ),
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                continue

            logger.info(
                "Refunded %s credits for user %s request %s: %s",
                refund_monthly + refund_bonus,
                user_id,
                key,
                refund_reason,
            )
            return {
                "ok": True,
                "refunded": True,
                "request_id": key,
                "refunded_monthly": refund_monthly,
                "refunded_bonus": refund_bonus,
                **balance_payload(updated),
            }

    raise LedgerBusy(f"Refund for user {user_id} kept losing to concurrent writers")


async def record_failure(
    user_id: str,
    db: AsyncSession,
    *,
    request_id: Any,
    reason: Optional[str] = None,
    stage: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Log a failed attempt that never held credits (at most once per request)."""
    key = normalize_request_id(request_id)
    balance = await ensure_account(user_id, db)

    async with store_errors("record_failure"):
        state = await get_request_state(user_id, key, db)
        if "failure" in state.entries:
            return {"ok": True, "recorded": False, "request_id": key}
        try:
            await append_transaction(
                user_id,
                db,
                transaction_type="failure",
                request_id=key,
                amount=0,
                balance=balance,
                description=reason or "Generation failed",
                metadata=FailureMetadata(reason=reason, stage=stage, extra=caller_extra(metadata)),
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return {"ok": True, "recorded": False, "request_id": key}

    logger.info("Recorded failed attempt without reservation for user %s request %s", user_id, key)
    return {"ok": True, "recorded": True, "request_id": key}


def _failure_stage(extra: Dict[str, Any]) -> str:
    stage = extra.get("stage") or extra.get("error_stage")
    if isinstance(stage, str) and stage.strip():
        return stage.strip()
    return "unknown"


async def _safe_rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except Exception as exc:
        logger.warning("Rollback after credit store failure also failed: %s", exc)


async def reconcile(
    user_id: str,
    db: AsyncSession,
    *,
    request_id: Any,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Undo whatever credits a failed request still holds.

    Looks up the request state and issues exactly one corrective call:
    refund when committed, release when still reserved. Store failures are
    logged and reported in the result, never raised.
    """
    key = normalize_request_id(request_id)
    failure_reason = str(reason or "").strip() or "Generation failed"
    extra = caller_extra(metadata)
    extra.setdefault("failure_reason", failure_reason)

    for _ in range(2):
        try:
            async with store_errors("reconcile_state"):
                state = await get_request_state(user_id, key, db)
        except LedgerUnavailable as exc:
            logger.warning("Credit state lookup failed for request %s, falling back to refund+release: %s", key, exc)
            await _safe_rollback(db)
            return await _dual_reconcile(user_id, db, key, failure_reason, extra)

        try:
            if state.status == "committed":
                result = await refund(user_id, db, request_id=key, reason=failure_reason, metadata=extra)
                return {"ok": bool(result.get("ok")), "action": "refund", "request_id": key, "result": result}
            if state.status == "reserved":
                result = await release(user_id, db, request_id=key, reason=failure_reason, metadata=extra)
                if result.get("reason") == "missing_reservation":
                    # Committed by a concurrent worker between lookup and release.
                    continue
                return {"ok": bool(result.get("ok")), "action": "release", "request_id": key, "result": result}
            if state.status == "none":
                result = await record_failure(
                    user_id,
                    db,
                    request_id=key,
                    reason=failure_reason,
                    stage=_failure_stage(extra),
                    metadata=extra,
                )
                return {"ok": True, "action": "failure_recorded", "request_id": key, "result": result}
            return {"ok": True, "action": "none", "request_id": key, "status": state.status}
        except RECOVERABLE_STORE_ERRORS as exc:
            logger.warning("Credit reconciliation for request %s failed: %s", key, exc)
            await _safe_rollback(db)
            return {"ok": False, "reason": exc.reason, "request_id": key, "detail": exc.detail}

    try:
        result = await refund(user_id, db, request_id=key, reason=failure_reason, metadata=extra)
    except RECOVERABLE_STORE_ERRORS as exc:
        logger.warning("Credit reconciliation for request %s failed: %s", key, exc)
        await _safe_rollback(db)
        return {"ok": False, "reason": exc.reason, "request_id": key, "detail": exc.detail}
    return {"ok": bool(result.get("ok")), "action": "refund", "request_id": key, "result": result}


async def _dual_reconcile(
    user_id: str,
    db: AsyncSession,
    key: str,
    reason: str,
    extra: Dict[str, Any],
) -> Dict[str, Any]:
    """Refund then release, each independently; both are no-ops when inapplicable.

    Reports ``ok`` only if neither call hit a store failure, so a dead store is
    never mistaken for a finished reconciliation.
    """
    outcomes: Dict[str, Dict[str, Any]] = {}
    for name, operation in (("refund", refund), ("release", release)):
        try:
            outcomes[name] = await operation(user_id, db, request_id=key, reason=reason, metadata=extra)
        except RECOVERABLE_STORE_ERRORS as exc:
            logger.warning("Fallback %s for request %s failed: %s", name, key, exc)
            await _safe_rollback(db)
            outcomes[name] = {"ok": False, "reason": exc.reason, "detail": exc.detail}

    failed = [name for name, outcome in outcomes.items() if outcome.get("reason") in ("configuration_error", "ledger_busy")]
    payload: Dict[str, Any] = {
        "ok": not failed,
        "action": "refund_and_release",
        "request_id": key,
        "refund": outcomes["refund"],
        "release": outcomes["release"],
    }
    if failed:
        payload["reason"] = "configuration_error"
        payload["failed_operations"] = failed
    return payload


def _unique_request_ids(request_ids: Iterable[Any]) -> List[str]:
    keys: List[str] = []
    for request_id in request_ids:
        key = normalize_request_id(request_id)
        if key not in keys:
            keys.append(key)
    return keys


async def reconcile_many(
    user_id: str,
    db: AsyncSession,
    *,
    request_ids: Iterable[Any],
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Reconcile every in-flight request of an aborted batch."""
    keys = _unique_request_ids(request_ids)
    if not keys:
        raise InvalidLedgerRequest("request_ids must contain at least one request_id")

    results: Dict[str, Dict[str, Any]] = {}
    for key in keys:
        try:
            results[key] = await reconcile(user_id, db, request_id=key, reason=reason, metadata=metadata)
        except LedgerError as exc:
            logger.warning("Batch reconciliation skipped request %s: %s", key, exc)
            results[key] = exc.to_payload()
    return {
        "ok": all(result.get("ok") for result in results.values()),
        "count": len(keys),
        "results": results,
    }
