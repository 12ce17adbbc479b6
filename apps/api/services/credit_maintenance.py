"""Stale reservation sweeps."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import exists
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import aliased

from config import settings
from database import async_session_maker
from models.credit_transaction import CreditTransaction
from services.credit_accounts import as_utc, utc_now
from services.credit_errors import LedgerError
from services.credit_ledger import release
from services.credit_transactions import TERMINAL_TYPES

logger = logging.getLogger(__name__)

SWEEP_REASON = "stale_reservation_sweep"
SWEEP_BATCH_SIZE = 500


async def sweep_stale_reservations(
    db: AsyncSession,
    *,
    older_than_minutes: Optional[int] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Release reservations left outstanding longer than the threshold."""
    minutes = max(int(older_than_minutes or settings.STALE_RESERVATION_MINUTES), 1)
    cutoff = (as_utc(now) if now else utc_now()) - timedelta(minutes=minutes)

    terminal = aliased(CreditTransaction)
    stmt = select(CreditTransaction.user_id, CreditTransaction.request_id).where(
        CreditTransaction.transaction_type == "reservation",
        CreditTransaction.created_at < cutoff,
        ~exists().where(
            terminal.user_id == CreditTransaction.user_id,
            terminal.request_id == CreditTransaction.request_id,
            terminal.transaction_type.in_(TERMINAL_TYPES),
        ),
    )
    if user_id:
        stmt = stmt.where(CreditTransaction.user_id == user_id)
    result = await db.execute(stmt.order_by(CreditTransaction.created_at.asc()).limit(SWEEP_BATCH_SIZE))
    stale = result.all()

    released = 0
    failed = 0
    for owner_id, request_id in stale:
        try:
            outcome = await release(
                owner_id,
                db,
                request_id=request_id,
                reason=SWEEP_REASON,
                metadata={"older_than_minutes": minutes, "cutoff": cutoff.isoformat()},
                released_by="stale_sweep",
            )
        except LedgerError as exc:
            failed += 1
            await db.rollback()
            logger.warning("Stale reservation %s for user %s could not be released: %s", request_id, owner_id, exc)
            continue
        if outcome.get("ok") and not outcome.get("reason"):
            released += 1

    if stale:
        logger.info("Stale reservation sweep: scanned=%s released=%s failed=%s", len(stale), released, failed)
    return {
        "scanned": len(stale),
        "released": released,
        "failed": failed,
        "cutoff": cutoff.isoformat(),
    }


async def recover_stale_reservations(older_than_minutes: Optional[int] = None) -> int:
    """Sweep with a private session; used at startup and by background loops."""
    async with async_session_maker() as db:
        result = await sweep_stale_reservations(db, older_than_minutes=older_than_minutes)
    return int(result["released"])


async def sweep_stale_reservations_async(older_than_minutes: Optional[int], user_id: Optional[str]) -> Dict[str, Any]:
    async with async_session_maker() as db:
        return await sweep_stale_reservations(db, older_than_minutes=older_than_minutes, user_id=user_id)


def sweep_stale_reservations_job(older_than_minutes: Optional[int] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
    """RQ worker entrypoint for stale reservation sweeps."""
    return asyncio.run(sweep_stale_reservations_async(older_than_minutes, user_id))
