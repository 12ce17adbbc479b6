"""Credit reservation ledger router."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.credit_accounts import ensure_account
from services.credit_admin import admin_adjust_bonus
from services.credit_ledger import commit, get_status, release, reserve
from services.credit_maintenance import sweep_stale_reservations
from services.credit_refunds import reconcile, reconcile_many, refund
from services.credit_transactions import list_transactions
from services.ledger_queue import enqueue_stale_reservation_sweep

router = APIRouter()
logger = logging.getLogger(__name__)


class ScopedRequest(BaseModel):
    user_id: Optional[str] = None


class ReserveRequest(ScopedRequest):
    amount: int
    request_id: str
    feature: str = Field(min_length=1, max_length=120)
    metadata: Optional[Dict[str, Any]] = None


class CommitRequest(ScopedRequest):
    request_id: str
    metadata: Optional[Dict[str, Any]] = None


class ReleaseRequest(ScopedRequest):
    request_id: str
    reason: Optional[str] = Field(default=None, max_length=500)
    metadata: Optional[Dict[str, Any]] = None


class RefundRequest(ReleaseRequest):
    pass


class ReconcileRequest(ScopedRequest):
    request_id: str
    reason: str = Field(default="Generation failed", max_length=500)
    metadata: Optional[Dict[str, Any]] = None


class ReconcileBatchRequest(ScopedRequest):
    request_ids: List[str] = Field(min_length=1, max_length=200)
    reason: str = Field(default="Batch generation aborted", max_length=500)
    metadata: Optional[Dict[str, Any]] = None


class AdminAdjustBonusRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int
    reason: str = Field(min_length=1, max_length=500)
    request_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SweepStaleRequest(BaseModel):
    older_than_minutes: Optional[int] = Field(default=None, ge=1, le=60 * 24 * 30)
    user_id: Optional[str] = None
    defer: bool = False


@router.post("/ensure")
async def ensure_credit_account(
    request: ScopedRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    balance = await ensure_account(scoped_user_id, db)
    return {"ok": True, **balance.to_status()}


@router.get("/status")
async def credit_status(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await get_status(scoped_user_id, db)


@router.post("/reserve")
async def reserve_credits(
    request: ReserveRequest,
    _rate_limit: None = Depends(rate_limit("credits_reserve", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await reserve(
        scoped_user_id,
        db,
        amount=request.amount,
        request_id=request.request_id,
        feature=request.feature,
        metadata=request.metadata,
    )


@router.post("/commit")
async def commit_credits(
    request: CommitRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await commit(scoped_user_id, db, request_id=request.request_id, metadata=request.metadata)


@router.post("/release")
async def release_credits(
    request: ReleaseRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await release(
        scoped_user_id,
        db,
        request_id=request.request_id,
        reason=request.reason,
        metadata=request.metadata,
    )


@router.post("/refund")
async def refund_credits(
    request: RefundRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await refund(
        scoped_user_id,
        db,
        request_id=request.request_id,
        reason=request.reason,
        metadata=request.metadata,
    )


@router.post("/reconcile")
async def reconcile_request(
    request: ReconcileRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Undo whatever a failed generation still holds; never raises store errors."""
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await reconcile(
        scoped_user_id,
        db,
        request_id=request.request_id,
        reason=request.reason,
        metadata=request.metadata,
    )


@router.post("/reconcile_batch")
async def reconcile_batch(
    request: ReconcileBatchRequest,
    _rate_limit: None = Depends(rate_limit("credits_reconcile_batch", limit=30, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await reconcile_many(
        scoped_user_id,
        db,
        request_ids=request.request_ids,
        reason=request.reason,
        metadata=request.metadata,
    )


@router.get("/transactions")
async def credit_transactions(
    limit: Optional[int] = Query(default=None, ge=1),
    request_id: Optional[str] = Query(default=None),
    transaction_type: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    items = await list_transactions(
        scoped_user_id,
        db,
        limit=limit,
        request_id=request_id,
        transaction_type=transaction_type,
    )
    return {"user_id": scoped_user_id, "count": len(items), "items": items}


@router.post("/admin/adjust_bonus")
async def adjust_bonus(
    request: AdminAdjustBonusRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await admin_adjust_bonus(
        admin.user_id,
        request.user_id,
        db,
        amount=request.amount,
        reason=request.reason,
        metadata=request.metadata,
        request_id=request.request_id,
    )


@router.post("/admin/sweep_stale")
async def sweep_stale(
    request: SweepStaleRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if request.defer:
        try:
            job = enqueue_stale_reservation_sweep(request.older_than_minutes, request.user_id)
        except Exception as exc:
            logger.warning("Stale reservation sweep requested by %s could not be queued: %s", admin.user_id, exc)
            raise HTTPException(
                status_code=503,
                detail="Ledger queue unavailable. Check Redis/worker availability and retry.",
            ) from exc
        return {"ok": True, "queued": True, "job_id": job.id}

    result = await sweep_stale_reservations(
        db,
        older_than_minutes=request.older_than_minutes,
        user_id=request.user_id,
    )
    return {"ok": True, "queued": False, **result}
