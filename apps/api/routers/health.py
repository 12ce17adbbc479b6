"""
Health check endpoints.
"""

from typing import Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
import redis.asyncio as redis

from config import settings
from database import engine
from services.ledger_queue import LEDGER_QUEUE_NAME

router = APIRouter()

LEDGER_TABLES = ("credit_accounts", "credit_transactions")


async def _probe_store() -> Dict[str, str]:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    except Exception as e:
        return {"database": f"down: {str(e)}"}
    missing = [name for name in LEDGER_TABLES if name not in tables]
    if missing:
        return {"database": "up", "schema": f"missing: {', '.join(missing)}"}
    return {"database": "up", "schema": "ready"}


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    The store is required for every ledger call; Redis backs rate limits and sweep jobs.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "redis": "unknown",
        "ledger_queue": LEDGER_QUEUE_NAME,
        **await _probe_store(),
    }
    if health_status.get("schema") != "ready":
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        health_status["ledger_queue_depth"] = int(await r.llen(f"rq:queue:{LEDGER_QUEUE_NAME}"))
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe; the ledger cannot serve without its tables."""
    store = await _probe_store()
    if store.get("schema") != "ready":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "reason": "configuration_error", **store},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
