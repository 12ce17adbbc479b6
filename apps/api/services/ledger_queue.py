"""Credit ledger maintenance job queue helpers (Redis/RQ)."""

from __future__ import annotations

from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


LEDGER_QUEUE_NAME = "credit_ledger_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_ledger_queue() -> Queue:
    """Return the configured ledger maintenance queue."""
    return Queue(
        name=LEDGER_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_stale_reservation_sweep(
    older_than_minutes: Optional[int] = None,
    user_id: Optional[str] = None,
) -> Job:
    """Enqueue a stale reservation sweep; one pending job per scope."""
    queue = get_ledger_queue()
    return queue.enqueue(
        "services.credit_maintenance.sweep_stale_reservations_job",
        older_than_minutes,
        user_id,
        job_id=f"credit_sweep:{user_id or 'all'}",
        retry=Retry(max=3, interval=[10, 30, 120]),
        job_timeout=600,
        result_ttl=3600,
        failure_ttl=86400,
    )
