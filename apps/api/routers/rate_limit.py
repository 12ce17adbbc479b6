"""Per-caller quotas for ledger endpoints, counted in Redis with an in-process fallback."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings
from services.session_token import decode_session_token


# key -> (hits in window, window reset epoch seconds)
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _caller_identifier(request: Request) -> str:
    """Authenticated callers are counted per user, anonymous ones per address."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        try:
            return f"user:{decode_session_token(token.strip()).user_id}"
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    host = request.client.host if request.client else None
    return f"ip:{host or 'unknown'}"


async def _redis_hit(key: str, window_seconds: int) -> Tuple[int, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            pipe.ttl(key)
            hits, _, ttl = await pipe.execute()
    finally:
        await client.aclose()
    return int(hits), max(int(ttl), 1)


async def _local_hit(key: str, window_seconds: int) -> Tuple[int, int]:
    now = time.time()
    async with _local_lock:
        hits, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            hits, reset_at = 0, now + window_seconds
        hits += 1
        _local_counters[key] = (hits, reset_at)
    return hits, max(math.ceil(reset_at - now), 1)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Return a FastAPI dependency allowing ``limit`` calls per caller per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ledger:rate:{prefix}:{_caller_identifier(request)}"
        try:
            hits, retry_after = await _redis_hit(key, window_seconds)
        except Exception:
            hits, retry_after = await _local_hit(key, window_seconds)

        if hits > limit:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
