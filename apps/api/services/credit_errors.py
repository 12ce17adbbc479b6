"""Credit ledger error taxonomy.

Business outcomes (insufficient credits, missing reservation, idempotent
no-ops) are returned as ``{"ok": False, "reason": ...}`` results. The errors
below are raised for caller bugs and infrastructure failures.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import InterfaceError, OperationalError


class LedgerError(Exception):
    """Base ledger error with a machine-readable reason and HTTP status."""

    reason = "ledger_error"
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_payload(self) -> dict:
        return {"ok": False, "reason": self.reason, "detail": self.detail}


class InvalidLedgerRequest(LedgerError):
    reason = "invalid_request"
    status_code = 422


class LedgerUnauthorized(LedgerError):
    reason = "unauthorized"
    status_code = 403


class LedgerUnavailable(LedgerError):
    """Backing store unreachable or misconfigured."""

    reason = "configuration_error"
    status_code = 503


class LedgerBusy(LedgerError):
    """Compare-and-set retries exhausted under heavy contention."""

    reason = "ledger_busy"
    status_code = 503


@asynccontextmanager
async def store_errors(operation: str) -> AsyncIterator[None]:
    """Translate driver-level connectivity failures into LedgerUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise LedgerUnavailable(f"Credit store unavailable during {operation}: {exc.__class__.__name__}") from exc
