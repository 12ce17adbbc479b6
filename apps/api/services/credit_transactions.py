"""Append-only credit transaction log and request-state queries."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CREDIT_POOLS, TRANSACTION_TYPES, CreditTransaction
from services.credit_accounts import AccountBalance, as_utc, utc_now
from services.credit_errors import InvalidLedgerRequest, store_errors
from services.credit_metadata import TransactionMetadata, dump_metadata, parse_metadata


TERMINAL_TYPES = ("commit", "release")


def normalize_request_id(request_id: Any) -> str:
    """Return the canonical UUID string for an idempotency key."""
    if isinstance(request_id, uuid.UUID):
        return str(request_id)
    raw = str(request_id or "").strip()
    if not raw:
        raise InvalidLedgerRequest("request_id is required")
    try:
        return str(uuid.UUID(raw))
    except ValueError as exc:
        raise InvalidLedgerRequest(f"request_id '{raw}' is not a valid UUID") from exc


@dataclass(frozen=True)
class LedgerEntry:
    """Detached copy of a ``credit_transactions`` row."""

    id: str
    user_id: str
    request_id: Optional[str]
    transaction_type: str
    pool: Optional[str]
    amount: int
    monthly_amount: int
    bonus_amount: int
    balance_monthly_after: Optional[int]
    balance_bonus_after: Optional[int]
    description: Optional[str]
    metadata: Dict[str, Any]
    created_by: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: CreditTransaction) -> "LedgerEntry":
        return cls(
            id=row.id,
            user_id=row.user_id,
            request_id=row.request_id,
            transaction_type=row.transaction_type,
            pool=row.pool,
            amount=int(row.amount or 0),
            monthly_amount=int(row.monthly_amount or 0),
            bonus_amount=int(row.bonus_amount or 0),
            balance_monthly_after=row.balance_monthly_after,
            balance_bonus_after=row.balance_bonus_after,
            description=row.description,
            metadata=dict(row.metadata_json or {}),
            created_by=row.created_by,
            created_at=as_utc(row.created_at) if row.created_at else None,
        )

    @property
    def details(self) -> Optional[TransactionMetadata]:
        """The stored metadata as its typed model, keyed by transaction kind."""
        return parse_metadata(self.metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "request_id": self.request_id,
            "transaction_type": self.transaction_type,
            "pool": self.pool,
            "amount": self.amount,
            "monthly_amount": self.monthly_amount,
            "bonus_amount": self.bonus_amount,
            "balance_monthly_after": self.balance_monthly_after,
            "balance_bonus_after": self.balance_bonus_after,
            "description": self.description,
            "metadata": self.metadata,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class RequestState:
    """Everything the log knows about one idempotency key."""

    request_id: str
    entries: Dict[str, LedgerEntry] = field(default_factory=dict)

    @property
    def reservation(self) -> Optional[LedgerEntry]:
        return self.entries.get("reservation")

    @property
    def commit(self) -> Optional[LedgerEntry]:
        return self.entries.get("commit")

    @property
    def release(self) -> Optional[LedgerEntry]:
        return self.entries.get("release")

    @property
    def refund(self) -> Optional[LedgerEntry]:
        return self.entries.get("refund")

    @property
    def status(self) -> str:
        if self.refund is not None:
            return "refunded"
        if self.commit is not None:
            return "committed"
        if self.release is not None:
            return "released"
        if self.reservation is not None:
            return "reserved"
        return "none"


def validate_transaction_type(transaction_type: str) -> str:
    if transaction_type not in TRANSACTION_TYPES:
        raise InvalidLedgerRequest(
            f"transaction_type '{transaction_type}' must be one of: {', '.join(TRANSACTION_TYPES)}"
        )
    return transaction_type


def _pool_for_split(monthly_amount: int, bonus_amount: int) -> Optional[str]:
    if monthly_amount and bonus_amount:
        return None
    if monthly_amount:
        return "monthly"
    if bonus_amount:
        return "bonus"
    return None


async def append_transaction(
    user_id: str,
    db: AsyncSession,
    *,
    transaction_type: str,
    request_id: Optional[str],
    amount: int,
    metadata,
    description: str,
    balance: Optional[AccountBalance] = None,
    monthly_amount: int = 0,
    bonus_amount: int = 0,
    pool: Optional[str] = None,
    created_by: Optional[str] = None,
) -> LedgerEntry:
    """Stage a log entry in the caller's open unit of work.

    Flushes immediately so a uniqueness violation on
    ``(user_id, request_id, transaction_type)`` surfaces before commit.
    """
    validate_transaction_type(transaction_type)
    pool = pool or _pool_for_split(monthly_amount, bonus_amount)
    if pool is not None and pool not in CREDIT_POOLS:
        raise InvalidLedgerRequest(f"pool '{pool}' must be one of: {', '.join(CREDIT_POOLS)}")
    row = CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        request_id=request_id,
        transaction_type=transaction_type,
        pool=pool,
        amount=int(amount),
        monthly_amount=int(monthly_amount),
        bonus_amount=int(bonus_amount),
        balance_monthly_after=balance.remaining_monthly if balance else None,
        balance_bonus_after=balance.remaining_bonus if balance else None,
        description=description,
        metadata_json=dump_metadata(metadata) if metadata is not None else None,
        created_by=created_by,
        created_at=utc_now(),
    )
    db.add(row)
    await db.flush()
    return LedgerEntry.from_row(row)


async def get_request_state(user_id: str, request_id: str, db: AsyncSession) -> RequestState:
    """Collect the log entries recorded for one request key."""
    result = await db.execute(
        select(CreditTransaction)
        .where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.request_id == request_id,
        )
        .order_by(CreditTransaction.created_at.asc())
    )
    state = RequestState(request_id=request_id)
    for row in result.scalars().all():
        state.entries[row.transaction_type] = LedgerEntry.from_row(row)
    return state


def _clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return max(int(settings.TRANSACTIONS_DEFAULT_LIMIT), 1)
    return min(max(int(limit), 1), max(int(settings.TRANSACTIONS_MAX_LIMIT), 1))


async def list_transactions(
    user_id: str,
    db: AsyncSession,
    *,
    limit: Optional[int] = None,
    request_id: Optional[str] = None,
    transaction_type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Return the user's transactions, newest first."""
    stmt = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    if request_id:
        stmt = stmt.where(CreditTransaction.request_id == normalize_request_id(request_id))
    if transaction_type:
        stmt = stmt.where(CreditTransaction.transaction_type == validate_transaction_type(transaction_type))
    stmt = stmt.order_by(CreditTransaction.created_at.desc()).limit(_clamp_limit(limit))

    async with store_errors("transactions"):
        result = await db.execute(stmt)
        return [LedgerEntry.from_row(row).to_dict() for row in result.scalars().all()]
