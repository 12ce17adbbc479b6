"""Credit account store: lazy creation, balance snapshots, compare-and-set writes."""

from __future__ import annotations

import calendar
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import monthly_credits_for_tier, settings
from models.credit_account import CREDIT_TIERS, UNLIMITED_TIER, CreditAccount
from services.credit_errors import InvalidLedgerRequest, LedgerUnavailable, store_errors

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month length."""
    month_index = value.month - 1 + int(months)
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class AccountBalance:
    """Detached snapshot of one ``credit_accounts`` row."""

    user_id: str
    tier: str
    monthly_credits_per_cycle: int
    monthly_credits_used: int
    reserved_monthly: int
    bonus_credits_total: int
    bonus_credits_used: int
    reserved_bonus: int
    cycle_start_at: datetime
    cycle_end_at: datetime
    version: int

    @classmethod
    def from_account(cls, account: CreditAccount) -> "AccountBalance":
        return cls(
            user_id=account.user_id,
            tier=account.tier,
            monthly_credits_per_cycle=int(account.monthly_credits_per_cycle or 0),
            monthly_credits_used=int(account.monthly_credits_used or 0),
            reserved_monthly=int(account.reserved_monthly or 0),
            bonus_credits_total=int(account.bonus_credits_total or 0),
            bonus_credits_used=int(account.bonus_credits_used or 0),
            reserved_bonus=int(account.reserved_bonus or 0),
            cycle_start_at=as_utc(account.cycle_start_at),
            cycle_end_at=as_utc(account.cycle_end_at),
            version=int(account.version or 0),
        )

    @property
    def unlimited(self) -> bool:
        return self.tier == UNLIMITED_TIER

    @property
    def remaining_monthly(self) -> int:
        return max(self.monthly_credits_per_cycle - self.monthly_credits_used - self.reserved_monthly, 0)

    @property
    def remaining_bonus(self) -> int:
        return max(self.bonus_credits_total - self.bonus_credits_used - self.reserved_bonus, 0)

    @property
    def remaining_total(self) -> int:
        return self.remaining_monthly + self.remaining_bonus

    @property
    def has_outstanding_reservations(self) -> bool:
        return self.reserved_monthly > 0 or self.reserved_bonus > 0

    def evolve(self, **changes: Any) -> "AccountBalance":
        return dataclasses.replace(self, **changes)

    def to_status(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tier": self.tier,
            "unlimited": self.unlimited,
            "monthly_credits_per_cycle": self.monthly_credits_per_cycle,
            "monthly_credits_used": self.monthly_credits_used,
            "reserved_monthly": self.reserved_monthly,
            "bonus_credits_total": self.bonus_credits_total,
            "bonus_credits_used": self.bonus_credits_used,
            "reserved_bonus": self.reserved_bonus,
            "remaining_monthly": self.remaining_monthly,
            "remaining_bonus": self.remaining_bonus,
            "cycle_start_at": self.cycle_start_at.isoformat(),
            "cycle_end_at": self.cycle_end_at.isoformat(),
        }


_MUTABLE_FIELDS = (
    "tier",
    "monthly_credits_per_cycle",
    "monthly_credits_used",
    "reserved_monthly",
    "bonus_credits_total",
    "bonus_credits_used",
    "reserved_bonus",
    "cycle_start_at",
    "cycle_end_at",
)


def _default_account_values(user_id: str, now: datetime) -> Dict[str, Any]:
    tier = settings.DEFAULT_CREDIT_TIER
    if tier not in CREDIT_TIERS:
        raise LedgerUnavailable(f"Unknown credit tier '{tier}'; expected one of: {', '.join(CREDIT_TIERS)}")
    return {
        "user_id": user_id,
        "tier": tier,
        "monthly_credits_per_cycle": monthly_credits_for_tier(tier),
        "monthly_credits_used": 0,
        "reserved_monthly": 0,
        "bonus_credits_total": 0,
        "bonus_credits_used": 0,
        "reserved_bonus": 0,
        "cycle_start_at": now,
        "cycle_end_at": add_months(now, max(int(settings.BILLING_PERIOD_MONTHS), 1)),
        "version": 0,
        "created_at": now,
    }


def _require_user_id(user_id: Optional[str]) -> str:
    cleaned = str(user_id or "").strip()
    if not cleaned:
        raise InvalidLedgerRequest("user_id is required")
    return cleaned


async def load_balance(user_id: str, db: AsyncSession, *, for_update: bool = False) -> Optional[AccountBalance]:
    """Read the account row fresh from the store (row lock where supported)."""
    stmt = (
        select(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    account = result.scalar_one_or_none()
    return AccountBalance.from_account(account) if account else None


async def ensure_account(user_id: str, db: AsyncSession) -> AccountBalance:
    """Create the default-tier account if absent; safe under concurrent first access."""
    user_id = _require_user_id(user_id)
    async with store_errors("ensure"):
        balance = await load_balance(user_id, db)
        if balance is not None:
            return balance

        values = _default_account_values(user_id, utc_now())
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(CreditAccount).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        elif dialect == "sqlite":
            stmt = sqlite.insert(CreditAccount).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        else:
            stmt = insert(CreditAccount).values(**values)

        try:
            result = await db.execute(stmt)
            await db.commit()
        except IntegrityError:
            await db.rollback()
        else:
            if result.rowcount:
                logger.info("Created %s credit account for user %s", values["tier"], user_id)

        balance = await load_balance(user_id, db)
    if balance is None:
        raise InvalidLedgerRequest(f"Credit account for user {user_id} could not be created")
    return balance


async def get_account(user_id: str, db: AsyncSession) -> AccountBalance:
    """Return the account snapshot, creating it on first access."""
    return await ensure_account(user_id, db)


async def compare_and_set(db: AsyncSession, current: AccountBalance, updated: AccountBalance) -> bool:
    """Write ``updated`` only if the row still carries ``current.version``.

    Returns False when another worker changed the row first; the caller must
    roll back and retry from a fresh read.
    """
    values = {field: getattr(updated, field) for field in _MUTABLE_FIELDS}
    values["version"] = current.version + 1
    values["updated_at"] = utc_now()
    result = await db.execute(
        update(CreditAccount)
        .where(
            CreditAccount.user_id == current.user_id,
            CreditAccount.version == current.version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
