"""CreditAccount model: one balance row per user."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


CREDIT_TIERS = ("free", "starter", "creator", "professional", "unlimited")
UNLIMITED_TIER = "unlimited"


class CreditAccount(Base):
    """Per-user monthly and bonus credit pools.

    Every write goes through a compare-and-set on ``version`` so concurrent
    workers never apply a read-modify-write against a stale row.
    """

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("monthly_credits_used >= 0", name="ck_credit_accounts_monthly_used_nonneg"),
        CheckConstraint("reserved_monthly >= 0", name="ck_credit_accounts_reserved_monthly_nonneg"),
        CheckConstraint("bonus_credits_used >= 0", name="ck_credit_accounts_bonus_used_nonneg"),
        CheckConstraint("reserved_bonus >= 0", name="ck_credit_accounts_reserved_bonus_nonneg"),
        CheckConstraint("bonus_credits_total >= 0", name="ck_credit_accounts_bonus_total_nonneg"),
        CheckConstraint(
            "tier IN (" + ", ".join(f"'{tier}'" for tier in CREDIT_TIERS) + ")",
            name="ck_credit_accounts_tier_known",
        ),
    )

    user_id = Column(String, primary_key=True)
    tier = Column(String, nullable=False, default="free")

    monthly_credits_per_cycle = Column(Integer, nullable=False, default=0)
    monthly_credits_used = Column(Integer, nullable=False, default=0)
    reserved_monthly = Column(Integer, nullable=False, default=0)

    bonus_credits_total = Column(Integer, nullable=False, default=0)
    bonus_credits_used = Column(Integer, nullable=False, default=0)
    reserved_bonus = Column(Integer, nullable=False, default=0)

    cycle_start_at = Column(DateTime(timezone=True), nullable=False)
    cycle_end_at = Column(DateTime(timezone=True), nullable=False)

    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
