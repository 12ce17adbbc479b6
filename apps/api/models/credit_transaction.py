"""CreditTransaction model: append-only credit audit trail."""

import uuid

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


TRANSACTION_TYPES = (
    "reservation",
    "commit",
    "release",
    "refund",
    "usage",
    "failure",
    "admin_adjustment",
)
CREDIT_POOLS = ("monthly", "bonus")


class CreditTransaction(Base):
    """Immutable credit ledger entry.

    ``amount`` is the signed change in available credits caused by the event;
    ``monthly_amount``/``bonus_amount`` hold the unsigned per-pool split.
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "request_id",
            "transaction_type",
            name="uq_credit_transactions_user_request_type",
        ),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
        Index("ix_credit_transactions_user_request", "user_id", "request_id"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=True)
    transaction_type = Column(String, nullable=False)
    pool = Column(String, nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    monthly_amount = Column(Integer, nullable=False, default=0)
    bonus_amount = Column(Integer, nullable=False, default=0)
    balance_monthly_after = Column(Integer, nullable=True)
    balance_bonus_after = Column(Integer, nullable=True)
    description = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
