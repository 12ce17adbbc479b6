"""Typed metadata payloads stored on credit transactions.

Each transaction type carries its own model, discriminated by ``kind``.
Caller-supplied debugging context goes into the opaque ``extra`` bag.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _LedgerMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    extra: Dict[str, Any] = Field(default_factory=dict)


class ReservationMetadata(_LedgerMetadata):
    kind: Literal["reservation"] = "reservation"
    feature: str
    requested_amount: int
    reserved_monthly: int = 0
    reserved_bonus: int = 0
    unlimited: bool = False


class CommitMetadata(_LedgerMetadata):
    kind: Literal["commit"] = "commit"
    feature: Optional[str] = None
    committed_monthly: int = 0
    committed_bonus: int = 0


class ReleaseMetadata(_LedgerMetadata):
    kind: Literal["release"] = "release"
    feature: Optional[str] = None
    reason: Optional[str] = None
    released_monthly: int = 0
    released_bonus: int = 0
    released_by: Literal["caller", "stale_sweep"] = "caller"


class RefundMetadata(_LedgerMetadata):
    kind: Literal["refund"] = "refund"
    feature: Optional[str] = None
    reason: Optional[str] = None
    original_cost: int = 0
    refunded_monthly: int = 0
    refunded_bonus: int = 0


class ForfeitureMetadata(_LedgerMetadata):
    kind: Literal["usage"] = "usage"
    reason: Literal["rollover_cap_exceeded"] = "rollover_cap_exceeded"
    rollover_cap: int
    carried_over: int
    forfeited: int
    previous_cycle_end_at: str


class FailureMetadata(_LedgerMetadata):
    kind: Literal["failure"] = "failure"
    reason: Optional[str] = None
    stage: Optional[str] = None


class AdminAdjustmentMetadata(_LedgerMetadata):
    kind: Literal["admin_adjustment"] = "admin_adjustment"
    actor_id: str
    reason: str
    requested_amount: int
    applied_amount: int
    new_bonus_total: int


TransactionMetadata = Annotated[
    Union[
        ReservationMetadata,
        CommitMetadata,
        ReleaseMetadata,
        RefundMetadata,
        ForfeitureMetadata,
        FailureMetadata,
        AdminAdjustmentMetadata,
    ],
    Field(discriminator="kind"),
]

_metadata_adapter: TypeAdapter = TypeAdapter(TransactionMetadata)


def dump_metadata(metadata: _LedgerMetadata) -> Dict[str, Any]:
    """Serialize a metadata model for the JSON column."""
    return metadata.model_dump(mode="json")


def parse_metadata(payload: Optional[Dict[str, Any]]):
    """Load a stored JSON payload back into its typed model (None if absent)."""
    if not payload:
        return None
    return _metadata_adapter.validate_python(payload)


def caller_extra(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalize caller metadata into the opaque extension bag."""
    if not metadata:
        return {}
    if not isinstance(metadata, dict):
        return {"value": metadata}
    return {str(key): value for key, value in metadata.items()}
