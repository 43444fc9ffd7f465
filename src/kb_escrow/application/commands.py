"""Escrow commands parsed once at the boundary.

Each variant carries exactly the fields its operation needs; anything with an
unknown ``kind`` or missing fields is rejected before a service is touched.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from src.kb_common.enums import DisputeInitiator, DisputeResolution
from src.kb_common.errors import InvalidInputError


class _HoldTarget(BaseModel):
    """Either a hold id or a transaction id identifies the hold."""

    hold_id: str | None = None
    transaction_id: str | None = None

    @model_validator(mode="after")
    def one_target(self) -> "_HoldTarget":
        if bool(self.hold_id) == bool(self.transaction_id):
            raise ValueError("exactly one of hold_id or transaction_id is required")
        return self


class LockCommand(BaseModel):
    kind: Literal["lock"] = "lock"
    transaction_id: str = Field(min_length=1)


class ReleaseCommand(_HoldTarget):
    kind: Literal["release"] = "release"


class RefundCommand(_HoldTarget):
    kind: Literal["refund"] = "refund"
    reason: str = Field(min_length=1, max_length=500)


class DisputeCreateCommand(BaseModel):
    kind: Literal["dispute_create"] = "dispute_create"
    transaction_id: str = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=2000)
    evidence: list[str] = Field(default_factory=list)
    initiated_by: DisputeInitiator = DisputeInitiator.SELLER


class DisputeResolveCommand(BaseModel):
    kind: Literal["dispute_resolve"] = "dispute_resolve"
    dispute_id: str = Field(min_length=1)
    resolution: Literal["refund_buyer", "pay_seller", "partial_refund"]
    partial_amount: int | None = None

    @model_validator(mode="after")
    def partial_needs_amount(self) -> "DisputeResolveCommand":
        if self.resolution == DisputeResolution.PARTIAL_REFUND and self.partial_amount is None:
            raise ValueError("partial_amount is required for partial_refund")
        if self.resolution != DisputeResolution.PARTIAL_REFUND and self.partial_amount is not None:
            raise ValueError("partial_amount is only valid for partial_refund")
        return self


EscrowCommand = Annotated[
    LockCommand | ReleaseCommand | RefundCommand | DisputeCreateCommand | DisputeResolveCommand,
    Field(discriminator="kind"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(EscrowCommand)


def parse_command(kind: str, payload: dict[str, Any]) -> Any:
    """Validate ``payload`` as the ``kind`` variant; InvalidInputError on any mismatch."""
    try:
        return _adapter.validate_python({**payload, "kind": kind})
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or kind
        raise InvalidInputError(f"{loc}: {first.get('msg', 'invalid')}") from exc
