from datetime import datetime

from pydantic import BaseModel, Field

from src.kb_common.amounts import amount_to_display
from src.kb_escrow.domain.models import (
    EscrowHold,
    LockResult,
    ShippingProof,
    TransitionOutcome,
)


class ConfirmDeliveryRequest(BaseModel):
    confirmation_id: str = Field(min_length=1)
    code: str = Field(min_length=4, max_length=12)


class RejectDeliveryRequest(BaseModel):
    confirmation_id: str = Field(min_length=1)
    code: str = Field(min_length=4, max_length=12)
    reason: str = Field(min_length=1, max_length=2000)
    evidence: list[str] = Field(default_factory=list)


class RecordShipmentRequest(BaseModel):
    transaction_id: str = Field(min_length=1)
    courier_name: str = Field(min_length=1, max_length=100)
    courier_contact: str | None = Field(None, max_length=50)
    tracking_number: str | None = Field(None, max_length=100)
    dispatch_images: list[str] = Field(default_factory=list, max_length=10)


class HoldResponse(BaseModel):
    id: str
    transaction_id: str
    listing_id: str
    seller_id: str
    amount: int
    amount_display: str
    currency: str
    status: str
    pending_action: str | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, hold: EscrowHold) -> "HoldResponse":
        return cls(
            id=hold.id,
            transaction_id=hold.transaction_id,
            listing_id=hold.listing_id,
            seller_id=hold.seller_id,
            amount=hold.amount,
            amount_display=amount_to_display(hold.amount, hold.currency),
            currency=hold.currency,
            status=hold.status,
            pending_action=hold.pending_action,
            released_at=hold.released_at,
            refunded_at=hold.refunded_at,
            created_at=hold.created_at,
        )


class LockResponse(BaseModel):
    hold: HoldResponse
    confirmation_id: str
    confirmation_code: str
    applied: bool

    @classmethod
    def from_domain(cls, result: LockResult) -> "LockResponse":
        return cls(
            hold=HoldResponse.from_domain(result.hold),
            confirmation_id=result.confirmation.id,
            confirmation_code=result.confirmation.confirmation_code,
            applied=result.applied,
        )


class TransitionResponse(BaseModel):
    """``applied=False`` marks an idempotent no-op or a refund still in flight."""

    hold: HoldResponse
    applied: bool
    action: str
    trigger: str | None = None
    in_flight: bool = False
    released_amount: int = 0
    refunded_amount: int = 0
    payout_job_id: str | None = None

    @classmethod
    def from_domain(cls, outcome: TransitionOutcome) -> "TransitionResponse":
        return cls(
            hold=HoldResponse.from_domain(outcome.hold),
            applied=outcome.applied,
            action=outcome.action,
            trigger=outcome.trigger,
            in_flight=outcome.in_flight,
            released_amount=outcome.released_amount,
            refunded_amount=outcome.refunded_amount,
            payout_job_id=outcome.payout_job_id,
        )


class ShipmentResponse(BaseModel):
    id: str
    transaction_id: str
    courier_name: str
    tracking_number: str | None = None
    dispatch_images: list[str]
    verification_score: int | None = None
    dispatched_at: datetime | None = None

    @classmethod
    def from_domain(cls, proof: ShippingProof) -> "ShipmentResponse":
        return cls(
            id=proof.id,
            transaction_id=proof.transaction_id,
            courier_name=proof.courier_name,
            tracking_number=proof.tracking_number,
            dispatch_images=proof.dispatch_images,
            verification_score=proof.verification_score,
            dispatched_at=proof.dispatched_at,
        )
