"""Domain models for kb_escrow: pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass, field
from datetime import datetime

from src.kb_common.enums import HoldStatus


@dataclass
class EscrowHold:
    id: str
    transaction_id: str
    listing_id: str
    seller_id: str
    amount: int                      # minor units
    currency: str
    status: str                      # HoldStatus value
    pending_action: str | None = None    # PendingAction while a gateway refund is in flight
    pending_amount: int | None = None    # refund part of that in-flight action
    claim_token: str | None = None
    claimed_at: datetime | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (HoldStatus.RELEASED, HoldStatus.REFUNDED)

    @property
    def is_claimed(self) -> bool:
        return self.pending_action is not None


@dataclass
class HoldSettlement:
    """Derived ledger entry: how much of a hold went to the seller or back to the buyer."""

    hold_id: str
    seller_id: str
    kind: str                        # SettlementKind value
    amount: int
    trigger: str
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class DeliveryConfirmation:
    id: str
    transaction_id: str
    hold_id: str
    confirmation_code: str
    confirmed: bool = False
    auto_confirmed: bool = False
    confirmed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class ShippingProof:
    id: str
    transaction_id: str
    seller_id: str
    courier_name: str
    courier_contact: str | None = None
    tracking_number: str | None = None
    dispatch_images: list[str] = field(default_factory=list)
    verification_score: int | None = None
    verification_notes: str | None = None
    dispatched_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class TransitionOutcome:
    """Result of a state-machine call.

    ``applied`` is False when another trigger already performed the same
    transition (idempotent success) or when a gateway refund is still in
    flight (``in_flight``).
    """

    hold: EscrowHold
    applied: bool
    action: str
    trigger: str | None = None
    payout_job_id: str | None = None
    in_flight: bool = False
    released_amount: int = 0
    refunded_amount: int = 0


@dataclass
class LockResult:
    hold: EscrowHold
    confirmation: DeliveryConfirmation
    applied: bool
