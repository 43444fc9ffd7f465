"""Domain models for kb_dispute: pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass, field
from datetime import datetime

from src.kb_common.enums import DisputeResolution
from src.kb_escrow.domain.models import TransitionOutcome


@dataclass
class Dispute:
    id: str
    transaction_id: str
    seller_id: str
    initiated_by: str                # DisputeInitiator value
    reason: str
    hold_id: str | None = None
    evidence: list[str] = field(default_factory=list)
    resolution: str = DisputeResolution.PENDING.value
    partial_amount: int | None = None
    # Filed after the hold was already settled; kept for audit, never resolved
    audit_only: bool = False
    resolved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.resolution == DisputeResolution.PENDING


@dataclass
class ResolutionOutcome:
    dispute: Dispute
    settlement: TransitionOutcome
