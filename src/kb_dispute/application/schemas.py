from datetime import datetime

from pydantic import BaseModel

from src.kb_dispute.domain.models import Dispute, ResolutionOutcome
from src.kb_escrow.application.schemas import TransitionResponse


class DisputeResponse(BaseModel):
    id: str
    transaction_id: str
    hold_id: str | None
    seller_id: str
    initiated_by: str
    reason: str
    evidence: list[str]
    resolution: str
    partial_amount: int | None = None
    audit_only: bool
    resolved_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, dispute: Dispute) -> "DisputeResponse":
        return cls(
            id=dispute.id,
            transaction_id=dispute.transaction_id,
            hold_id=dispute.hold_id,
            seller_id=dispute.seller_id,
            initiated_by=dispute.initiated_by,
            reason=dispute.reason,
            evidence=dispute.evidence,
            resolution=dispute.resolution,
            partial_amount=dispute.partial_amount,
            audit_only=dispute.audit_only,
            resolved_at=dispute.resolved_at,
            created_at=dispute.created_at,
        )


class ResolutionResponse(BaseModel):
    dispute: DisputeResponse
    settlement: TransitionResponse

    @classmethod
    def from_domain(cls, outcome: ResolutionOutcome) -> "ResolutionResponse":
        return cls(
            dispute=DisputeResponse.from_domain(outcome.dispute),
            settlement=TransitionResponse.from_domain(outcome.settlement),
        )
