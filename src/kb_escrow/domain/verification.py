"""Advisory dispatch verification: a score never gates a state transition."""

from dataclasses import dataclass
from typing import Protocol

from src.kb_escrow.domain.models import ShippingProof


@dataclass
class VerificationResult:
    score: int                       # 0-100
    notes: str | None = None


class VerificationServiceProtocol(Protocol):
    async def score(self, proof: ShippingProof) -> VerificationResult | None:
        """Return None when scoring is disabled."""
        ...
