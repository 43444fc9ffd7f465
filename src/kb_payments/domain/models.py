"""Domain models for kb_payments: pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.kb_common.enums import GatewayOutcome, TransactionStatus


@dataclass
class Transaction:
    id: str
    listing_id: str
    seller_id: str
    amount: int                      # minor units
    currency: str
    payment_method: str
    payment_reference: str           # external reference shared with the gateway
    status: str                      # TransactionStatus value
    buyer_name: str | None = None
    buyer_phone: str | None = None
    buyer_email: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


@dataclass
class GatewayResult:
    """Outcome of one gateway call. AMBIGUOUS never flips ledger state."""

    outcome: GatewayOutcome
    external_reference: str | None = None
    detail: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome == GatewayOutcome.SUCCESS

    @property
    def definitely_failed(self) -> bool:
        return self.outcome == GatewayOutcome.FAILED


@dataclass
class ChargeSession:
    reference: str
    authorization_url: str | None
    access_code: str | None = None
