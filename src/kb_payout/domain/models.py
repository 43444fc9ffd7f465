"""Domain models for kb_payout: pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass
from datetime import datetime

from src.kb_common.enums import PayoutJobStatus

NO_PAYOUT_ACCOUNT = "NO_PAYOUT_ACCOUNT"


@dataclass
class PayoutJob:
    """Mutable outbox row: the intent to move ``amount`` out of available balance."""

    id: str
    seller_id: str
    source: str                      # PayoutJobSource value
    amount: int
    currency: str
    idempotency_key: str             # "release:<hold_id>" or "withdraw:<seller>:<key>"
    status: str                      # PayoutJobStatus value
    hold_id: str | None = None
    attempt: int = 1
    last_error: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def transfer_reference(self) -> str:
        # A new attempt after a definite failure gets a fresh gateway reference
        return f"{self.idempotency_key}#{self.attempt}"

    @property
    def is_open(self) -> bool:
        return self.status in (PayoutJobStatus.QUEUED, PayoutJobStatus.IN_FLIGHT)


@dataclass
class PayoutRecord:
    """Append-only outcome of one transfer attempt."""

    job_id: str
    seller_id: str
    idempotency_key: str
    transfer_reference: str
    amount: int
    currency: str
    status: str                      # PayoutRecordStatus value
    hold_id: str | None = None
    external_reference: str | None = None
    failure_reason: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class PayoutAccount:
    seller_id: str
    account_type: str                # "bank" | "mpesa"
    account_number: str
    recipient_code: str
    bank_code: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class JobRunResult:
    job_id: str
    status: str                      # PayoutJobStatus after the run
    outcome: str                     # "succeeded" | "failed" | "in_flight" | "skipped"
    detail: str | None = None
