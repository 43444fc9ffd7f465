from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from src.kb_payout.domain.models import JobRunResult, PayoutAccount, PayoutJob, PayoutRecord


class WithdrawRequest(BaseModel):
    amount: int = Field(gt=0, description="Minor units")


class PayoutAccountRequest(BaseModel):
    account_type: Literal["bank", "mpesa"]
    account_number: str = Field(min_length=4, max_length=64)
    account_name: str = Field(min_length=1, max_length=100)
    bank_code: str | None = Field(None, max_length=32)


class PayoutJobResponse(BaseModel):
    id: str
    source: str
    hold_id: str | None = None
    amount: int
    currency: str
    status: str
    attempt: int
    transfer_reference: str
    last_error: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, job: PayoutJob) -> "PayoutJobResponse":
        return cls(
            id=job.id,
            source=job.source,
            hold_id=job.hold_id,
            amount=job.amount,
            currency=job.currency,
            status=job.status,
            attempt=job.attempt,
            transfer_reference=job.transfer_reference,
            last_error=job.last_error,
            created_at=job.created_at,
        )


class PayoutRecordResponse(BaseModel):
    id: int | None
    job_id: str
    hold_id: str | None = None
    amount: int
    currency: str
    status: str
    transfer_reference: str
    external_reference: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, record: PayoutRecord) -> "PayoutRecordResponse":
        return cls(
            id=record.id,
            job_id=record.job_id,
            hold_id=record.hold_id,
            amount=record.amount,
            currency=record.currency,
            status=record.status,
            transfer_reference=record.transfer_reference,
            external_reference=record.external_reference,
            failure_reason=record.failure_reason,
            created_at=record.created_at,
        )


class PayoutHistoryResponse(BaseModel):
    items: list[PayoutRecordResponse]
    next_cursor: str | None = None
    has_more: bool


class PayoutAccountResponse(BaseModel):
    seller_id: str
    account_type: str
    account_number_masked: str
    bank_code: str | None = None

    @classmethod
    def from_domain(cls, account: PayoutAccount) -> "PayoutAccountResponse":
        return cls(
            seller_id=account.seller_id,
            account_type=account.account_type,
            account_number_masked="*" * max(len(account.account_number) - 4, 0)
            + account.account_number[-4:],
            bank_code=account.bank_code,
        )


class JobRunResponse(BaseModel):
    job_id: str
    status: str
    outcome: str
    detail: str | None = None

    @classmethod
    def from_domain(cls, run: JobRunResult) -> "JobRunResponse":
        return cls(job_id=run.job_id, status=run.status, outcome=run.outcome, detail=run.detail)
