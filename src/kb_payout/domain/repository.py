"""Repository Protocol for payout jobs, records and accounts."""

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_payout.domain.models import PayoutAccount, PayoutJob, PayoutRecord


class PayoutRepositoryProtocol(Protocol):
    # --- jobs ---
    async def enqueue_release(
        self,
        db: AsyncSession,
        hold_id: str,
        seller_id: str,
        amount: int,
        currency: str,
    ) -> str: ...

    async def insert_job(self, db: AsyncSession, job: PayoutJob) -> PayoutJob | None:
        """INSERT … ON CONFLICT (idempotency_key) DO NOTHING."""
        ...

    async def get_job(self, db: AsyncSession, job_id: str) -> PayoutJob | None: ...

    async def get_job_by_key(
        self, db: AsyncSession, idempotency_key: str
    ) -> PayoutJob | None: ...

    async def claim_job(
        self, db: AsyncSession, job_id: str, stale_before: datetime
    ) -> PayoutJob | None:
        """QUEUED → IN_FLIGHT, or re-claim an IN_FLIGHT job whose claim is older than ``stale_before``."""
        ...

    async def complete_job(
        self,
        db: AsyncSession,
        job_id: str,
        status: str,
        last_error: str | None,
    ) -> PayoutJob | None:
        """IN_FLIGHT → SUCCEEDED | FAILED."""
        ...

    async def requeue_failed_job(self, db: AsyncSession, job_id: str) -> PayoutJob | None:
        """FAILED → QUEUED with attempt + 1."""
        ...

    async def list_runnable_jobs(
        self, db: AsyncSession, stale_before: datetime, limit: int
    ) -> list[PayoutJob]: ...

    async def find_unqueued_releases(self, db: AsyncSession, limit: int) -> list[tuple[str, str, int, str]]:
        """(hold_id, seller_id, released amount, currency) for RELEASE settlements with no job."""
        ...

    async def open_job_total(self, db: AsyncSession, seller_id: str) -> int: ...

    async def lock_seller(self, db: AsyncSession, seller_id: str) -> None:
        """Transaction-scoped advisory lock serialising withdrawals per seller."""
        ...

    # --- records ---
    async def insert_record(self, db: AsyncSession, record: PayoutRecord) -> PayoutRecord | None: ...

    async def get_success_record(
        self, db: AsyncSession, idempotency_key: str
    ) -> PayoutRecord | None: ...

    async def list_records(
        self, db: AsyncSession, seller_id: str, cursor: int | None, limit: int
    ) -> list[PayoutRecord]: ...

    async def available_balance(self, db: AsyncSession, seller_id: str) -> int:
        """Σ RELEASE settlements − Σ SUCCESS payouts."""
        ...

    # --- accounts ---
    async def get_account(self, db: AsyncSession, seller_id: str) -> PayoutAccount | None: ...

    async def upsert_account(self, db: AsyncSession, account: PayoutAccount) -> PayoutAccount: ...
