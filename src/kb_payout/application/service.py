"""PayoutExecutor: drives payout jobs to exactly one successful transfer.

A job run is: claim (QUEUED → IN_FLIGHT, commit) → gateway transfer with
reference ``<key>#<attempt>`` under a timeout → complete the job and append
one PayoutRecord in the same commit. An ambiguous gateway answer leaves the
job IN_FLIGHT with no record; the next drain picks it up once the claim is
stale and asks the gateway what happened before sending anything new.
"""

import asyncio
import logging
from datetime import datetime, timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.datetime_utils import utc_now
from src.kb_common.enums import (
    GatewayOutcome,
    PayoutJobSource,
    PayoutJobStatus,
    PayoutRecordStatus,
)
from src.kb_common.errors import (
    AppError,
    ExternalServiceError,
    InsufficientBalanceError,
    InvalidInputError,
    PayoutAccountMissingError,
    PayoutJobNotFoundError,
    PreconditionFailedError,
)
from src.kb_common.id_generator import generate_id
from src.kb_payments.domain.gateway import PaymentGatewayProtocol, call_bounded
from src.kb_payments.domain.models import GatewayResult
from src.kb_payout.domain.models import (
    NO_PAYOUT_ACCOUNT,
    JobRunResult,
    PayoutAccount,
    PayoutJob,
    PayoutRecord,
)
from src.kb_payout.domain.repository import PayoutRepositoryProtocol

logger = logging.getLogger("kb.payout")

DRAIN_BATCH_SIZE = 50


class PayoutExecutor:
    def __init__(
        self,
        repo: PayoutRepositoryProtocol,
        gateway: PaymentGatewayProtocol,
        gateway_timeout: float = 10.0,
        stale_after_seconds: int = 300,
        currency: str = "KES",
    ) -> None:
        self._repo = repo
        self._gateway = gateway
        self._gateway_timeout = gateway_timeout
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._currency = currency

    def _stale_before(self) -> datetime:
        return utc_now() - self._stale_after

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def run_job(self, db: AsyncSession, job_id: str) -> JobRunResult:
        try:
            job = await self._repo.claim_job(db, job_id, self._stale_before())
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if job is None:
            current = await self._repo.get_job(db, job_id)
            if current is None:
                raise PayoutJobNotFoundError(job_id)
            return JobRunResult(current.id, current.status, "skipped", "not runnable")

        # An earlier attempt under this key already paid out
        paid = await self._repo.get_success_record(db, job.idempotency_key)
        if paid is not None:
            return await self._complete(db, job, PayoutJobStatus.SUCCEEDED.value, None)

        account = await self._repo.get_account(db, job.seller_id)
        if account is None:
            logger.warning("Payout job %s failed: seller %s has no account", job.id, job.seller_id)
            return await self._complete(db, job, PayoutJobStatus.FAILED.value, NO_PAYOUT_ACCOUNT)

        result: GatewayResult | None = None
        if not self._gateway.deduplicates_by_reference:
            result = await self._lookup_transfer(job)
        if result is None:
            result = await call_bounded(
                self._gateway.initiate_transfer(
                    account.recipient_code,
                    job.amount,
                    job.currency,
                    job.transfer_reference,
                    _transfer_reason(job),
                ),
                self._gateway_timeout,
                "transfer",
            )
        return await self._apply_transfer_result(db, job, result)

    async def _lookup_transfer(self, job: PayoutJob) -> GatewayResult | None:
        """None means the gateway never saw this reference and it is safe to send."""
        try:
            return await asyncio.wait_for(
                self._gateway.fetch_transfer(job.transfer_reference),
                timeout=self._gateway_timeout,
            )
        except (asyncio.TimeoutError, httpx.HTTPError) as exc:
            logger.warning("Transfer lookup for %s failed: %s", job.transfer_reference, exc)
            return GatewayResult(outcome=GatewayOutcome.AMBIGUOUS, detail="lookup failed")

    async def _apply_transfer_result(
        self, db: AsyncSession, job: PayoutJob, result: GatewayResult
    ) -> JobRunResult:
        if result.succeeded:
            return await self._complete(
                db,
                job,
                PayoutJobStatus.SUCCEEDED.value,
                None,
                record_status=PayoutRecordStatus.SUCCESS.value,
                external_reference=result.external_reference,
            )
        if result.definitely_failed:
            return await self._complete(
                db,
                job,
                PayoutJobStatus.FAILED.value,
                result.detail or "transfer failed",
                record_status=PayoutRecordStatus.FAILED.value,
            )
        logger.info(
            "Transfer %s %s; job %s stays in flight",
            job.transfer_reference,
            result.outcome.value,
            job.id,
        )
        return JobRunResult(job.id, PayoutJobStatus.IN_FLIGHT.value, "in_flight", result.detail)

    async def _complete(
        self,
        db: AsyncSession,
        job: PayoutJob,
        job_status: str,
        last_error: str | None,
        record_status: str | None = None,
        external_reference: str | None = None,
    ) -> JobRunResult:
        """Finish the job and append its record; the job update gates the record."""
        try:
            done = await self._repo.complete_job(db, job.id, job_status, last_error)
            if done is None:
                await db.rollback()
                current = await self._repo.get_job(db, job.id)
                status = current.status if current else job.status
                return JobRunResult(job.id, status, "skipped", "completed elsewhere")
            if record_status is not None:
                await self._repo.insert_record(
                    db,
                    PayoutRecord(
                        job_id=job.id,
                        seller_id=job.seller_id,
                        hold_id=job.hold_id,
                        idempotency_key=job.idempotency_key,
                        transfer_reference=job.transfer_reference,
                        external_reference=external_reference,
                        amount=job.amount,
                        currency=job.currency,
                        status=record_status,
                        failure_reason=last_error,
                    ),
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        outcome = "succeeded" if job_status == PayoutJobStatus.SUCCEEDED else "failed"
        logger.info("Payout job %s %s (%d %s)", job.id, outcome, job.amount, job.currency)
        return JobRunResult(job.id, job_status, outcome, last_error)

    async def drain(self, db: AsyncSession, limit: int = DRAIN_BATCH_SIZE) -> list[JobRunResult]:
        """Re-enqueue releases missing a job, then run queued and stale in-flight jobs."""
        orphans = await self._repo.find_unqueued_releases(db, limit)
        if orphans:
            try:
                for hold_id, seller_id, amount, currency in orphans:
                    await self._repo.enqueue_release(db, hold_id, seller_id, amount, currency)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            logger.warning("Re-enqueued %d released holds without a payout job", len(orphans))

        results: list[JobRunResult] = []
        for job in await self._repo.list_runnable_jobs(db, self._stale_before(), limit):
            try:
                results.append(await self.run_job(db, job.id))
            except AppError as exc:
                logger.warning("Payout job %s errored: %s", job.id, exc.message)
                results.append(JobRunResult(job.id, job.status, "error", exc.message))
            except Exception as exc:
                logger.exception("Payout job %s errored", job.id)
                await db.rollback()
                results.append(
                    JobRunResult(job.id, job.status, "error", f"{type(exc).__name__}: {exc}")
                )
        return results

    async def complete_transfer_callback(
        self,
        db: AsyncSession,
        reference: str,
        succeeded: bool,
        external_reference: str | None = None,
        detail: str | None = None,
    ) -> JobRunResult | None:
        """transfer.success / transfer.failed from the gateway, keyed by transfer reference."""
        key, _, attempt = reference.rpartition("#")
        job = await self._repo.get_job_by_key(db, key) if key else None
        if job is None or str(job.attempt) != attempt:
            logger.info("Transfer callback for unknown or superseded reference %s", reference)
            return None
        if job.status != PayoutJobStatus.IN_FLIGHT:
            return JobRunResult(job.id, job.status, "skipped", "not in flight")
        result = GatewayResult(
            outcome=GatewayOutcome.SUCCESS if succeeded else GatewayOutcome.FAILED,
            external_reference=external_reference,
            detail=detail,
        )
        return await self._apply_transfer_result(db, job, result)

    # ------------------------------------------------------------------
    # Withdrawals and retries
    # ------------------------------------------------------------------

    async def withdraw(
        self, db: AsyncSession, seller_id: str, amount: int, idempotency_key: str
    ) -> PayoutJob:
        if amount <= 0:
            raise InvalidInputError("amount must be positive")
        if not idempotency_key:
            raise InvalidInputError("Idempotency-Key header is required")

        key = f"withdraw:{seller_id}:{idempotency_key}"
        existing = await self._repo.get_job_by_key(db, key)
        if existing is not None:
            return self._same_withdrawal(existing, amount)

        if await self._repo.get_account(db, seller_id) is None:
            raise PayoutAccountMissingError(seller_id)

        try:
            await self._repo.lock_seller(db, seller_id)
            free = await self._free_balance(db, seller_id)
            if amount > free:
                raise InsufficientBalanceError(amount, max(free, 0))
            job = await self._repo.insert_job(
                db,
                PayoutJob(
                    id=generate_id("pjob"),
                    seller_id=seller_id,
                    source=PayoutJobSource.WITHDRAWAL.value,
                    amount=amount,
                    currency=self._currency,
                    idempotency_key=key,
                    status=PayoutJobStatus.QUEUED.value,
                ),
            )
            if job is None:
                await db.rollback()
                winner = await self._repo.get_job_by_key(db, key)
                if winner is None:
                    raise PreconditionFailedError(f"withdrawal {key} vanished", code=5005)
                return self._same_withdrawal(winner, amount)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Withdrawal %s queued for seller %s: %d", job.id, seller_id, amount)
        return job

    def _same_withdrawal(self, job: PayoutJob, amount: int) -> PayoutJob:
        if job.amount != amount:
            raise PreconditionFailedError(
                "Idempotency-Key already used with a different amount", code=5006
            )
        return job

    async def retry(self, db: AsyncSession, job_id: str) -> PayoutJob:
        """FAILED → QUEUED with a fresh transfer reference, if the money is still there."""
        job = await self._repo.get_job(db, job_id)
        if job is None:
            raise PayoutJobNotFoundError(job_id)
        if job.status != PayoutJobStatus.FAILED:
            raise PreconditionFailedError(
                f"payout job {job_id} is {job.status}, only FAILED jobs can be retried", code=5004
            )
        try:
            await self._repo.lock_seller(db, job.seller_id)
            free = await self._free_balance(db, job.seller_id)
            if job.amount > free:
                raise InsufficientBalanceError(job.amount, max(free, 0))
            requeued = await self._repo.requeue_failed_job(db, job_id)
            if requeued is None:
                raise PreconditionFailedError(f"payout job {job_id} changed concurrently", code=5004)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("Payout job %s requeued as attempt %d", job_id, requeued.attempt)
        return requeued

    async def _free_balance(self, db: AsyncSession, seller_id: str) -> int:
        available = await self._repo.available_balance(db, seller_id)
        reserved = await self._repo.open_job_total(db, seller_id)
        return available - reserved

    # ------------------------------------------------------------------
    # Accounts and history
    # ------------------------------------------------------------------

    async def set_account(
        self,
        db: AsyncSession,
        seller_id: str,
        account_type: str,
        account_number: str,
        account_name: str,
        bank_code: str | None = None,
    ) -> PayoutAccount:
        if account_type == "bank" and not bank_code:
            raise InvalidInputError("bank_code is required for bank accounts")
        try:
            recipient_code = await asyncio.wait_for(
                self._gateway.create_recipient(
                    account_type, account_number, bank_code, account_name, self._currency
                ),
                timeout=self._gateway_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError("gateway", "recipient creation timed out") from exc

        try:
            account = await self._repo.upsert_account(
                db,
                PayoutAccount(
                    seller_id=seller_id,
                    account_type=account_type,
                    account_number=account_number,
                    bank_code=bank_code,
                    recipient_code=recipient_code,
                ),
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("Payout account set for seller %s (%s)", seller_id, account_type)
        return account

    async def history(
        self, db: AsyncSession, seller_id: str, cursor: int | None, limit: int
    ) -> tuple[list[PayoutRecord], int | None]:
        records = await self._repo.list_records(db, seller_id, cursor, limit + 1)
        has_more = len(records) > limit
        records = records[:limit]
        next_cursor = records[-1].id if has_more and records else None
        return records, next_cursor


def _transfer_reason(job: PayoutJob) -> str:
    if job.source == PayoutJobSource.RELEASE and job.hold_id:
        return f"Escrow release {job.hold_id}"
    return "Seller withdrawal"
