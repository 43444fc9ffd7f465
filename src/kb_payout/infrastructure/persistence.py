"""PayoutRepository: concrete implementation of PayoutRepositoryProtocol.

payout_jobs is the mutable outbox (QUEUED → IN_FLIGHT → SUCCEEDED | FAILED);
payouts is append-only and only ever receives outcomes. Every job state
change is a conditional UPDATE so two drains never run the same job at once.

Transaction ownership: the CALLER commits or rolls back.
"""

from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.enums import PayoutJobSource, PayoutJobStatus
from src.kb_common.errors import InternalError
from src.kb_common.id_generator import generate_id
from src.kb_payout.domain.models import PayoutAccount, PayoutJob, PayoutRecord

# ---------------------------------------------------------------------------
# SQL: payout_jobs
# ---------------------------------------------------------------------------

_JOB_COLUMNS = """
    id, seller_id, source, hold_id, amount, currency, idempotency_key,
    attempt, status, last_error, claimed_at, created_at, updated_at
"""

# No conflict target: covers both uq_payout_jobs_key and uq_payout_jobs_hold
_INSERT_JOB_SQL = text(f"""
    INSERT INTO payout_jobs
        (id, seller_id, source, hold_id, amount, currency, idempotency_key, status)
    VALUES
        (:id, :seller_id, :source, :hold_id, :amount, :currency, :idempotency_key, 'QUEUED')
    ON CONFLICT DO NOTHING
    RETURNING {_JOB_COLUMNS}
""")

_GET_JOB_SQL = text(f"SELECT {_JOB_COLUMNS} FROM payout_jobs WHERE id = :id")

_GET_JOB_BY_KEY_SQL = text(
    f"SELECT {_JOB_COLUMNS} FROM payout_jobs WHERE idempotency_key = :key"
)

_GET_JOB_BY_HOLD_SQL = text("SELECT id FROM payout_jobs WHERE hold_id = :hold_id")

_CLAIM_JOB_SQL = text(f"""
    UPDATE payout_jobs
    SET status = 'IN_FLIGHT', claimed_at = NOW()
    WHERE id = :id
      AND (status = 'QUEUED' OR (status = 'IN_FLIGHT' AND claimed_at < :stale_before))
    RETURNING {_JOB_COLUMNS}
""")

_COMPLETE_JOB_SQL = text(f"""
    UPDATE payout_jobs
    SET status = :status, last_error = :last_error
    WHERE id = :id AND status = 'IN_FLIGHT'
    RETURNING {_JOB_COLUMNS}
""")

_REQUEUE_JOB_SQL = text(f"""
    UPDATE payout_jobs
    SET status = 'QUEUED', attempt = attempt + 1, last_error = NULL, claimed_at = NULL
    WHERE id = :id AND status = 'FAILED'
    RETURNING {_JOB_COLUMNS}
""")

_LIST_RUNNABLE_SQL = text(f"""
    SELECT {_JOB_COLUMNS} FROM payout_jobs
    WHERE status = 'QUEUED'
       OR (status = 'IN_FLIGHT' AND claimed_at < :stale_before)
    ORDER BY created_at
    LIMIT :limit
""")

_FIND_UNQUEUED_RELEASES_SQL = text("""
    SELECT s.hold_id, s.seller_id, s.amount, h.currency
    FROM hold_settlements s
    JOIN escrow_holds h ON h.id = s.hold_id
    LEFT JOIN payout_jobs j ON j.hold_id = s.hold_id
    WHERE s.kind = 'RELEASE' AND j.id IS NULL
    ORDER BY s.id
    LIMIT :limit
""")

_OPEN_JOB_TOTAL_SQL = text("""
    SELECT COALESCE(SUM(amount), 0) FROM payout_jobs
    WHERE seller_id = :seller_id AND status IN ('QUEUED', 'IN_FLIGHT')
""")

_LOCK_SELLER_SQL = text("SELECT pg_advisory_xact_lock(hashtext(:seller_id))")

# ---------------------------------------------------------------------------
# SQL: payouts (append-only)
# ---------------------------------------------------------------------------

_RECORD_COLUMNS = """
    id, job_id, seller_id, hold_id, idempotency_key, transfer_reference,
    external_reference, amount, currency, status, failure_reason, created_at
"""

# uq_payouts_success_key rejects a second SUCCESS for the same business key
_INSERT_RECORD_SQL = text(f"""
    INSERT INTO payouts
        (job_id, seller_id, hold_id, idempotency_key, transfer_reference,
         external_reference, amount, currency, status, failure_reason)
    VALUES
        (:job_id, :seller_id, :hold_id, :idempotency_key, :transfer_reference,
         :external_reference, :amount, :currency, :status, :failure_reason)
    ON CONFLICT DO NOTHING
    RETURNING {_RECORD_COLUMNS}
""")

_GET_SUCCESS_RECORD_SQL = text(f"""
    SELECT {_RECORD_COLUMNS} FROM payouts
    WHERE idempotency_key = :key AND status = 'SUCCESS'
""")

_LIST_RECORDS_SQL = text(f"""
    SELECT {_RECORD_COLUMNS} FROM payouts
    WHERE seller_id = :seller_id
      AND (CAST(:cursor AS BIGINT) IS NULL OR id < CAST(:cursor AS BIGINT))
    ORDER BY id DESC
    LIMIT :limit
""")

_AVAILABLE_SQL = text("""
    SELECT
        COALESCE((SELECT SUM(amount) FROM hold_settlements
                  WHERE seller_id = :seller_id AND kind = 'RELEASE'), 0)
      - COALESCE((SELECT SUM(amount) FROM payouts
                  WHERE seller_id = :seller_id AND status = 'SUCCESS'), 0)
""")

# ---------------------------------------------------------------------------
# SQL: payout_accounts
# ---------------------------------------------------------------------------

_ACCOUNT_COLUMNS = """
    seller_id, account_type, account_number, bank_code, recipient_code,
    created_at, updated_at
"""

_GET_ACCOUNT_SQL = text(
    f"SELECT {_ACCOUNT_COLUMNS} FROM payout_accounts WHERE seller_id = :seller_id"
)

_UPSERT_ACCOUNT_SQL = text(f"""
    INSERT INTO payout_accounts
        (seller_id, account_type, account_number, bank_code, recipient_code)
    VALUES
        (:seller_id, :account_type, :account_number, :bank_code, :recipient_code)
    ON CONFLICT (seller_id) DO UPDATE
    SET account_type = EXCLUDED.account_type,
        account_number = EXCLUDED.account_number,
        bank_code = EXCLUDED.bank_code,
        recipient_code = EXCLUDED.recipient_code
    RETURNING {_ACCOUNT_COLUMNS}
""")


def _row_to_job(row: object) -> PayoutJob:
    return PayoutJob(
        id=row.id,  # type: ignore[attr-defined]
        seller_id=row.seller_id,  # type: ignore[attr-defined]
        source=row.source,  # type: ignore[attr-defined]
        hold_id=row.hold_id,  # type: ignore[attr-defined]
        amount=row.amount,  # type: ignore[attr-defined]
        currency=row.currency,  # type: ignore[attr-defined]
        idempotency_key=row.idempotency_key,  # type: ignore[attr-defined]
        attempt=row.attempt,  # type: ignore[attr-defined]
        status=row.status,  # type: ignore[attr-defined]
        last_error=row.last_error,  # type: ignore[attr-defined]
        claimed_at=row.claimed_at,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
    )


def _row_to_record(row: object) -> PayoutRecord:
    return PayoutRecord(
        id=row.id,  # type: ignore[attr-defined]
        job_id=row.job_id,  # type: ignore[attr-defined]
        seller_id=row.seller_id,  # type: ignore[attr-defined]
        hold_id=row.hold_id,  # type: ignore[attr-defined]
        idempotency_key=row.idempotency_key,  # type: ignore[attr-defined]
        transfer_reference=row.transfer_reference,  # type: ignore[attr-defined]
        external_reference=row.external_reference,  # type: ignore[attr-defined]
        amount=row.amount,  # type: ignore[attr-defined]
        currency=row.currency,  # type: ignore[attr-defined]
        status=row.status,  # type: ignore[attr-defined]
        failure_reason=row.failure_reason,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
    )


def _row_to_account(row: object) -> PayoutAccount:
    return PayoutAccount(
        seller_id=row.seller_id,  # type: ignore[attr-defined]
        account_type=row.account_type,  # type: ignore[attr-defined]
        account_number=row.account_number,  # type: ignore[attr-defined]
        bank_code=row.bank_code,  # type: ignore[attr-defined]
        recipient_code=row.recipient_code,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
    )


class PayoutRepository:
    async def enqueue_release(
        self,
        db: AsyncSession,
        hold_id: str,
        seller_id: str,
        amount: int,
        currency: str,
    ) -> str:
        job = await self.insert_job(
            db,
            PayoutJob(
                id=generate_id("pjob"),
                seller_id=seller_id,
                source=PayoutJobSource.RELEASE.value,
                hold_id=hold_id,
                amount=amount,
                currency=currency,
                idempotency_key=f"release:{hold_id}",
                status=PayoutJobStatus.QUEUED.value,
            ),
        )
        if job is not None:
            return job.id
        row = (await db.execute(_GET_JOB_BY_HOLD_SQL, {"hold_id": hold_id})).fetchone()
        if row is None:
            raise InternalError(f"Payout job for hold {hold_id} neither inserted nor found")
        return str(row.id)  # type: ignore[attr-defined]

    async def insert_job(self, db: AsyncSession, job: PayoutJob) -> PayoutJob | None:
        result = await db.execute(
            _INSERT_JOB_SQL,
            {
                "id": job.id,
                "seller_id": job.seller_id,
                "source": job.source,
                "hold_id": job.hold_id,
                "amount": job.amount,
                "currency": job.currency,
                "idempotency_key": job.idempotency_key,
            },
        )
        row = result.fetchone()
        return _row_to_job(row) if row else None

    async def get_job(self, db: AsyncSession, job_id: str) -> PayoutJob | None:
        row = (await db.execute(_GET_JOB_SQL, {"id": job_id})).fetchone()
        return _row_to_job(row) if row else None

    async def get_job_by_key(
        self, db: AsyncSession, idempotency_key: str
    ) -> PayoutJob | None:
        row = (await db.execute(_GET_JOB_BY_KEY_SQL, {"key": idempotency_key})).fetchone()
        return _row_to_job(row) if row else None

    async def claim_job(
        self, db: AsyncSession, job_id: str, stale_before: datetime
    ) -> PayoutJob | None:
        result = await db.execute(
            _CLAIM_JOB_SQL, {"id": job_id, "stale_before": stale_before}
        )
        row = result.fetchone()
        return _row_to_job(row) if row else None

    async def complete_job(
        self,
        db: AsyncSession,
        job_id: str,
        status: str,
        last_error: str | None,
    ) -> PayoutJob | None:
        result = await db.execute(
            _COMPLETE_JOB_SQL,
            {"id": job_id, "status": status, "last_error": last_error},
        )
        row = result.fetchone()
        return _row_to_job(row) if row else None

    async def requeue_failed_job(self, db: AsyncSession, job_id: str) -> PayoutJob | None:
        row = (await db.execute(_REQUEUE_JOB_SQL, {"id": job_id})).fetchone()
        return _row_to_job(row) if row else None

    async def list_runnable_jobs(
        self, db: AsyncSession, stale_before: datetime, limit: int
    ) -> list[PayoutJob]:
        result = await db.execute(
            _LIST_RUNNABLE_SQL, {"stale_before": stale_before, "limit": limit}
        )
        return [_row_to_job(r) for r in result.fetchall()]

    async def find_unqueued_releases(
        self, db: AsyncSession, limit: int
    ) -> list[tuple[str, str, int, str]]:
        result = await db.execute(_FIND_UNQUEUED_RELEASES_SQL, {"limit": limit})
        return [
            (r.hold_id, r.seller_id, r.amount, r.currency)  # type: ignore[attr-defined]
            for r in result.fetchall()
        ]

    async def open_job_total(self, db: AsyncSession, seller_id: str) -> int:
        result = await db.execute(_OPEN_JOB_TOTAL_SQL, {"seller_id": seller_id})
        return int(result.scalar_one())

    async def lock_seller(self, db: AsyncSession, seller_id: str) -> None:
        await db.execute(_LOCK_SELLER_SQL, {"seller_id": seller_id})

    async def insert_record(
        self, db: AsyncSession, record: PayoutRecord
    ) -> PayoutRecord | None:
        result = await db.execute(
            _INSERT_RECORD_SQL,
            {
                "job_id": record.job_id,
                "seller_id": record.seller_id,
                "hold_id": record.hold_id,
                "idempotency_key": record.idempotency_key,
                "transfer_reference": record.transfer_reference,
                "external_reference": record.external_reference,
                "amount": record.amount,
                "currency": record.currency,
                "status": record.status,
                "failure_reason": record.failure_reason,
            },
        )
        row = result.fetchone()
        return _row_to_record(row) if row else None

    async def get_success_record(
        self, db: AsyncSession, idempotency_key: str
    ) -> PayoutRecord | None:
        row = (
            await db.execute(_GET_SUCCESS_RECORD_SQL, {"key": idempotency_key})
        ).fetchone()
        return _row_to_record(row) if row else None

    async def list_records(
        self, db: AsyncSession, seller_id: str, cursor: int | None, limit: int
    ) -> list[PayoutRecord]:
        result = await db.execute(
            _LIST_RECORDS_SQL,
            {"seller_id": seller_id, "cursor": cursor, "limit": limit},
        )
        return [_row_to_record(r) for r in result.fetchall()]

    async def available_balance(self, db: AsyncSession, seller_id: str) -> int:
        result = await db.execute(_AVAILABLE_SQL, {"seller_id": seller_id})
        return int(result.scalar_one())

    async def get_account(self, db: AsyncSession, seller_id: str) -> PayoutAccount | None:
        row = (await db.execute(_GET_ACCOUNT_SQL, {"seller_id": seller_id})).fetchone()
        return _row_to_account(row) if row else None

    async def upsert_account(
        self, db: AsyncSession, account: PayoutAccount
    ) -> PayoutAccount:
        result = await db.execute(
            _UPSERT_ACCOUNT_SQL,
            {
                "seller_id": account.seller_id,
                "account_type": account.account_type,
                "account_number": account.account_number,
                "bank_code": account.bank_code,
                "recipient_code": account.recipient_code,
            },
        )
        row = result.fetchone()
        if row is None:
            raise InternalError("Payout account upsert returned no rows")
        return _row_to_account(row)
