"""006: create payout tables

Revision ID: 006
Revises: 005
Create Date: 2026-09-14
"""
from typing import Sequence, Union
from alembic import op

revision: str = "006"
down_revision: Union[str, None] = "005"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE payout_accounts (
            seller_id       VARCHAR(64)     PRIMARY KEY,
            account_type    VARCHAR(16)     NOT NULL,
            account_number  VARCHAR(64)     NOT NULL,
            bank_code       VARCHAR(32),
            recipient_code  VARCHAR(128)    NOT NULL,
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_payout_accounts_type CHECK (account_type IN ('bank', 'mpesa'))
        );
    """)
    op.execute("""
        CREATE TRIGGER trg_payout_accounts_updated_at
        BEFORE UPDATE ON payout_accounts
        FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)

    # Mutable outbox: intent to move money out of a seller's available balance
    op.execute("""
        CREATE TABLE payout_jobs (
            id                  VARCHAR(64)     PRIMARY KEY,
            seller_id           VARCHAR(64)     NOT NULL,
            source              VARCHAR(16)     NOT NULL,
            hold_id             VARCHAR(64)     REFERENCES escrow_holds (id),
            amount              BIGINT          NOT NULL,
            currency            VARCHAR(3)      NOT NULL DEFAULT 'KES',
            idempotency_key     VARCHAR(128)    NOT NULL,
            attempt             INTEGER         NOT NULL DEFAULT 1,
            status              VARCHAR(16)     NOT NULL DEFAULT 'QUEUED',
            last_error          VARCHAR(500),
            claimed_at          TIMESTAMPTZ,
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_payout_jobs_key UNIQUE (idempotency_key),
            CONSTRAINT ck_payout_jobs_amount_gt_0 CHECK (amount > 0),
            CONSTRAINT ck_payout_jobs_source CHECK (source IN ('RELEASE', 'WITHDRAWAL')),
            CONSTRAINT ck_payout_jobs_status CHECK (
                status IN ('QUEUED', 'IN_FLIGHT', 'SUCCEEDED', 'FAILED')
            )
        );
    """)
    op.execute("""
        CREATE UNIQUE INDEX uq_payout_jobs_hold
        ON payout_jobs (hold_id) WHERE hold_id IS NOT NULL;
    """)
    op.execute("CREATE INDEX idx_payout_jobs_status ON payout_jobs (status, claimed_at);")
    op.execute("""
        CREATE TRIGGER trg_payout_jobs_updated_at
        BEFORE UPDATE ON payout_jobs
        FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)

    op.execute("""
        CREATE TABLE payouts (
            id                  BIGSERIAL       PRIMARY KEY,
            job_id              VARCHAR(64)     NOT NULL REFERENCES payout_jobs (id),
            seller_id           VARCHAR(64)     NOT NULL,
            hold_id             VARCHAR(64),
            idempotency_key     VARCHAR(128)    NOT NULL,
            transfer_reference  VARCHAR(160)    NOT NULL,
            external_reference  VARCHAR(128),
            amount              BIGINT          NOT NULL,
            currency            VARCHAR(3)      NOT NULL DEFAULT 'KES',
            status              VARCHAR(8)      NOT NULL,
            failure_reason      VARCHAR(500),
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_payouts_status CHECK (status IN ('SUCCESS', 'FAILED')),
            CONSTRAINT ck_payouts_amount_gt_0 CHECK (amount > 0)
        );
    """)
    # At most one successful transfer per business key; failed attempts may repeat
    op.execute("""
        CREATE UNIQUE INDEX uq_payouts_success_key
        ON payouts (idempotency_key) WHERE status = 'SUCCESS';
    """)
    op.execute("CREATE INDEX idx_payouts_seller ON payouts (seller_id, id DESC);")
    op.execute("""
        CREATE TRIGGER trg_payouts_append_only
        BEFORE UPDATE OR DELETE ON payouts
        FOR EACH ROW EXECUTE FUNCTION fn_reject_mutation();
    """)
    op.execute("COMMENT ON TABLE payouts IS 'Payout records: append-only, never mutated or deleted';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS payouts CASCADE;")
    op.execute("DROP TABLE IF EXISTS payout_jobs CASCADE;")
    op.execute("DROP TABLE IF EXISTS payout_accounts CASCADE;")
