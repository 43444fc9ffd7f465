"""005: create disputes table

Revision ID: 005
Revises: 004
Create Date: 2026-09-14
"""
from typing import Sequence, Union
from alembic import op

revision: str = "005"
down_revision: Union[str, None] = "004"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE disputes (
            id              VARCHAR(64)     PRIMARY KEY,
            transaction_id  VARCHAR(64)     NOT NULL REFERENCES transactions (id),
            hold_id         VARCHAR(64)     REFERENCES escrow_holds (id),
            seller_id       VARCHAR(64)     NOT NULL,
            initiated_by    VARCHAR(16)     NOT NULL,
            reason          VARCHAR(2000)   NOT NULL,
            evidence        JSONB           NOT NULL DEFAULT '[]'::jsonb,
            resolution      VARCHAR(16)     NOT NULL DEFAULT 'pending',
            partial_amount  BIGINT,
            audit_only      BOOLEAN         NOT NULL DEFAULT FALSE,
            resolved_at     TIMESTAMPTZ,
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_disputes_transaction UNIQUE (transaction_id),
            CONSTRAINT ck_disputes_initiated_by CHECK (initiated_by IN ('buyer', 'seller', 'admin')),
            CONSTRAINT ck_disputes_resolution CHECK (
                resolution IN ('pending', 'refund_buyer', 'pay_seller', 'partial_refund')
            ),
            CONSTRAINT ck_disputes_partial_amount CHECK (
                partial_amount IS NULL OR partial_amount > 0
            )
        );
    """)
    op.execute("CREATE INDEX idx_disputes_open ON disputes (resolution) WHERE resolution = 'pending';")
    op.execute("""
        CREATE TRIGGER trg_disputes_updated_at
        BEFORE UPDATE ON disputes
        FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS disputes CASCADE;")
