"""002: create transactions table

Revision ID: 002
Revises: 001
Create Date: 2026-09-14
"""
from typing import Sequence, Union
from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE transactions (
            id                  VARCHAR(64)     PRIMARY KEY,
            listing_id          VARCHAR(64)     NOT NULL,
            seller_id           VARCHAR(64)     NOT NULL,
            buyer_name          VARCHAR(128),
            buyer_phone         VARCHAR(32),
            buyer_email         VARCHAR(255),
            amount              BIGINT          NOT NULL,
            currency            VARCHAR(3)      NOT NULL DEFAULT 'KES',
            payment_method      VARCHAR(32)     NOT NULL,
            payment_reference   VARCHAR(128)    NOT NULL,
            status              VARCHAR(16)     NOT NULL DEFAULT 'pending',
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_transactions_payment_reference UNIQUE (payment_reference),
            CONSTRAINT ck_transactions_amount_gt_0 CHECK (amount > 0),
            CONSTRAINT ck_transactions_status CHECK (
                status IN ('pending', 'completed', 'failed', 'rejected', 'refunded')
            )
        );
    """)
    op.execute("CREATE INDEX idx_transactions_seller ON transactions (seller_id, created_at DESC);")
    op.execute("""
        CREATE TRIGGER trg_transactions_updated_at
        BEFORE UPDATE ON transactions
        FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS transactions CASCADE;")
