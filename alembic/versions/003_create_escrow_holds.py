"""003: create escrow_holds and hold_settlements tables

Revision ID: 003
Revises: 002
Create Date: 2026-09-14
"""
from typing import Sequence, Union
from alembic import op

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE escrow_holds (
            id              VARCHAR(64)     PRIMARY KEY,
            transaction_id  VARCHAR(64)     NOT NULL REFERENCES transactions (id),
            listing_id      VARCHAR(64)     NOT NULL,
            seller_id       VARCHAR(64)     NOT NULL,
            amount          BIGINT          NOT NULL,
            currency        VARCHAR(3)      NOT NULL DEFAULT 'KES',
            status          VARCHAR(16)     NOT NULL DEFAULT 'held',
            pending_action  VARCHAR(16),
            claim_token     VARCHAR(64),
            pending_amount  BIGINT,
            claimed_at      TIMESTAMPTZ,
            released_at     TIMESTAMPTZ,
            refunded_at     TIMESTAMPTZ,
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_escrow_holds_transaction UNIQUE (transaction_id),
            CONSTRAINT ck_escrow_holds_amount_gt_0 CHECK (amount > 0),
            CONSTRAINT ck_escrow_holds_status CHECK (
                status IN ('pending', 'held', 'released', 'refunded', 'disputed')
            ),
            CONSTRAINT ck_escrow_holds_pending_action CHECK (
                pending_action IS NULL OR pending_action IN ('refund', 'partial_refund')
            ),
            CONSTRAINT ck_escrow_holds_single_terminal CHECK (
                released_at IS NULL OR refunded_at IS NULL
            )
        );
    """)
    op.execute("CREATE INDEX idx_escrow_holds_seller ON escrow_holds (seller_id, status);")
    op.execute("CREATE INDEX idx_escrow_holds_held ON escrow_holds (status) WHERE status = 'held';")
    op.execute("""
        CREATE TRIGGER trg_escrow_holds_updated_at
        BEFORE UPDATE ON escrow_holds
        FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)

    op.execute("""
        CREATE TABLE hold_settlements (
            id          BIGSERIAL       PRIMARY KEY,
            hold_id     VARCHAR(64)     NOT NULL REFERENCES escrow_holds (id),
            seller_id   VARCHAR(64)     NOT NULL,
            kind        VARCHAR(8)      NOT NULL,
            amount      BIGINT          NOT NULL,
            trigger     VARCHAR(32)     NOT NULL,
            created_at  TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_hold_settlements_kind UNIQUE (hold_id, kind),
            CONSTRAINT ck_hold_settlements_kind CHECK (kind IN ('RELEASE', 'REFUND')),
            CONSTRAINT ck_hold_settlements_amount_gt_0 CHECK (amount > 0)
        );
    """)
    op.execute("CREATE INDEX idx_hold_settlements_seller ON hold_settlements (seller_id);")
    op.execute("""
        CREATE TRIGGER trg_hold_settlements_append_only
        BEFORE UPDATE OR DELETE ON hold_settlements
        FOR EACH ROW EXECUTE FUNCTION fn_reject_mutation();
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS hold_settlements CASCADE;")
    op.execute("DROP TABLE IF EXISTS escrow_holds CASCADE;")
