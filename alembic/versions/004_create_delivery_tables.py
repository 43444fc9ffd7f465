"""004: create delivery_confirmations and shipping_proofs tables

Revision ID: 004
Revises: 003
Create Date: 2026-09-14
"""
from typing import Sequence, Union
from alembic import op

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE delivery_confirmations (
            id                  VARCHAR(64)     PRIMARY KEY,
            transaction_id      VARCHAR(64)     NOT NULL REFERENCES transactions (id),
            hold_id             VARCHAR(64)     NOT NULL REFERENCES escrow_holds (id),
            confirmation_code   VARCHAR(16)     NOT NULL,
            confirmed           BOOLEAN         NOT NULL DEFAULT FALSE,
            auto_confirmed      BOOLEAN         NOT NULL DEFAULT FALSE,
            confirmed_at        TIMESTAMPTZ,
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_delivery_confirmations_transaction UNIQUE (transaction_id)
        );
    """)

    op.execute("""
        CREATE TABLE shipping_proofs (
            id                  VARCHAR(64)     PRIMARY KEY,
            transaction_id      VARCHAR(64)     NOT NULL REFERENCES transactions (id),
            seller_id           VARCHAR(64)     NOT NULL,
            courier_name        VARCHAR(128)    NOT NULL,
            courier_contact     VARCHAR(64),
            tracking_number     VARCHAR(128),
            dispatch_images     JSONB           NOT NULL DEFAULT '[]'::jsonb,
            verification_score  INTEGER,
            verification_notes  VARCHAR(1000),
            dispatched_at       TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_shipping_proofs_transaction UNIQUE (transaction_id),
            CONSTRAINT ck_shipping_proofs_score CHECK (
                verification_score IS NULL OR verification_score BETWEEN 0 AND 100
            )
        );
    """)
    op.execute("CREATE INDEX idx_shipping_proofs_dispatched ON shipping_proofs (dispatched_at);")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS shipping_proofs CASCADE;")
    op.execute("DROP TABLE IF EXISTS delivery_confirmations CASCADE;")
