"""EscrowRepository: concrete implementation of EscrowRepositoryProtocol.

All status changes are ``UPDATE … WHERE id = :id AND status IN (:expected)
RETURNING …``. A result of 0 rows means another trigger got there first (or
the precondition never held); the application service re-reads and decides
whether that is an idempotent success or an error.

Transaction ownership: the CALLER commits or rolls back.
"""

import json

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.errors import InternalError
from src.kb_escrow.domain.models import (
    DeliveryConfirmation,
    EscrowHold,
    HoldSettlement,
    ShippingProof,
)

# ---------------------------------------------------------------------------
# SQL: escrow_holds
# ---------------------------------------------------------------------------

_HOLD_COLUMNS = """
    id, transaction_id, listing_id, seller_id, amount, currency, status,
    pending_action, pending_amount, claim_token, claimed_at,
    released_at, refunded_at, created_at, updated_at
"""

_GET_HOLD_SQL = text(f"SELECT {_HOLD_COLUMNS} FROM escrow_holds WHERE id = :hold_id")

_GET_HOLD_BY_TXN_SQL = text(
    f"SELECT {_HOLD_COLUMNS} FROM escrow_holds WHERE transaction_id = :transaction_id"
)

_INSERT_HOLD_SQL = text(f"""
    INSERT INTO escrow_holds
        (id, transaction_id, listing_id, seller_id, amount, currency, status)
    VALUES
        (:id, :transaction_id, :listing_id, :seller_id, :amount, :currency, :status)
    ON CONFLICT (transaction_id) DO NOTHING
    RETURNING {_HOLD_COLUMNS}
""")

# released_at / refunded_at are stamped only on entry into the matching terminal
_TRANSITION_HOLD_SQL = text(f"""
    UPDATE escrow_holds
    SET status = :new_status,
        released_at = CASE WHEN :new_status = 'released' THEN NOW() ELSE released_at END,
        refunded_at = CASE WHEN :new_status = 'refunded' THEN NOW() ELSE refunded_at END
    WHERE id = :hold_id
      AND status IN :expected
      AND (:require_unclaimed = FALSE OR pending_action IS NULL)
    RETURNING {_HOLD_COLUMNS}
""").bindparams(bindparam("expected", expanding=True))

_CLAIM_HOLD_SQL = text(f"""
    UPDATE escrow_holds
    SET pending_action = :action,
        pending_amount = :amount,
        claim_token = :token,
        claimed_at = NOW()
    WHERE id = :hold_id
      AND status IN :expected
      AND pending_action IS NULL
    RETURNING {_HOLD_COLUMNS}
""").bindparams(bindparam("expected", expanding=True))

_FINALIZE_CLAIM_SQL = text(f"""
    UPDATE escrow_holds
    SET status = :new_status,
        released_at = CASE WHEN :new_status = 'released' THEN NOW() ELSE released_at END,
        refunded_at = CASE WHEN :new_status = 'refunded' THEN NOW() ELSE refunded_at END,
        pending_action = NULL,
        pending_amount = NULL,
        claim_token = NULL,
        claimed_at = NULL
    WHERE id = :hold_id
      AND claim_token = :token
      AND status IN ('held', 'disputed')
    RETURNING {_HOLD_COLUMNS}
""")

_RELEASE_CLAIM_SQL = text(f"""
    UPDATE escrow_holds
    SET pending_action = NULL,
        pending_amount = NULL,
        claim_token = NULL,
        claimed_at = NULL
    WHERE id = :hold_id AND claim_token = :token
    RETURNING {_HOLD_COLUMNS}
""")

# ---------------------------------------------------------------------------
# SQL: hold_settlements (append-only)
# ---------------------------------------------------------------------------

_INSERT_SETTLEMENT_SQL = text("""
    INSERT INTO hold_settlements (hold_id, seller_id, kind, amount, trigger)
    VALUES (:hold_id, :seller_id, :kind, :amount, :trigger)
    ON CONFLICT (hold_id, kind) DO NOTHING
    RETURNING id
""")

_LIST_SETTLEMENTS_SQL = text("""
    SELECT id, hold_id, seller_id, kind, amount, trigger, created_at
    FROM hold_settlements
    WHERE hold_id = :hold_id
    ORDER BY id
""")

# ---------------------------------------------------------------------------
# SQL: delivery_confirmations
# ---------------------------------------------------------------------------

_CONFIRMATION_COLUMNS = """
    id, transaction_id, hold_id, confirmation_code, confirmed, auto_confirmed,
    confirmed_at, created_at
"""

_INSERT_CONFIRMATION_SQL = text(f"""
    INSERT INTO delivery_confirmations
        (id, transaction_id, hold_id, confirmation_code)
    VALUES
        (:id, :transaction_id, :hold_id, :confirmation_code)
    ON CONFLICT (transaction_id) DO NOTHING
    RETURNING {_CONFIRMATION_COLUMNS}
""")

_GET_CONFIRMATION_SQL = text(
    f"SELECT {_CONFIRMATION_COLUMNS} FROM delivery_confirmations WHERE id = :id"
)

_GET_CONFIRMATION_BY_TXN_SQL = text(
    f"SELECT {_CONFIRMATION_COLUMNS} FROM delivery_confirmations "
    "WHERE transaction_id = :transaction_id"
)

_CONSUME_CONFIRMATION_SQL = text(f"""
    UPDATE delivery_confirmations
    SET confirmed = TRUE,
        auto_confirmed = :auto,
        confirmed_at = NOW()
    WHERE id = :id AND confirmed = FALSE
    RETURNING {_CONFIRMATION_COLUMNS}
""")

# ---------------------------------------------------------------------------
# SQL: shipping_proofs
# ---------------------------------------------------------------------------

_PROOF_COLUMNS = """
    id, transaction_id, seller_id, courier_name, courier_contact, tracking_number,
    dispatch_images, verification_score, verification_notes, dispatched_at, created_at
"""

_INSERT_PROOF_SQL = text(f"""
    INSERT INTO shipping_proofs
        (id, transaction_id, seller_id, courier_name, courier_contact,
         tracking_number, dispatch_images)
    VALUES
        (:id, :transaction_id, :seller_id, :courier_name, :courier_contact,
         :tracking_number, CAST(:dispatch_images AS JSONB))
    ON CONFLICT (transaction_id) DO NOTHING
    RETURNING {_PROOF_COLUMNS}
""")

_GET_PROOF_SQL = text(f"SELECT {_PROOF_COLUMNS} FROM shipping_proofs WHERE id = :id")

_SET_VERIFICATION_SQL = text("""
    UPDATE shipping_proofs
    SET verification_score = :score, verification_notes = :notes
    WHERE id = :id
""")


def _row_to_hold(row: object) -> EscrowHold:
    return EscrowHold(
        id=row.id,  # type: ignore[attr-defined]
        transaction_id=row.transaction_id,  # type: ignore[attr-defined]
        listing_id=row.listing_id,  # type: ignore[attr-defined]
        seller_id=row.seller_id,  # type: ignore[attr-defined]
        amount=row.amount,  # type: ignore[attr-defined]
        currency=row.currency,  # type: ignore[attr-defined]
        status=row.status,  # type: ignore[attr-defined]
        pending_action=row.pending_action,  # type: ignore[attr-defined]
        pending_amount=row.pending_amount,  # type: ignore[attr-defined]
        claim_token=row.claim_token,  # type: ignore[attr-defined]
        claimed_at=row.claimed_at,  # type: ignore[attr-defined]
        released_at=row.released_at,  # type: ignore[attr-defined]
        refunded_at=row.refunded_at,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
    )


def _row_to_settlement(row: object) -> HoldSettlement:
    return HoldSettlement(
        id=row.id,  # type: ignore[attr-defined]
        hold_id=row.hold_id,  # type: ignore[attr-defined]
        seller_id=row.seller_id,  # type: ignore[attr-defined]
        kind=row.kind,  # type: ignore[attr-defined]
        amount=row.amount,  # type: ignore[attr-defined]
        trigger=row.trigger,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
    )


def _row_to_confirmation(row: object) -> DeliveryConfirmation:
    return DeliveryConfirmation(
        id=row.id,  # type: ignore[attr-defined]
        transaction_id=row.transaction_id,  # type: ignore[attr-defined]
        hold_id=row.hold_id,  # type: ignore[attr-defined]
        confirmation_code=row.confirmation_code,  # type: ignore[attr-defined]
        confirmed=row.confirmed,  # type: ignore[attr-defined]
        auto_confirmed=row.auto_confirmed,  # type: ignore[attr-defined]
        confirmed_at=row.confirmed_at,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
    )


def _row_to_proof(row: object) -> ShippingProof:
    return ShippingProof(
        id=row.id,  # type: ignore[attr-defined]
        transaction_id=row.transaction_id,  # type: ignore[attr-defined]
        seller_id=row.seller_id,  # type: ignore[attr-defined]
        courier_name=row.courier_name,  # type: ignore[attr-defined]
        courier_contact=row.courier_contact,  # type: ignore[attr-defined]
        tracking_number=row.tracking_number,  # type: ignore[attr-defined]
        dispatch_images=list(row.dispatch_images or []),  # type: ignore[attr-defined]
        verification_score=row.verification_score,  # type: ignore[attr-defined]
        verification_notes=row.verification_notes,  # type: ignore[attr-defined]
        dispatched_at=row.dispatched_at,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
    )


class EscrowRepository:
    """Concrete repository: every write is one conditional statement."""

    async def get_hold(self, db: AsyncSession, hold_id: str) -> EscrowHold | None:
        row = (await db.execute(_GET_HOLD_SQL, {"hold_id": hold_id})).fetchone()
        return _row_to_hold(row) if row else None

    async def get_hold_by_transaction(
        self, db: AsyncSession, transaction_id: str
    ) -> EscrowHold | None:
        row = (
            await db.execute(_GET_HOLD_BY_TXN_SQL, {"transaction_id": transaction_id})
        ).fetchone()
        return _row_to_hold(row) if row else None

    async def insert_hold(self, db: AsyncSession, hold: EscrowHold) -> EscrowHold | None:
        result = await db.execute(
            _INSERT_HOLD_SQL,
            {
                "id": hold.id,
                "transaction_id": hold.transaction_id,
                "listing_id": hold.listing_id,
                "seller_id": hold.seller_id,
                "amount": hold.amount,
                "currency": hold.currency,
                "status": hold.status,
            },
        )
        row = result.fetchone()
        return _row_to_hold(row) if row else None

    async def transition_hold(
        self,
        db: AsyncSession,
        hold_id: str,
        expected: tuple[str, ...],
        new_status: str,
        require_unclaimed: bool = True,
    ) -> EscrowHold | None:
        result = await db.execute(
            _TRANSITION_HOLD_SQL,
            {
                "hold_id": hold_id,
                "expected": list(expected),
                "new_status": new_status,
                "require_unclaimed": require_unclaimed,
            },
        )
        row = result.fetchone()
        return _row_to_hold(row) if row else None

    async def claim_hold(
        self,
        db: AsyncSession,
        hold_id: str,
        expected: tuple[str, ...],
        action: str,
        amount: int,
        token: str,
    ) -> EscrowHold | None:
        result = await db.execute(
            _CLAIM_HOLD_SQL,
            {
                "hold_id": hold_id,
                "expected": list(expected),
                "action": action,
                "amount": amount,
                "token": token,
            },
        )
        row = result.fetchone()
        return _row_to_hold(row) if row else None

    async def finalize_claim(
        self, db: AsyncSession, hold_id: str, token: str, new_status: str
    ) -> EscrowHold | None:
        result = await db.execute(
            _FINALIZE_CLAIM_SQL,
            {"hold_id": hold_id, "token": token, "new_status": new_status},
        )
        row = result.fetchone()
        return _row_to_hold(row) if row else None

    async def release_claim(
        self, db: AsyncSession, hold_id: str, token: str
    ) -> EscrowHold | None:
        result = await db.execute(_RELEASE_CLAIM_SQL, {"hold_id": hold_id, "token": token})
        row = result.fetchone()
        return _row_to_hold(row) if row else None

    async def insert_settlement(
        self, db: AsyncSession, settlement: HoldSettlement
    ) -> bool:
        result = await db.execute(
            _INSERT_SETTLEMENT_SQL,
            {
                "hold_id": settlement.hold_id,
                "seller_id": settlement.seller_id,
                "kind": settlement.kind,
                "amount": settlement.amount,
                "trigger": settlement.trigger,
            },
        )
        return result.fetchone() is not None

    async def list_settlements(
        self, db: AsyncSession, hold_id: str
    ) -> list[HoldSettlement]:
        rows = (await db.execute(_LIST_SETTLEMENTS_SQL, {"hold_id": hold_id})).fetchall()
        return [_row_to_settlement(r) for r in rows]

    async def insert_confirmation(
        self, db: AsyncSession, confirmation: DeliveryConfirmation
    ) -> DeliveryConfirmation | None:
        result = await db.execute(
            _INSERT_CONFIRMATION_SQL,
            {
                "id": confirmation.id,
                "transaction_id": confirmation.transaction_id,
                "hold_id": confirmation.hold_id,
                "confirmation_code": confirmation.confirmation_code,
            },
        )
        row = result.fetchone()
        return _row_to_confirmation(row) if row else None

    async def get_confirmation(
        self, db: AsyncSession, confirmation_id: str
    ) -> DeliveryConfirmation | None:
        row = (await db.execute(_GET_CONFIRMATION_SQL, {"id": confirmation_id})).fetchone()
        return _row_to_confirmation(row) if row else None

    async def get_confirmation_by_transaction(
        self, db: AsyncSession, transaction_id: str
    ) -> DeliveryConfirmation | None:
        row = (
            await db.execute(_GET_CONFIRMATION_BY_TXN_SQL, {"transaction_id": transaction_id})
        ).fetchone()
        return _row_to_confirmation(row) if row else None

    async def consume_confirmation(
        self, db: AsyncSession, confirmation_id: str, auto: bool
    ) -> DeliveryConfirmation | None:
        result = await db.execute(
            _CONSUME_CONFIRMATION_SQL, {"id": confirmation_id, "auto": auto}
        )
        row = result.fetchone()
        return _row_to_confirmation(row) if row else None

    async def insert_shipping_proof(
        self, db: AsyncSession, proof: ShippingProof
    ) -> ShippingProof | None:
        result = await db.execute(
            _INSERT_PROOF_SQL,
            {
                "id": proof.id,
                "transaction_id": proof.transaction_id,
                "seller_id": proof.seller_id,
                "courier_name": proof.courier_name,
                "courier_contact": proof.courier_contact,
                "tracking_number": proof.tracking_number,
                "dispatch_images": json.dumps(proof.dispatch_images),
            },
        )
        row = result.fetchone()
        return _row_to_proof(row) if row else None

    async def get_shipping_proof(
        self, db: AsyncSession, proof_id: str
    ) -> ShippingProof | None:
        row = (await db.execute(_GET_PROOF_SQL, {"id": proof_id})).fetchone()
        return _row_to_proof(row) if row else None

    async def set_verification(
        self, db: AsyncSession, proof_id: str, score: int, notes: str | None
    ) -> None:
        result = await db.execute(
            _SET_VERIFICATION_SQL, {"id": proof_id, "score": score, "notes": notes}
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            raise InternalError(f"Shipping proof {proof_id} vanished during verification")
