"""Shipping proof recording and advisory verification scoring.

The proof's ``dispatched_at`` starts the auto-release window. Scoring runs in
the background afterwards and only annotates the proof.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.kb_common.enums import HoldStatus
from src.kb_common.errors import (
    ForbiddenError,
    HoldNotFoundError,
    PreconditionFailedError,
    TransactionNotFoundError,
)
from src.kb_common.id_generator import generate_id
from src.kb_escrow.domain.models import ShippingProof
from src.kb_escrow.domain.repository import EscrowRepositoryProtocol
from src.kb_escrow.domain.verification import VerificationServiceProtocol
from src.kb_payments.domain.repository import TransactionRepositoryProtocol

logger = logging.getLogger("kb.verification")


class ShipmentService:
    def __init__(
        self,
        holds: EscrowRepositoryProtocol,
        transactions: TransactionRepositoryProtocol,
    ) -> None:
        self._holds = holds
        self._transactions = transactions

    async def record_shipment(
        self,
        db: AsyncSession,
        seller_id: str,
        transaction_id: str,
        courier_name: str,
        courier_contact: str | None = None,
        tracking_number: str | None = None,
        dispatch_images: list[str] | None = None,
    ) -> ShippingProof:
        txn = await self._transactions.get_by_id(db, transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)
        if txn.seller_id != seller_id:
            raise ForbiddenError("Only the listing's seller can record a shipment")

        hold = await self._holds.get_hold_by_transaction(db, transaction_id)
        if hold is None:
            raise HoldNotFoundError(f"transaction {transaction_id}")
        if hold.status != HoldStatus.HELD:
            raise PreconditionFailedError(f"hold {hold.id} is {hold.status}, cannot ship")

        try:
            proof = await self._holds.insert_shipping_proof(
                db,
                ShippingProof(
                    id=generate_id("shp"),
                    transaction_id=transaction_id,
                    seller_id=seller_id,
                    courier_name=courier_name,
                    courier_contact=courier_contact,
                    tracking_number=tracking_number,
                    dispatch_images=list(dispatch_images or []),
                ),
            )
            if proof is None:
                raise PreconditionFailedError(
                    f"shipment already recorded for transaction {transaction_id}"
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Shipment %s recorded for transaction %s", proof.id, transaction_id)
        return proof


async def score_shipment(
    session_factory: async_sessionmaker[AsyncSession],
    holds: EscrowRepositoryProtocol,
    verifier: VerificationServiceProtocol,
    proof: ShippingProof,
) -> None:
    """Background task: failures are logged and never reach the seller's request."""
    try:
        result = await verifier.score(proof)
        if result is None:
            return
        async with session_factory() as db:
            try:
                await holds.set_verification(db, proof.id, result.score, result.notes)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info("Shipment %s scored %d", proof.id, result.score)
    except Exception:
        logger.exception("Verification of shipment %s failed", proof.id)
