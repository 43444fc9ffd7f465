"""Payment attempt recording.

A Transaction row is written as ``pending`` before the gateway is asked for a
checkout session; the gateway's charge.success webhook later completes it and
locks the funds into escrow.
"""

import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.amounts import validate_amount
from src.kb_common.enums import TransactionStatus
from src.kb_common.errors import (
    ExternalServiceError,
    InvalidInputError,
    TransactionNotFoundError,
)
from src.kb_common.id_generator import generate_id
from src.kb_payments.domain.gateway import PaymentGatewayProtocol
from src.kb_payments.domain.models import ChargeSession, Transaction
from src.kb_payments.domain.repository import TransactionRepositoryProtocol

logger = logging.getLogger("kb.payments")


def payment_reference(listing_id: str, now_ms: int | None = None) -> str:
    """``KRW_<listing>_<epoch ms>``: shared with the gateway as the charge reference."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"KRW_{listing_id}_{now_ms}"


class PaymentService:
    def __init__(
        self,
        transactions: TransactionRepositoryProtocol,
        gateway: PaymentGatewayProtocol,
    ) -> None:
        self._transactions = transactions
        self._gateway = gateway

    async def get(self, db: AsyncSession, transaction_id: str) -> Transaction:
        txn = await self._transactions.get_by_id(db, transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)
        return txn

    async def record_payment(
        self,
        db: AsyncSession,
        listing_id: str,
        seller_id: str,
        amount: int,
        currency: str,
        payment_method: str,
        buyer_email: str,
        buyer_name: str | None = None,
        buyer_phone: str | None = None,
    ) -> tuple[Transaction, ChargeSession]:
        try:
            validate_amount(amount)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc

        txn = Transaction(
            id=generate_id("txn"),
            listing_id=listing_id,
            seller_id=seller_id,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            payment_reference=payment_reference(listing_id),
            status=TransactionStatus.PENDING.value,
            buyer_name=buyer_name,
            buyer_phone=buyer_phone,
            buyer_email=buyer_email,
        )
        try:
            txn = await self._transactions.create(db, txn)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        try:
            session = await self._gateway.initialize_charge(
                txn.payment_reference,
                txn.amount,
                txn.currency,
                buyer_email,
                {"transaction_id": txn.id, "listing_id": listing_id},
            )
        except ExternalServiceError:
            await self._fail(db, txn)
            raise

        logger.info(
            "Payment %s recorded for listing %s: %d %s via %s",
            txn.payment_reference,
            listing_id,
            amount,
            currency,
            self._gateway.name,
        )
        return txn, session

    async def _fail(self, db: AsyncSession, txn: Transaction) -> None:
        try:
            await self._transactions.transition_status(
                db, txn.id, (TransactionStatus.PENDING.value,), TransactionStatus.FAILED.value
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.warning("Charge initialization failed for %s", txn.payment_reference)
