"""Repository Protocol for transactions: unit tests inject fakes."""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_payments.domain.models import Transaction


class TransactionRepositoryProtocol(Protocol):
    async def create(self, db: AsyncSession, txn: Transaction) -> Transaction: ...

    async def get_by_id(self, db: AsyncSession, transaction_id: str) -> Transaction | None: ...

    async def get_by_reference(
        self, db: AsyncSession, payment_reference: str
    ) -> Transaction | None: ...

    async def transition_status(
        self,
        db: AsyncSession,
        transaction_id: str,
        expected: tuple[str, ...],
        new_status: str,
    ) -> Transaction | None:
        """Conditional write; None when the row was not in an expected status."""
        ...
