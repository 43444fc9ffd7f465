"""Repository Protocol for disputes."""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_dispute.domain.models import Dispute


class DisputeRepositoryProtocol(Protocol):
    async def insert(self, db: AsyncSession, dispute: Dispute) -> Dispute | None:
        """INSERT … ON CONFLICT (transaction_id) DO NOTHING."""
        ...

    async def get_by_id(self, db: AsyncSession, dispute_id: str) -> Dispute | None: ...

    async def get_by_transaction(
        self, db: AsyncSession, transaction_id: str
    ) -> Dispute | None: ...

    async def claim_resolution(
        self,
        db: AsyncSession,
        dispute_id: str,
        resolution: str,
        partial_amount: int | None,
    ) -> Dispute | None:
        """pending → resolution; None if already resolved or audit-only."""
        ...

    async def revert_resolution(
        self, db: AsyncSession, dispute_id: str, resolution: str
    ) -> Dispute | None: ...

    async def mark_audit_only(self, db: AsyncSession, dispute_id: str) -> Dispute | None: ...
