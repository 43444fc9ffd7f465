"""Repository Protocols: dependency inversion for testability.

Every mutating method is a single-row conditional write. ``None`` means the
precondition in the WHERE clause did not hold; callers re-read and branch,
they never trust an earlier read.
"""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_escrow.domain.models import (
    DeliveryConfirmation,
    EscrowHold,
    HoldSettlement,
    ShippingProof,
)


class EscrowRepositoryProtocol(Protocol):
    async def get_hold(self, db: AsyncSession, hold_id: str) -> EscrowHold | None: ...

    async def get_hold_by_transaction(
        self, db: AsyncSession, transaction_id: str
    ) -> EscrowHold | None: ...

    async def insert_hold(self, db: AsyncSession, hold: EscrowHold) -> EscrowHold | None:
        """INSERT … ON CONFLICT (transaction_id) DO NOTHING."""
        ...

    async def transition_hold(
        self,
        db: AsyncSession,
        hold_id: str,
        expected: tuple[str, ...],
        new_status: str,
        require_unclaimed: bool = True,
    ) -> EscrowHold | None: ...

    async def claim_hold(
        self,
        db: AsyncSession,
        hold_id: str,
        expected: tuple[str, ...],
        action: str,
        amount: int,
        token: str,
    ) -> EscrowHold | None: ...

    async def finalize_claim(
        self, db: AsyncSession, hold_id: str, token: str, new_status: str
    ) -> EscrowHold | None: ...

    async def release_claim(
        self, db: AsyncSession, hold_id: str, token: str
    ) -> EscrowHold | None: ...

    async def insert_settlement(
        self, db: AsyncSession, settlement: HoldSettlement
    ) -> bool: ...

    async def list_settlements(
        self, db: AsyncSession, hold_id: str
    ) -> list[HoldSettlement]: ...

    async def insert_confirmation(
        self, db: AsyncSession, confirmation: DeliveryConfirmation
    ) -> DeliveryConfirmation | None: ...

    async def get_confirmation(
        self, db: AsyncSession, confirmation_id: str
    ) -> DeliveryConfirmation | None: ...

    async def get_confirmation_by_transaction(
        self, db: AsyncSession, transaction_id: str
    ) -> DeliveryConfirmation | None: ...

    async def consume_confirmation(
        self, db: AsyncSession, confirmation_id: str, auto: bool
    ) -> DeliveryConfirmation | None: ...

    async def insert_shipping_proof(
        self, db: AsyncSession, proof: ShippingProof
    ) -> ShippingProof | None: ...

    async def get_shipping_proof(
        self, db: AsyncSession, proof_id: str
    ) -> ShippingProof | None: ...

    async def set_verification(
        self, db: AsyncSession, proof_id: str, score: int, notes: str | None
    ) -> None: ...


class PayoutQueueProtocol(Protocol):
    """Implemented by kb_payout's repository; release enqueues in the same commit."""

    async def enqueue_release(
        self,
        db: AsyncSession,
        hold_id: str,
        seller_id: str,
        amount: int,
        currency: str,
    ) -> str:
        """Insert the release payout job (unique per hold) and return its id."""
        ...
