"""DisputeResolver: opens disputes and settles them through the escrow state machine.

Resolution is claimed with a conditional write on ``resolution = 'pending'``
before any money moves, so two admins resolving the same dispute cannot both
trigger a settlement. If settlement fails, the claim is reverted and the
dispute can be resolved again. A hold settled outside the dispute turns the
dispute audit-only.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.enums import DisputeInitiator, DisputeResolution, ReleaseTrigger
from src.kb_common.errors import (
    AlreadyResolvedError,
    AlreadyTerminalError,
    DisputeExistsError,
    DisputeNotFoundError,
    ForbiddenError,
    InvalidAmountError,
    PreconditionFailedError,
    TransactionNotFoundError,
)
from src.kb_common.id_generator import generate_id
from src.kb_dispute.domain.models import Dispute, ResolutionOutcome
from src.kb_dispute.domain.repository import DisputeRepositoryProtocol
from src.kb_escrow.application.service import EscrowStateMachine
from src.kb_escrow.domain.models import EscrowHold, TransitionOutcome
from src.kb_payments.domain.repository import TransactionRepositoryProtocol

logger = logging.getLogger("kb.dispute")


class DisputeResolver:
    def __init__(
        self,
        disputes: DisputeRepositoryProtocol,
        escrow: EscrowStateMachine,
        transactions: TransactionRepositoryProtocol,
    ) -> None:
        self._disputes = disputes
        self._escrow = escrow
        self._transactions = transactions

    async def get(self, db: AsyncSession, dispute_id: str) -> Dispute:
        dispute = await self._disputes.get_by_id(db, dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(dispute_id)
        return dispute

    async def create(
        self,
        db: AsyncSession,
        transaction_id: str,
        reason: str,
        evidence: list[str],
        initiated_by: str,
        seller_id: str | None = None,
    ) -> Dispute:
        """Open a dispute and freeze the hold. ``seller_id`` restricts sellers to their own sales."""
        DisputeInitiator(initiated_by)
        txn = await self._transactions.get_by_id(db, transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)
        if seller_id is not None and txn.seller_id != seller_id:
            raise ForbiddenError("Only the listing's seller can dispute this transaction")

        hold = await self._escrow.get_hold_for_transaction(db, transaction_id)
        audit_only = hold.is_terminal
        try:
            dispute = await self._disputes.insert(
                db,
                Dispute(
                    id=generate_id("dsp"),
                    transaction_id=transaction_id,
                    hold_id=hold.id,
                    seller_id=txn.seller_id,
                    initiated_by=initiated_by,
                    reason=reason,
                    evidence=list(evidence),
                    audit_only=audit_only,
                ),
            )
            if dispute is None:
                raise DisputeExistsError(transaction_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if audit_only:
            logger.warning(
                "Dispute %s filed against settled hold %s (%s); stored for audit",
                dispute.id,
                hold.id,
                hold.status,
            )
            raise AlreadyTerminalError(hold.id, hold.status)

        try:
            await self._escrow.mark_disputed(db, hold.id, dispute.id)
        except AlreadyTerminalError:
            # Hold settled between the read above and the transition
            await self._mark_audit_only(db, dispute)
            raise

        logger.info("Dispute %s opened by %s on hold %s", dispute.id, initiated_by, hold.id)
        return dispute

    async def _mark_audit_only(self, db: AsyncSession, dispute: Dispute) -> Dispute | None:
        try:
            marked = await self._disputes.mark_audit_only(db, dispute.id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return marked

    async def reject_delivery(
        self,
        db: AsyncSession,
        confirmation_id: str,
        code: str,
        reason: str,
        evidence: list[str],
    ) -> Dispute:
        """Buyer reports a problem: transaction → rejected and a buyer dispute freezes the hold."""
        confirmation = await self._escrow.verify_confirmation(db, confirmation_id, code)
        if confirmation.confirmed:
            raise PreconditionFailedError("delivery was already confirmed")
        await self._escrow.mark_rejected(db, confirmation.transaction_id)
        return await self.create(
            db,
            confirmation.transaction_id,
            reason,
            evidence,
            DisputeInitiator.BUYER.value,
        )

    async def resolve(
        self,
        db: AsyncSession,
        dispute_id: str,
        resolution: str,
        partial_amount: int | None = None,
    ) -> ResolutionOutcome:
        if resolution == DisputeResolution.PENDING:
            raise PreconditionFailedError("resolution must be a final decision", code=4005)
        DisputeResolution(resolution)

        dispute = await self.get(db, dispute_id)
        if dispute.hold_id is None:
            raise PreconditionFailedError(f"dispute {dispute_id} has no hold", code=4005)
        hold = await self._escrow.get_hold(db, dispute.hold_id)
        if resolution == DisputeResolution.PARTIAL_REFUND and (
            partial_amount is None or not (0 < partial_amount < hold.amount)
        ):
            raise InvalidAmountError(partial_amount, hold.amount)
        if dispute.is_pending and not dispute.audit_only and hold.is_terminal:
            # Settled outside the dispute, e.g. a manual admin release.
            # A concurrent resolution wins and is reported by the claim below.
            if await self._mark_audit_only(db, dispute) is not None:
                logger.warning(
                    "Dispute %s cannot be resolved: hold %s already %s; kept for audit",
                    dispute_id,
                    hold.id,
                    hold.status,
                )
                raise AlreadyTerminalError(hold.id, hold.status)

        try:
            claimed = await self._disputes.claim_resolution(
                db, dispute_id, resolution, partial_amount
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        if claimed is None:
            current = await self.get(db, dispute_id)
            if not current.is_pending:
                logger.warning(
                    "Second resolution of dispute %s rejected (already %s)",
                    dispute_id,
                    current.resolution,
                )
                raise AlreadyResolvedError(dispute_id, current.resolution)
            raise PreconditionFailedError(
                f"dispute {dispute_id} is audit-only and cannot be resolved", code=4005
            )

        try:
            settlement = await self._settle(db, claimed, hold, resolution, partial_amount)
        except Exception as exc:
            await self._revert(db, claimed, resolution)
            if isinstance(exc, AlreadyTerminalError):
                await self._mark_audit_only(db, claimed)
            logger.warning(
                "Resolution %s of dispute %s reverted: %s", resolution, dispute_id, exc
            )
            raise

        logger.info(
            "Dispute %s resolved as %s (refunded %d, released %d)",
            dispute_id,
            resolution,
            settlement.refunded_amount,
            settlement.released_amount,
        )
        return ResolutionOutcome(dispute=claimed, settlement=settlement)

    async def _settle(
        self,
        db: AsyncSession,
        dispute: Dispute,
        hold: EscrowHold,
        resolution: str,
        partial_amount: int | None,
    ) -> TransitionOutcome:
        reason = f"dispute {dispute.id}: {resolution}"
        trigger = ReleaseTrigger.DISPUTE_RESOLUTION.value
        if resolution == DisputeResolution.REFUND_BUYER:
            return await self._escrow.refund(db, hold.id, reason, trigger=trigger)
        if resolution == DisputeResolution.PAY_SELLER:
            return await self._escrow.release(db, hold.id, trigger)
        if partial_amount is None:
            raise InvalidAmountError(partial_amount, hold.amount)
        return await self._escrow.settle_partial(db, hold.id, partial_amount, reason, trigger=trigger)

    async def _revert(self, db: AsyncSession, dispute: Dispute, resolution: str) -> None:
        try:
            await self._disputes.revert_resolution(db, dispute.id, resolution)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
