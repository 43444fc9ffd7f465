"""EscrowStateMachine: the only writer of escrow_holds.status and transactions.status.

Every transition is a conditional UPDATE against the prior status. The caller
that gets a row back owns the transition; everyone else re-reads the row and
either returns an idempotent no-op (the hold already sits where they wanted
it) or raises (AlreadyTerminal, SettlementInProgress, PreconditionFailed).

Refunds call the gateway, so they run in three commits: claim the hold
(``pending_action``), call the gateway outside any DB transaction, then
finalize or release the claim. Releases do not move money; they write the
RELEASE settlement and enqueue a payout job in the same commit.
"""

import hmac
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.amounts import split_amount
from src.kb_common.enums import (
    GatewayOutcome,
    HoldStatus,
    PendingAction,
    ReleaseTrigger,
    SettlementKind,
    TransactionStatus,
)
from src.kb_common.errors import (
    AlreadyLockedError,
    AlreadyTerminalError,
    AmountMismatchError,
    ExternalServiceError,
    HoldNotFoundError,
    InvalidAmountError,
    InvalidConfirmationCodeError,
    PreconditionFailedError,
    SettlementInProgressError,
    TransactionNotCompletedError,
    TransactionNotFoundError,
)
from src.kb_common.id_generator import generate_confirmation_code, generate_id
from src.kb_escrow.domain.models import (
    DeliveryConfirmation,
    EscrowHold,
    HoldSettlement,
    LockResult,
    TransitionOutcome,
)
from src.kb_escrow.domain.repository import EscrowRepositoryProtocol, PayoutQueueProtocol
from src.kb_escrow.domain.state_machine import prior_states, release_prior_states
from src.kb_payments.domain.gateway import PaymentGatewayProtocol, call_bounded
from src.kb_payments.domain.models import GatewayResult, Transaction
from src.kb_payments.domain.repository import TransactionRepositoryProtocol

logger = logging.getLogger("kb.escrow")

_CALLBACK_TRIGGER = "gateway_callback"


class EscrowStateMachine:
    def __init__(
        self,
        holds: EscrowRepositoryProtocol,
        transactions: TransactionRepositoryProtocol,
        payouts: PayoutQueueProtocol,
        gateway: PaymentGatewayProtocol,
        gateway_timeout: float = 10.0,
    ) -> None:
        self._holds = holds
        self._transactions = transactions
        self._payouts = payouts
        self._gateway = gateway
        self._gateway_timeout = gateway_timeout

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_hold(self, db: AsyncSession, hold_id: str) -> EscrowHold:
        hold = await self._holds.get_hold(db, hold_id)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        return hold

    async def get_hold_for_transaction(
        self, db: AsyncSession, transaction_id: str
    ) -> EscrowHold:
        hold = await self._holds.get_hold_by_transaction(db, transaction_id)
        if hold is None:
            raise HoldNotFoundError(f"transaction {transaction_id}")
        return hold

    # ------------------------------------------------------------------
    # Payment completion (gateway callback) and lock
    # ------------------------------------------------------------------

    async def complete_payment(
        self, db: AsyncSession, payment_reference: str, amount: int
    ) -> LockResult | None:
        """charge.success: pending → completed, then lock. Safe to replay."""
        txn = await self._transactions.get_by_reference(db, payment_reference)
        if txn is None:
            logger.warning("charge.success for unknown reference %s", payment_reference)
            return None
        if amount != txn.amount:
            raise AmountMismatchError(txn.amount, amount)

        try:
            # A late success overrides an earlier charge.failed for the same attempt
            updated = await self._transactions.transition_status(
                db,
                txn.id,
                (TransactionStatus.PENDING.value, TransactionStatus.FAILED.value),
                TransactionStatus.COMPLETED.value,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if updated is None:
            current = await self._transactions.get_by_id(db, txn.id)
            if current is None or current.status != TransactionStatus.COMPLETED:
                logger.info(
                    "charge.success replay for %s ignored (status=%s)",
                    txn.id,
                    current.status if current else "missing",
                )
                return None
        else:
            logger.info("Transaction %s completed (%d %s)", txn.id, txn.amount, txn.currency)
        # Lock also re-drives a crash between completing and locking
        return await self.lock(db, txn.id)

    async def fail_payment(
        self, db: AsyncSession, payment_reference: str
    ) -> Transaction | None:
        txn = await self._transactions.get_by_reference(db, payment_reference)
        if txn is None:
            logger.warning("charge.failed for unknown reference %s", payment_reference)
            return None
        try:
            updated = await self._transactions.transition_status(
                db, txn.id, (TransactionStatus.PENDING.value,), TransactionStatus.FAILED.value
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return updated

    async def lock(self, db: AsyncSession, transaction_id: str) -> LockResult:
        """pending → held: create the hold and its single-use confirmation code."""
        txn = await self._transactions.get_by_id(db, transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)

        existing = await self._holds.get_hold_by_transaction(db, transaction_id)
        if existing is not None:
            return await self._existing_lock(db, existing)
        if txn.status != TransactionStatus.COMPLETED:
            raise TransactionNotCompletedError(transaction_id, txn.status)

        candidate = EscrowHold(
            id=generate_id("hold"),
            transaction_id=txn.id,
            listing_id=txn.listing_id,
            seller_id=txn.seller_id,
            amount=txn.amount,
            currency=txn.currency,
            status=HoldStatus.HELD.value,
        )
        try:
            hold = await self._holds.insert_hold(db, candidate)
            if hold is None:
                # Lost the insert race to a concurrent lock
                await db.rollback()
                winner = await self._holds.get_hold_by_transaction(db, transaction_id)
                if winner is None:
                    raise PreconditionFailedError(f"hold for {transaction_id} vanished")
                return await self._existing_lock(db, winner)
            confirmation = await self._holds.insert_confirmation(
                db,
                DeliveryConfirmation(
                    id=generate_id("dcf"),
                    transaction_id=txn.id,
                    hold_id=hold.id,
                    confirmation_code=generate_confirmation_code(),
                ),
            )
            if confirmation is None:
                raise PreconditionFailedError(
                    f"confirmation for {transaction_id} exists without a hold"
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Locked %d %s for seller %s (hold=%s)",
            hold.amount,
            hold.currency,
            hold.seller_id,
            hold.id,
        )
        return LockResult(hold=hold, confirmation=confirmation, applied=True)

    async def _existing_lock(self, db: AsyncSession, hold: EscrowHold) -> LockResult:
        if hold.status != HoldStatus.HELD:
            raise AlreadyLockedError(hold.transaction_id, hold.status)
        confirmation = await self._holds.get_confirmation_by_transaction(db, hold.transaction_id)
        if confirmation is None:
            raise PreconditionFailedError(f"hold {hold.id} has no delivery confirmation")
        return LockResult(hold=hold, confirmation=confirmation, applied=False)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(
        self, db: AsyncSession, hold_id: str, trigger: str
    ) -> TransitionOutcome:
        """held|disputed → released. Enqueues exactly one payout job."""
        ReleaseTrigger(trigger)
        try:
            hold = await self._holds.transition_hold(
                db, hold_id, release_prior_states(trigger), HoldStatus.RELEASED.value
            )
            if hold is None:
                await db.rollback()
                current = await self.get_hold(db, hold_id)
                return self._lost_race(current, HoldStatus.RELEASED.value, "release", trigger)

            await self._holds.insert_settlement(
                db,
                HoldSettlement(
                    hold_id=hold.id,
                    seller_id=hold.seller_id,
                    kind=SettlementKind.RELEASE.value,
                    amount=hold.amount,
                    trigger=trigger,
                ),
            )
            job_id = await self._payouts.enqueue_release(
                db, hold.id, hold.seller_id, hold.amount, hold.currency
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Released %d %s on hold %s via %s (payout job %s)",
            hold.amount,
            hold.currency,
            hold.id,
            trigger,
            job_id,
        )
        return TransitionOutcome(
            hold=hold,
            applied=True,
            action="release",
            trigger=trigger,
            payout_job_id=job_id,
            released_amount=hold.amount,
        )

    # ------------------------------------------------------------------
    # Refund (full and partial)
    # ------------------------------------------------------------------

    async def refund(
        self,
        db: AsyncSession,
        hold_id: str,
        reason: str,
        trigger: str = ReleaseTrigger.MANUAL_ADMIN.value,
    ) -> TransitionOutcome:
        """held|disputed → refunded through the gateway."""
        hold = await self.get_hold(db, hold_id)
        if hold.status == HoldStatus.RELEASED:
            logger.warning("Refund rejected: hold %s already released (%s)", hold.id, reason)
            raise AlreadyTerminalError(hold.id, hold.status)
        if hold.status == HoldStatus.REFUNDED:
            return TransitionOutcome(hold=hold, applied=False, action="refund", trigger=trigger)
        return await self._drive_refund(
            db, hold, PendingAction.REFUND.value, hold.amount, reason, trigger
        )

    async def settle_partial(
        self,
        db: AsyncSession,
        hold_id: str,
        refund_amount: int,
        reason: str,
        trigger: str = ReleaseTrigger.DISPUTE_RESOLUTION.value,
    ) -> TransitionOutcome:
        """Refund ``refund_amount`` to the buyer and release the remainder."""
        hold = await self.get_hold(db, hold_id)
        if not (0 < refund_amount < hold.amount):
            raise InvalidAmountError(refund_amount, hold.amount)
        if hold.is_terminal:
            settled = await self._holds.list_settlements(db, hold.id)
            refunded = [s for s in settled if s.kind == SettlementKind.REFUND]
            if refunded and refunded[0].amount == refund_amount:
                return TransitionOutcome(
                    hold=hold, applied=False, action="partial_refund", trigger=trigger
                )
            raise AlreadyTerminalError(hold.id, hold.status)
        return await self._drive_refund(
            db, hold, PendingAction.PARTIAL_REFUND.value, refund_amount, reason, trigger
        )

    async def _drive_refund(
        self,
        db: AsyncSession,
        hold: EscrowHold,
        action: str,
        refund_amount: int,
        reason: str,
        trigger: str,
    ) -> TransitionOutcome:
        token = uuid.uuid4().hex
        try:
            claimed = await self._holds.claim_hold(
                db, hold.id, prior_states(HoldStatus.REFUNDED), action, refund_amount, token
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if claimed is None:
            current = await self.get_hold(db, hold.id)
            if (
                current.pending_action == action
                and current.pending_amount == refund_amount
                and current.claim_token is not None
            ):
                # Re-drive an earlier attempt whose outcome never came back
                claimed, token = current, current.claim_token
                logger.info("Re-driving in-flight %s on hold %s", action, hold.id)
            else:
                return self._lost_race(current, HoldStatus.REFUNDED.value, action, trigger)

        txn = await self._transactions.get_by_id(db, claimed.transaction_id)
        if txn is None:
            raise TransactionNotFoundError(claimed.transaction_id)

        result = await call_bounded(
            self._gateway.refund(txn.payment_reference, refund_amount, f"{action}:{claimed.id}"),
            self._gateway_timeout,
            "refund",
        )
        logger.info(
            "Gateway %s of %d on hold %s (%s): %s",
            action,
            refund_amount,
            claimed.id,
            reason,
            result.outcome.value,
        )
        return await self._apply_refund_result(db, claimed, token, result, trigger)

    async def _apply_refund_result(
        self,
        db: AsyncSession,
        hold: EscrowHold,
        token: str,
        result: GatewayResult,
        trigger: str,
    ) -> TransitionOutcome:
        if result.succeeded:
            return await self._finalize_refund(db, hold, token, trigger)

        if result.definitely_failed:
            try:
                await self._holds.release_claim(db, hold.id, token)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            logger.warning("Refund on hold %s failed: %s", hold.id, result.detail)
            raise ExternalServiceError("gateway", f"refund failed: {result.detail}")

        if result.outcome == GatewayOutcome.AMBIGUOUS:
            # Claim stays in place; the next call re-drives with the same key
            raise ExternalServiceError(
                "gateway", "refund outcome unknown, retry to re-drive", retry_after=60
            )

        return TransitionOutcome(
            hold=hold,
            applied=False,
            action=hold.pending_action or "refund",
            trigger=trigger,
            in_flight=True,
        )

    async def _finalize_refund(
        self, db: AsyncSession, hold: EscrowHold, token: str, trigger: str
    ) -> TransitionOutcome:
        action = hold.pending_action or PendingAction.REFUND.value
        if action == PendingAction.PARTIAL_REFUND and hold.pending_amount is not None:
            refund_amount, release_amount = split_amount(hold.amount, hold.pending_amount)
        else:
            refund_amount, release_amount = hold.amount, 0
        # Nominal status follows the larger share; ties go to the seller
        new_status = (
            HoldStatus.REFUNDED.value
            if refund_amount > release_amount
            else HoldStatus.RELEASED.value
        )

        job_id: str | None = None
        try:
            final = await self._holds.finalize_claim(db, hold.id, token, new_status)
            if final is None:
                await db.rollback()
                current = await self.get_hold(db, hold.id)
                return self._lost_race(current, new_status, action, trigger)

            await self._holds.insert_settlement(
                db,
                HoldSettlement(
                    hold_id=final.id,
                    seller_id=final.seller_id,
                    kind=SettlementKind.REFUND.value,
                    amount=refund_amount,
                    trigger=trigger,
                ),
            )
            if release_amount > 0:
                await self._holds.insert_settlement(
                    db,
                    HoldSettlement(
                        hold_id=final.id,
                        seller_id=final.seller_id,
                        kind=SettlementKind.RELEASE.value,
                        amount=release_amount,
                        trigger=trigger,
                    ),
                )
                job_id = await self._payouts.enqueue_release(
                    db, final.id, final.seller_id, release_amount, final.currency
                )
            if new_status == HoldStatus.REFUNDED:
                await self._transactions.transition_status(
                    db,
                    final.transaction_id,
                    (TransactionStatus.COMPLETED.value, TransactionStatus.REJECTED.value),
                    TransactionStatus.REFUNDED.value,
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Hold %s settled by %s: refunded %d, released %d",
            final.id,
            action,
            refund_amount,
            release_amount,
        )
        return TransitionOutcome(
            hold=final,
            applied=True,
            action=action,
            trigger=trigger,
            payout_job_id=job_id,
            released_amount=release_amount,
            refunded_amount=refund_amount,
        )

    async def complete_refund_callback(
        self,
        db: AsyncSession,
        payment_reference: str,
        succeeded: bool,
        detail: str | None = None,
    ) -> TransitionOutcome | None:
        """refund.processed / refund.failed for a refund the gateway accepted asynchronously."""
        txn = await self._transactions.get_by_reference(db, payment_reference)
        if txn is None:
            logger.warning("Refund callback for unknown reference %s", payment_reference)
            return None
        hold = await self._holds.get_hold_by_transaction(db, txn.id)
        if hold is None or hold.claim_token is None:
            logger.info("Refund callback for %s has nothing in flight; ignored", payment_reference)
            return None

        if succeeded:
            return await self._finalize_refund(db, hold, hold.claim_token, _CALLBACK_TRIGGER)

        try:
            await self._holds.release_claim(db, hold.id, hold.claim_token)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.warning("Gateway reported refund failure on hold %s: %s", hold.id, detail)
        return TransitionOutcome(
            hold=hold, applied=False, action=hold.pending_action or "refund", trigger=_CALLBACK_TRIGGER
        )

    # ------------------------------------------------------------------
    # Disputes and delivery
    # ------------------------------------------------------------------

    async def mark_disputed(
        self, db: AsyncSession, hold_id: str, dispute_id: str
    ) -> TransitionOutcome:
        """held → disputed. Allowed while a refund is in flight; never after settlement."""
        try:
            hold = await self._holds.transition_hold(
                db,
                hold_id,
                (HoldStatus.HELD.value,),
                HoldStatus.DISPUTED.value,
                require_unclaimed=False,
            )
            if hold is None:
                await db.rollback()
                current = await self.get_hold(db, hold_id)
                return self._lost_race(current, HoldStatus.DISPUTED.value, "dispute", None)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("Hold %s disputed (dispute %s)", hold.id, dispute_id)
        return TransitionOutcome(hold=hold, applied=True, action="dispute")

    async def mark_rejected(
        self, db: AsyncSession, transaction_id: str
    ) -> Transaction | None:
        """Buyer rejected the delivery: completed → rejected."""
        try:
            txn = await self._transactions.transition_status(
                db,
                transaction_id,
                (TransactionStatus.COMPLETED.value,),
                TransactionStatus.REJECTED.value,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return txn

    async def verify_confirmation(
        self, db: AsyncSession, confirmation_id: str, code: str
    ) -> DeliveryConfirmation:
        confirmation = await self._holds.get_confirmation(db, confirmation_id)
        if confirmation is None or not hmac.compare_digest(
            confirmation.confirmation_code, code.strip().upper()
        ):
            raise InvalidConfirmationCodeError()
        return confirmation

    async def confirm_delivery(
        self, db: AsyncSession, confirmation_id: str, code: str
    ) -> TransitionOutcome:
        """Consume the buyer's code once, then release. Re-drives a half-done confirm."""
        confirmation = await self.verify_confirmation(db, confirmation_id, code)
        if not confirmation.confirmed:
            hold = await self.get_hold(db, confirmation.hold_id)
            if hold.status == HoldStatus.DISPUTED:
                raise PreconditionFailedError(f"hold {hold.id} is disputed, awaiting resolution")
            try:
                await self._holds.consume_confirmation(db, confirmation.id, auto=False)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return await self.release(
            db, confirmation.hold_id, ReleaseTrigger.BUYER_CONFIRMATION.value
        )

    async def auto_confirm(self, db: AsyncSession, transaction_id: str) -> None:
        """Flag the confirmation of an auto-released hold; no-op if the buyer got there first."""
        confirmation = await self._holds.get_confirmation_by_transaction(db, transaction_id)
        if confirmation is None or confirmation.confirmed:
            return
        try:
            await self._holds.consume_confirmation(db, confirmation.id, auto=True)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    # ------------------------------------------------------------------

    def _lost_race(
        self, current: EscrowHold, target: str, action: str, trigger: str | None
    ) -> TransitionOutcome:
        """Branch after a conditional write matched zero rows."""
        if current.status == target and not current.is_claimed:
            return TransitionOutcome(hold=current, applied=False, action=action, trigger=trigger)
        if current.is_terminal:
            logger.warning(
                "%s rejected on hold %s: already %s", action, current.id, current.status
            )
            raise AlreadyTerminalError(current.id, current.status)
        if current.is_claimed:
            raise SettlementInProgressError(current.id, current.pending_action or "settlement")
        raise PreconditionFailedError(
            f"hold {current.id} is {current.status}, cannot {action}"
        )
