"""Unit tests for EscrowStateMachine against in-memory conditional-write repositories."""

import asyncio

import pytest

from src.kb_common.enums import (
    GatewayOutcome,
    HoldStatus,
    ReleaseTrigger,
    SettlementKind,
    TransactionStatus,
)
from src.kb_common.errors import (
    AlreadyLockedError,
    AlreadyTerminalError,
    AmountMismatchError,
    ExternalServiceError,
    InvalidAmountError,
    InvalidConfirmationCodeError,
    PreconditionFailedError,
    SettlementInProgressError,
    TransactionNotCompletedError,
)
from tests.unit.fakes import make_transaction, result


def _settled_once(hold) -> bool:
    """Exactly one of released_at / refunded_at is stamped, matching the status."""
    if hold.status == HoldStatus.RELEASED:
        return hold.released_at is not None and hold.refunded_at is None
    if hold.status == HoldStatus.REFUNDED:
        return hold.refunded_at is not None and hold.released_at is None
    return hold.released_at is None and hold.refunded_at is None


class TestLock:
    async def test_lock_creates_held_hold_and_code(self, world) -> None:
        locked = await world.locked()

        assert locked.applied is True
        assert locked.hold.status == HoldStatus.HELD
        assert locked.hold.amount == 650000
        assert locked.hold.id.startswith("hold_")
        assert len(locked.confirmation.confirmation_code) == 6
        assert locked.confirmation.hold_id == locked.hold.id

    async def test_second_lock_is_noop(self, world) -> None:
        first = await world.locked()
        second = await world.escrow.lock(world.db, "txn_1")

        assert second.applied is False
        assert second.hold.id == first.hold.id
        assert second.confirmation.id == first.confirmation.id
        assert len(world.holds.holds) == 1

    async def test_lock_requires_completed_transaction(self, world) -> None:
        txn = make_transaction(status=TransactionStatus.PENDING.value)
        world.transactions.rows[txn.id] = txn

        with pytest.raises(TransactionNotCompletedError):
            await world.escrow.lock(world.db, txn.id)
        assert world.holds.holds == {}

    async def test_lock_after_settlement_rejected(self, world) -> None:
        locked = await world.locked()
        await world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.MANUAL_ADMIN.value)

        with pytest.raises(AlreadyLockedError):
            await world.escrow.lock(world.db, "txn_1")


class TestPaymentCallbacks:
    async def test_charge_success_completes_and_locks(self, world) -> None:
        txn = make_transaction(status=TransactionStatus.PENDING.value)
        world.transactions.rows[txn.id] = txn

        locked = await world.escrow.complete_payment(world.db, txn.payment_reference, txn.amount)

        assert locked is not None and locked.applied is True
        assert world.transactions.rows[txn.id].status == TransactionStatus.COMPLETED

    async def test_replayed_charge_success_is_noop(self, world) -> None:
        txn = make_transaction(status=TransactionStatus.PENDING.value)
        world.transactions.rows[txn.id] = txn
        await world.escrow.complete_payment(world.db, txn.payment_reference, txn.amount)

        again = await world.escrow.complete_payment(world.db, txn.payment_reference, txn.amount)

        assert again is not None and again.applied is False
        assert len(world.holds.holds) == 1

    async def test_amount_mismatch_rejected(self, world) -> None:
        txn = make_transaction(status=TransactionStatus.PENDING.value)
        world.transactions.rows[txn.id] = txn

        with pytest.raises(AmountMismatchError):
            await world.escrow.complete_payment(world.db, txn.payment_reference, 1)
        assert world.transactions.rows[txn.id].status == TransactionStatus.PENDING

    async def test_unknown_reference_ignored(self, world) -> None:
        assert await world.escrow.complete_payment(world.db, "KRW_nope_1", 100) is None

    async def test_late_success_overrides_failure(self, world) -> None:
        txn = make_transaction(status=TransactionStatus.PENDING.value)
        world.transactions.rows[txn.id] = txn

        failed = await world.escrow.fail_payment(world.db, txn.payment_reference)
        assert failed is not None and failed.status == TransactionStatus.FAILED

        locked = await world.escrow.complete_payment(world.db, txn.payment_reference, txn.amount)
        assert locked is not None and locked.hold.status == HoldStatus.HELD

    async def test_success_for_refunded_transaction_ignored(self, world) -> None:
        txn = make_transaction(status=TransactionStatus.REFUNDED.value)
        world.transactions.rows[txn.id] = txn

        assert await world.escrow.complete_payment(world.db, txn.payment_reference, txn.amount) is None
        assert world.holds.holds == {}


class TestRelease:
    async def test_release_writes_settlement_and_enqueues_payout(self, world) -> None:
        locked = await world.locked()

        outcome = await world.escrow.release(
            world.db, locked.hold.id, ReleaseTrigger.AUTO_RELEASE.value
        )

        assert outcome.applied is True
        assert outcome.hold.status == HoldStatus.RELEASED
        assert outcome.released_amount == 650000
        [settlement] = world.holds.settlements
        assert settlement.kind == SettlementKind.RELEASE
        assert settlement.trigger == "auto_release"
        job = world.payouts.jobs[outcome.payout_job_id]
        assert job.amount == 650000
        assert job.idempotency_key == f"release:{locked.hold.id}"

    async def test_second_release_is_noop(self, world) -> None:
        locked = await world.locked()
        await world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.MANUAL_ADMIN.value)

        again = await world.escrow.release(
            world.db, locked.hold.id, ReleaseTrigger.AUTO_RELEASE.value
        )

        assert again.applied is False
        assert again.hold.status == HoldStatus.RELEASED
        assert len(world.payouts.jobs) == 1
        assert len(world.holds.settlements) == 1

    async def test_concurrent_releases_settle_once(self, world) -> None:
        locked = await world.locked()

        outcomes = await asyncio.gather(
            world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.BUYER_CONFIRMATION.value),
            world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.AUTO_RELEASE.value),
        )

        assert sorted(o.applied for o in outcomes) == [False, True]
        assert len(world.payouts.jobs) == 1

    async def test_release_racing_refund_moves_money_once(self, world) -> None:
        locked = await world.locked()

        outcomes = await asyncio.gather(
            world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.MANUAL_ADMIN.value),
            world.escrow.refund(world.db, locked.hold.id, "buyer request"),
            return_exceptions=True,
        )

        assert outcomes[0].applied is True
        assert isinstance(outcomes[1], AlreadyTerminalError)
        assert world.gateway.refund_calls == []

    async def test_unknown_trigger_rejected(self, world) -> None:
        locked = await world.locked()
        with pytest.raises(ValueError):
            await world.escrow.release(world.db, locked.hold.id, "whenever")

    async def test_auto_release_skips_disputed_hold(self, world) -> None:
        locked = await world.locked()
        await world.escrow.mark_disputed(world.db, locked.hold.id, "dsp_1")

        with pytest.raises(PreconditionFailedError):
            await world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.AUTO_RELEASE.value)

    async def test_dispute_resolution_releases_disputed_hold(self, world) -> None:
        locked = await world.locked()
        await world.escrow.mark_disputed(world.db, locked.hold.id, "dsp_1")

        outcome = await world.escrow.release(
            world.db, locked.hold.id, ReleaseTrigger.DISPUTE_RESOLUTION.value
        )

        assert outcome.applied is True
        assert outcome.hold.status == HoldStatus.RELEASED


class TestRefund:
    async def test_full_refund(self, world) -> None:
        locked = await world.locked()

        outcome = await world.escrow.refund(world.db, locked.hold.id, "not delivered")

        assert outcome.applied is True
        assert outcome.hold.status == HoldStatus.REFUNDED
        assert outcome.refunded_amount == 650000
        assert outcome.hold.pending_action is None
        assert world.transactions.rows["txn_1"].status == TransactionStatus.REFUNDED
        [call] = world.gateway.refund_calls
        assert call == ("KRW_lst_1_txn_1", 650000, f"refund:{locked.hold.id}")
        assert world.payouts.jobs == {}

    async def test_refund_after_release_rejected(self, world) -> None:
        locked = await world.locked()
        await world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.MANUAL_ADMIN.value)

        with pytest.raises(AlreadyTerminalError):
            await world.escrow.refund(world.db, locked.hold.id, "too late")
        assert world.gateway.refund_calls == []

    async def test_second_refund_is_noop(self, world) -> None:
        locked = await world.locked()
        await world.escrow.refund(world.db, locked.hold.id, "first")

        again = await world.escrow.refund(world.db, locked.hold.id, "second")

        assert again.applied is False
        assert len(world.gateway.refund_calls) == 1

    async def test_failed_refund_releases_claim(self, world) -> None:
        locked = await world.locked()
        world.gateway.refund_results.append(result(GatewayOutcome.FAILED, "card closed"))

        with pytest.raises(ExternalServiceError):
            await world.escrow.refund(world.db, locked.hold.id, "not delivered")

        hold = world.holds.holds[locked.hold.id]
        assert hold.status == HoldStatus.HELD
        assert hold.pending_action is None
        assert world.holds.settlements == []
        assert _settled_once(hold)

        outcome = await world.escrow.release(
            world.db, locked.hold.id, ReleaseTrigger.MANUAL_ADMIN.value
        )

        assert outcome.hold.status == HoldStatus.RELEASED
        assert _settled_once(world.holds.holds[locked.hold.id])

    async def test_ambiguous_refund_keeps_claim_and_redrives(self, world) -> None:
        locked = await world.locked()
        world.gateway.refund_results.append(result(GatewayOutcome.AMBIGUOUS, "timeout"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await world.escrow.refund(world.db, locked.hold.id, "not delivered")
        assert exc_info.value.retry_after == 60
        assert world.holds.holds[locked.hold.id].pending_action == "refund"

        # Competing release is blocked while the refund is unresolved
        with pytest.raises(SettlementInProgressError):
            await world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.MANUAL_ADMIN.value)

        outcome = await world.escrow.refund(world.db, locked.hold.id, "not delivered")

        assert outcome.applied is True
        assert outcome.hold.status == HoldStatus.REFUNDED
        keys = [call[2] for call in world.gateway.refund_calls]
        assert keys == [f"refund:{locked.hold.id}", f"refund:{locked.hold.id}"]

    async def test_hung_gateway_is_ambiguous(self, world) -> None:
        locked = await world.locked()

        async def hang(*args, **kwargs):
            await asyncio.Event().wait()

        world.gateway.refund = hang
        world.escrow._gateway_timeout = 0.01

        with pytest.raises(ExternalServiceError):
            await world.escrow.refund(world.db, locked.hold.id, "not delivered")
        assert world.holds.holds[locked.hold.id].pending_action == "refund"

    async def test_pending_refund_completed_by_callback(self, world) -> None:
        locked = await world.locked()
        world.gateway.refund_results.append(result(GatewayOutcome.PENDING))

        outcome = await world.escrow.refund(world.db, locked.hold.id, "not delivered")
        assert outcome.in_flight is True
        assert outcome.applied is False

        done = await world.escrow.complete_refund_callback(world.db, "KRW_lst_1_txn_1", True)

        assert done is not None and done.applied is True
        assert done.hold.status == HoldStatus.REFUNDED
        assert world.holds.settlements[0].trigger == "gateway_callback"

    async def test_failed_refund_callback_releases_claim(self, world) -> None:
        locked = await world.locked()
        world.gateway.refund_results.append(result(GatewayOutcome.PENDING))
        await world.escrow.refund(world.db, locked.hold.id, "not delivered")

        done = await world.escrow.complete_refund_callback(
            world.db, "KRW_lst_1_txn_1", False, detail="declined"
        )

        assert done is not None and done.applied is False
        assert world.holds.holds[locked.hold.id].pending_action is None
        assert world.holds.holds[locked.hold.id].status == HoldStatus.HELD

    async def test_refund_callback_without_claim_ignored(self, world) -> None:
        await world.locked()
        assert await world.escrow.complete_refund_callback(world.db, "KRW_lst_1_txn_1", True) is None


class TestPartialSettlement:
    async def test_seller_majority_is_released(self, world) -> None:
        locked = await world.locked(amount=10000)

        outcome = await world.escrow.settle_partial(world.db, locked.hold.id, 3000, "split")

        assert outcome.applied is True
        assert outcome.hold.status == HoldStatus.RELEASED
        assert (outcome.refunded_amount, outcome.released_amount) == (3000, 7000)
        kinds = {s.kind: s.amount for s in world.holds.settlements}
        assert kinds == {SettlementKind.REFUND: 3000, SettlementKind.RELEASE: 7000}
        assert world.payouts.jobs[outcome.payout_job_id].amount == 7000
        assert world.gateway.refund_calls[0][1] == 3000
        assert world.gateway.refund_calls[0][2] == f"partial_refund:{locked.hold.id}"
        assert world.transactions.rows["txn_1"].status == TransactionStatus.COMPLETED
        assert _settled_once(world.holds.holds[locked.hold.id])

    async def test_buyer_majority_is_refunded(self, world) -> None:
        locked = await world.locked(amount=10000)

        outcome = await world.escrow.settle_partial(world.db, locked.hold.id, 7000, "split")

        assert outcome.hold.status == HoldStatus.REFUNDED
        assert world.payouts.jobs[outcome.payout_job_id].amount == 3000
        assert world.transactions.rows["txn_1"].status == TransactionStatus.REFUNDED
        assert _settled_once(world.holds.holds[locked.hold.id])

    async def test_even_split_goes_to_released(self, world) -> None:
        locked = await world.locked(amount=10000)

        outcome = await world.escrow.settle_partial(world.db, locked.hold.id, 5000, "split")

        assert outcome.hold.status == HoldStatus.RELEASED
        assert _settled_once(world.holds.holds[locked.hold.id])

    @pytest.mark.parametrize("amount", [0, -1, 10000, 20000])
    async def test_out_of_range_amount_rejected(self, world, amount: int) -> None:
        locked = await world.locked(amount=10000)

        with pytest.raises(InvalidAmountError):
            await world.escrow.settle_partial(world.db, locked.hold.id, amount, "split")
        assert world.gateway.refund_calls == []

    async def test_replayed_split_is_noop(self, world) -> None:
        locked = await world.locked(amount=10000)
        await world.escrow.settle_partial(world.db, locked.hold.id, 3000, "split")

        again = await world.escrow.settle_partial(world.db, locked.hold.id, 3000, "split")

        assert again.applied is False
        assert len(world.gateway.refund_calls) == 1

    async def test_different_split_after_settlement_rejected(self, world) -> None:
        locked = await world.locked(amount=10000)
        await world.escrow.settle_partial(world.db, locked.hold.id, 3000, "split")

        with pytest.raises(AlreadyTerminalError):
            await world.escrow.settle_partial(world.db, locked.hold.id, 4000, "split")


class TestDeliveryConfirmation:
    async def test_confirm_releases_with_buyer_trigger(self, world) -> None:
        locked = await world.locked()

        outcome = await world.escrow.confirm_delivery(
            world.db, locked.confirmation.id, locked.confirmation.confirmation_code
        )

        assert outcome.applied is True
        assert outcome.trigger == ReleaseTrigger.BUYER_CONFIRMATION
        assert world.holds.confirmations[locked.confirmation.id].confirmed is True
        assert world.holds.confirmations[locked.confirmation.id].auto_confirmed is False

    async def test_code_is_case_and_space_insensitive(self, world) -> None:
        locked = await world.locked()
        code = f"  {locked.confirmation.confirmation_code.lower()} "

        outcome = await world.escrow.confirm_delivery(world.db, locked.confirmation.id, code)

        assert outcome.applied is True

    async def test_wrong_code_rejected(self, world) -> None:
        locked = await world.locked()

        with pytest.raises(InvalidConfirmationCodeError):
            await world.escrow.confirm_delivery(world.db, locked.confirmation.id, "ZZZZZZ")
        assert world.holds.holds[locked.hold.id].status == HoldStatus.HELD

    async def test_repeated_confirm_is_noop(self, world) -> None:
        locked = await world.locked()
        code = locked.confirmation.confirmation_code
        await world.escrow.confirm_delivery(world.db, locked.confirmation.id, code)

        again = await world.escrow.confirm_delivery(world.db, locked.confirmation.id, code)

        assert again.applied is False
        assert len(world.payouts.jobs) == 1

    async def test_confirm_blocked_while_disputed(self, world) -> None:
        locked = await world.locked()
        await world.escrow.mark_disputed(world.db, locked.hold.id, "dsp_1")

        with pytest.raises(PreconditionFailedError):
            await world.escrow.confirm_delivery(
                world.db, locked.confirmation.id, locked.confirmation.confirmation_code
            )
        assert world.holds.confirmations[locked.confirmation.id].confirmed is False

    async def test_auto_confirm_flags_confirmation(self, world) -> None:
        locked = await world.locked()

        await world.escrow.auto_confirm(world.db, "txn_1")

        row = world.holds.confirmations[locked.confirmation.id]
        assert row.confirmed is True and row.auto_confirmed is True


class TestDisputeTransitions:
    async def test_dispute_allowed_while_refund_in_flight(self, world) -> None:
        locked = await world.locked()
        world.gateway.refund_results.append(result(GatewayOutcome.PENDING))
        await world.escrow.refund(world.db, locked.hold.id, "not delivered")

        outcome = await world.escrow.mark_disputed(world.db, locked.hold.id, "dsp_1")

        assert outcome.applied is True
        assert outcome.hold.status == HoldStatus.DISPUTED
        assert outcome.hold.pending_action == "refund"

    async def test_dispute_on_settled_hold_rejected(self, world) -> None:
        locked = await world.locked()
        await world.escrow.release(world.db, locked.hold.id, ReleaseTrigger.MANUAL_ADMIN.value)

        with pytest.raises(AlreadyTerminalError):
            await world.escrow.mark_disputed(world.db, locked.hold.id, "dsp_1")

    async def test_mark_rejected(self, world) -> None:
        await world.locked()

        txn = await world.escrow.mark_rejected(world.db, "txn_1")

        assert txn is not None and txn.status == TransactionStatus.REJECTED
