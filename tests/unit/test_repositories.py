"""Unit tests for the raw-SQL repositories using a MagicMock AsyncSession."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.kb_common.errors import InternalError
from src.kb_dispute.infrastructure.persistence import DisputeRepository
from src.kb_escrow.infrastructure.persistence import EscrowRepository
from src.kb_payments.domain.models import Transaction
from src.kb_payments.infrastructure.persistence import TransactionRepository
from src.kb_payout.infrastructure.persistence import PayoutRepository
from src.kb_scheduler.infrastructure.persistence import CandidateRepository
from src.kb_wallet.infrastructure.persistence import WalletRepository


def _make_hold_row(**kwargs):
    row = MagicMock()
    row.id = kwargs.get("id", "hold_1")
    row.transaction_id = kwargs.get("transaction_id", "txn_1")
    row.listing_id = "lst_1"
    row.seller_id = kwargs.get("seller_id", "seller-1")
    row.amount = kwargs.get("amount", 650000)
    row.currency = "KES"
    row.status = kwargs.get("status", "held")
    row.pending_action = kwargs.get("pending_action")
    row.pending_amount = kwargs.get("pending_amount")
    row.claim_token = kwargs.get("claim_token")
    row.claimed_at = None
    row.released_at = None
    row.refunded_at = None
    row.created_at = datetime.now(UTC)
    row.updated_at = datetime.now(UTC)
    return row


def _make_dispute_row(**kwargs):
    row = MagicMock()
    row.id = kwargs.get("id", "dsp_1")
    row.transaction_id = "txn_1"
    row.hold_id = "hold_1"
    row.seller_id = "seller-1"
    row.initiated_by = "buyer"
    row.reason = "not delivered"
    row.evidence = kwargs.get("evidence", ["https://img.example/1.jpg"])
    row.resolution = kwargs.get("resolution", "pending")
    row.partial_amount = kwargs.get("partial_amount")
    row.audit_only = kwargs.get("audit_only", False)
    row.resolved_at = None
    row.created_at = datetime.now(UTC)
    row.updated_at = datetime.now(UTC)
    return row


def _make_job_row(**kwargs):
    row = MagicMock()
    row.id = kwargs.get("id", "pjob_1")
    row.seller_id = "seller-1"
    row.source = kwargs.get("source", "RELEASE")
    row.hold_id = kwargs.get("hold_id", "hold_1")
    row.amount = kwargs.get("amount", 10000)
    row.currency = "KES"
    row.idempotency_key = kwargs.get("idempotency_key", "release:hold_1")
    row.attempt = kwargs.get("attempt", 1)
    row.status = kwargs.get("status", "QUEUED")
    row.last_error = None
    row.claimed_at = None
    row.created_at = datetime.now(UTC)
    row.updated_at = datetime.now(UTC)
    return row


def _make_transaction_row(**kwargs):
    row = MagicMock()
    row.id = kwargs.get("id", "txn_1")
    row.listing_id = "lst_1"
    row.seller_id = "seller-1"
    row.buyer_name = "Amina"
    row.buyer_phone = "254700000001"
    row.buyer_email = None
    row.amount = 650000
    row.currency = "KES"
    row.payment_method = "mpesa"
    row.payment_reference = "KRW_lst_1_txn_1"
    row.status = kwargs.get("status", "pending")
    row.created_at = datetime.now(UTC)
    row.updated_at = datetime.now(UTC)
    return row


def _returning(db, row):
    result_mock = MagicMock()
    result_mock.fetchone.return_value = row
    db.execute = AsyncMock(return_value=result_mock)


def _returning_all(db, rows):
    result_mock = MagicMock()
    result_mock.fetchall.return_value = rows
    db.execute = AsyncMock(return_value=result_mock)


@pytest.fixture
def db():
    return MagicMock()


class TestEscrowRepository:
    async def test_get_hold_maps_row(self, db) -> None:
        _returning(db, _make_hold_row(status="disputed"))

        hold = await EscrowRepository().get_hold(db, "hold_1")

        assert hold is not None
        assert hold.id == "hold_1"
        assert hold.status == "disputed"
        assert hold.pending_action is None

    async def test_get_hold_missing(self, db) -> None:
        _returning(db, None)

        assert await EscrowRepository().get_hold(db, "hold_missing") is None

    async def test_transition_passes_expected_statuses(self, db) -> None:
        _returning(db, _make_hold_row(status="released"))

        hold = await EscrowRepository().transition_hold(
            db, "hold_1", ("held", "disputed"), "released"
        )

        assert hold is not None and hold.status == "released"
        params = db.execute.call_args.args[1]
        assert params["expected"] == ["held", "disputed"]
        assert params["new_status"] == "released"
        assert params["require_unclaimed"] is True

    async def test_transition_lost_race_returns_none(self, db) -> None:
        _returning(db, None)

        hold = await EscrowRepository().transition_hold(db, "hold_1", ("held",), "released")

        assert hold is None

    async def test_claim_hold_records_pending_action(self, db) -> None:
        _returning(
            db,
            _make_hold_row(pending_action="partial_refund", pending_amount=2500, claim_token="tok"),
        )

        hold = await EscrowRepository().claim_hold(
            db, "hold_1", ("disputed",), "partial_refund", 2500, "tok"
        )

        assert hold is not None
        assert hold.pending_amount == 2500
        params = db.execute.call_args.args[1]
        assert params["token"] == "tok"
        assert params["action"] == "partial_refund"

    async def test_finalize_with_stale_token_returns_none(self, db) -> None:
        _returning(db, None)

        assert await EscrowRepository().finalize_claim(db, "hold_1", "old", "refunded") is None


class TestDisputeRepository:
    async def test_evidence_decoded_from_json_text(self, db) -> None:
        _returning(db, _make_dispute_row(evidence='["a.jpg", "b.jpg"]'))

        dispute = await DisputeRepository().get_by_id(db, "dsp_1")

        assert dispute is not None
        assert dispute.evidence == ["a.jpg", "b.jpg"]

    async def test_insert_encodes_evidence(self, db) -> None:
        row = _make_dispute_row()
        _returning(db, row)
        repo = DisputeRepository()
        dispute = await repo.get_by_id(db, "dsp_1")

        await repo.insert(db, dispute)

        params = db.execute.call_args.args[1]
        assert params["evidence"] == '["https://img.example/1.jpg"]'

    async def test_claim_resolution_lost_race(self, db) -> None:
        _returning(db, None)

        claimed = await DisputeRepository().claim_resolution(db, "dsp_1", "pay_seller", None)

        assert claimed is None


class TestTransactionRepository:
    async def test_create_returns_inserted_row(self, db) -> None:
        _returning(db, _make_transaction_row())

        txn = await TransactionRepository().create(
            db,
            Transaction(
                id="txn_1",
                listing_id="lst_1",
                seller_id="seller-1",
                buyer_name="Amina",
                buyer_phone="254700000001",
                amount=650000,
                currency="KES",
                payment_method="mpesa",
                payment_reference="KRW_lst_1_txn_1",
                status="pending",
            ),
        )

        assert txn.payment_reference == "KRW_lst_1_txn_1"

    async def test_create_without_row_is_internal_error(self, db) -> None:
        _returning(db, None)

        with pytest.raises(InternalError):
            await TransactionRepository().create(
                db,
                Transaction(
                    id="txn_1",
                    listing_id="lst_1",
                    seller_id="seller-1",
                    buyer_name="Amina",
                    buyer_phone="254700000001",
                    amount=650000,
                    currency="KES",
                    payment_method="mpesa",
                    payment_reference="KRW_lst_1_txn_1",
                    status="pending",
                ),
            )

    async def test_transition_status_expected_list(self, db) -> None:
        _returning(db, _make_transaction_row(status="completed"))

        txn = await TransactionRepository().transition_status(
            db, "txn_1", ("pending",), "completed"
        )

        assert txn is not None and txn.status == "completed"
        assert db.execute.call_args.args[1]["expected"] == ["pending"]


class TestPayoutRepository:
    async def test_enqueue_release_inserts_job(self, db) -> None:
        _returning(db, _make_job_row(id="pjob_9"))

        job_id = await PayoutRepository().enqueue_release(db, "hold_1", "seller-1", 10000, "KES")

        assert job_id == "pjob_9"
        params = db.execute.call_args.args[1]
        assert params["idempotency_key"] == "release:hold_1"
        assert params["source"] == "RELEASE"

    async def test_enqueue_release_falls_back_to_existing_job(self, db) -> None:
        inserted = MagicMock()
        inserted.fetchone.return_value = None
        existing = MagicMock()
        existing.fetchone.return_value = _make_job_row(id="pjob_old")
        db.execute = AsyncMock(side_effect=[inserted, existing])

        job_id = await PayoutRepository().enqueue_release(db, "hold_1", "seller-1", 10000, "KES")

        assert job_id == "pjob_old"

    async def test_enqueue_release_neither_inserted_nor_found(self, db) -> None:
        _returning(db, None)

        with pytest.raises(InternalError):
            await PayoutRepository().enqueue_release(db, "hold_1", "seller-1", 10000, "KES")

    async def test_claim_job_maps_attempt(self, db) -> None:
        _returning(db, _make_job_row(status="IN_FLIGHT", attempt=3))

        job = await PayoutRepository().claim_job(db, "pjob_1", datetime.now(UTC))

        assert job is not None
        assert job.attempt == 3
        assert job.status == "IN_FLIGHT"

    async def test_open_job_total(self, db) -> None:
        result_mock = MagicMock()
        result_mock.scalar_one.return_value = 4200
        db.execute = AsyncMock(return_value=result_mock)

        assert await PayoutRepository().open_job_total(db, "seller-1") == 4200

    async def test_find_unqueued_releases(self, db) -> None:
        row = MagicMock()
        row.hold_id = "hold_x"
        row.seller_id = "seller-1"
        row.amount = 4000
        row.currency = "KES"
        _returning_all(db, [row])

        rows = await PayoutRepository().find_unqueued_releases(db, 10)

        assert rows == [("hold_x", "seller-1", 4000, "KES")]


class TestReadModels:
    async def test_wallet_totals_are_ints(self, db) -> None:
        row = MagicMock()
        row.status = "held"
        row.total = "650000"
        _returning_all(db, [row])

        assert await WalletRepository().hold_totals(db, "seller-1") == [("held", 650000)]

    async def test_candidates_map_confirmation_flag(self, db) -> None:
        row = MagicMock()
        row.hold_id = "hold_1"
        row.transaction_id = "txn_1"
        row.buyer_confirmed = None
        _returning_all(db, [row])

        [candidate] = await CandidateRepository().find_due(db, datetime.now(UTC), 50)

        assert candidate.hold_id == "hold_1"
        assert candidate.buyer_confirmed is False
