"""In-memory repositories with the same conditional-write semantics as the SQL ones.

Each method completes without yielding to the event loop, so a call is atomic
with respect to other coroutines, like a single-row UPDATE under READ COMMITTED.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any

from src.kb_common.datetime_utils import utc_now
from src.kb_common.enums import (
    GatewayOutcome,
    HoldStatus,
    PayoutJobSource,
    PayoutJobStatus,
    PayoutRecordStatus,
    SettlementKind,
    TransactionStatus,
)
from src.kb_dispute.domain.models import Dispute
from src.kb_escrow.domain.models import (
    DeliveryConfirmation,
    EscrowHold,
    HoldSettlement,
    ShippingProof,
)
from src.kb_payments.domain.models import ChargeSession, GatewayResult, Transaction
from src.kb_payout.domain.models import PayoutAccount, PayoutJob, PayoutRecord


class FakeSession:
    def __init__(self) -> None:
        self.commits = 0
        self.rollbacks = 0

    async def commit(self) -> None:
        # Yield like a real round-trip so concurrent callers interleave
        await asyncio.sleep(0)
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


class FakeSessionFactory:
    """Stands in for async_sessionmaker: ``async with factory() as db``."""

    def __init__(self, session: FakeSession | None = None) -> None:
        self.session = session or FakeSession()

    def __call__(self) -> "FakeSessionFactory":
        return self

    async def __aenter__(self) -> FakeSession:
        return self.session

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class FakeTransactionRepository:
    def __init__(self) -> None:
        self.rows: dict[str, Transaction] = {}

    async def create(self, db: Any, txn: Transaction) -> Transaction:
        self.rows[txn.id] = replace(txn, created_at=utc_now())
        return replace(self.rows[txn.id])

    async def get_by_id(self, db: Any, transaction_id: str) -> Transaction | None:
        row = self.rows.get(transaction_id)
        return replace(row) if row else None

    async def get_by_reference(self, db: Any, payment_reference: str) -> Transaction | None:
        for row in self.rows.values():
            if row.payment_reference == payment_reference:
                return replace(row)
        return None

    async def transition_status(
        self, db: Any, transaction_id: str, expected: tuple[str, ...], new_status: str
    ) -> Transaction | None:
        row = self.rows.get(transaction_id)
        if row is None or row.status not in expected:
            return None
        row.status = new_status
        return replace(row)


class FakeEscrowRepository:
    def __init__(self) -> None:
        self.holds: dict[str, EscrowHold] = {}
        self.settlements: list[HoldSettlement] = []
        self.confirmations: dict[str, DeliveryConfirmation] = {}
        self.proofs: dict[str, ShippingProof] = {}

    async def get_hold(self, db: Any, hold_id: str) -> EscrowHold | None:
        hold = self.holds.get(hold_id)
        return replace(hold) if hold else None

    async def get_hold_by_transaction(self, db: Any, transaction_id: str) -> EscrowHold | None:
        for hold in self.holds.values():
            if hold.transaction_id == transaction_id:
                return replace(hold)
        return None

    async def insert_hold(self, db: Any, hold: EscrowHold) -> EscrowHold | None:
        if any(h.transaction_id == hold.transaction_id for h in self.holds.values()):
            return None
        self.holds[hold.id] = replace(hold, created_at=utc_now())
        return replace(self.holds[hold.id])

    async def transition_hold(
        self,
        db: Any,
        hold_id: str,
        expected: tuple[str, ...],
        new_status: str,
        require_unclaimed: bool = True,
    ) -> EscrowHold | None:
        hold = self.holds.get(hold_id)
        if hold is None or hold.status not in expected:
            return None
        if require_unclaimed and hold.pending_action is not None:
            return None
        self._set_status(hold, new_status)
        return replace(hold)

    async def claim_hold(
        self,
        db: Any,
        hold_id: str,
        expected: tuple[str, ...],
        action: str,
        amount: int,
        token: str,
    ) -> EscrowHold | None:
        hold = self.holds.get(hold_id)
        if hold is None or hold.status not in expected or hold.pending_action is not None:
            return None
        hold.pending_action = action
        hold.pending_amount = amount
        hold.claim_token = token
        hold.claimed_at = utc_now()
        return replace(hold)

    async def finalize_claim(
        self, db: Any, hold_id: str, token: str, new_status: str
    ) -> EscrowHold | None:
        hold = self.holds.get(hold_id)
        if hold is None or hold.claim_token != token:
            return None
        self._set_status(hold, new_status)
        self._clear_claim(hold)
        return replace(hold)

    async def release_claim(self, db: Any, hold_id: str, token: str) -> EscrowHold | None:
        hold = self.holds.get(hold_id)
        if hold is None or hold.claim_token != token:
            return None
        self._clear_claim(hold)
        return replace(hold)

    async def insert_settlement(self, db: Any, settlement: HoldSettlement) -> bool:
        if any(
            s.hold_id == settlement.hold_id and s.kind == settlement.kind
            for s in self.settlements
        ):
            return False
        self.settlements.append(
            replace(settlement, id=len(self.settlements) + 1, created_at=utc_now())
        )
        return True

    async def list_settlements(self, db: Any, hold_id: str) -> list[HoldSettlement]:
        return [replace(s) for s in self.settlements if s.hold_id == hold_id]

    async def insert_confirmation(
        self, db: Any, confirmation: DeliveryConfirmation
    ) -> DeliveryConfirmation | None:
        if any(
            c.transaction_id == confirmation.transaction_id
            for c in self.confirmations.values()
        ):
            return None
        self.confirmations[confirmation.id] = replace(confirmation)
        return replace(confirmation)

    async def get_confirmation(
        self, db: Any, confirmation_id: str
    ) -> DeliveryConfirmation | None:
        row = self.confirmations.get(confirmation_id)
        return replace(row) if row else None

    async def get_confirmation_by_transaction(
        self, db: Any, transaction_id: str
    ) -> DeliveryConfirmation | None:
        for row in self.confirmations.values():
            if row.transaction_id == transaction_id:
                return replace(row)
        return None

    async def consume_confirmation(
        self, db: Any, confirmation_id: str, auto: bool
    ) -> DeliveryConfirmation | None:
        row = self.confirmations.get(confirmation_id)
        if row is None or row.confirmed:
            return None
        row.confirmed = True
        row.auto_confirmed = auto
        row.confirmed_at = utc_now()
        return replace(row)

    async def insert_shipping_proof(
        self, db: Any, proof: ShippingProof
    ) -> ShippingProof | None:
        if any(p.transaction_id == proof.transaction_id for p in self.proofs.values()):
            return None
        self.proofs[proof.id] = replace(proof, dispatched_at=utc_now())
        return replace(self.proofs[proof.id])

    async def get_shipping_proof(self, db: Any, proof_id: str) -> ShippingProof | None:
        row = self.proofs.get(proof_id)
        return replace(row) if row else None

    async def set_verification(
        self, db: Any, proof_id: str, score: int, notes: str | None
    ) -> None:
        self.proofs[proof_id].verification_score = score
        self.proofs[proof_id].verification_notes = notes

    @staticmethod
    def _set_status(hold: EscrowHold, status: str) -> None:
        hold.status = status
        if status == HoldStatus.RELEASED:
            hold.released_at = utc_now()
        elif status == HoldStatus.REFUNDED:
            hold.refunded_at = utc_now()

    @staticmethod
    def _clear_claim(hold: EscrowHold) -> None:
        hold.pending_action = None
        hold.pending_amount = None
        hold.claim_token = None
        hold.claimed_at = None


class FakePayoutRepository:
    def __init__(self, escrow: FakeEscrowRepository) -> None:
        self._escrow = escrow
        self.jobs: dict[str, PayoutJob] = {}
        self.records: list[PayoutRecord] = []
        self.accounts: dict[str, PayoutAccount] = {}
        self.locked_sellers: list[str] = []
        self._seq = 0

    def _next_id(self) -> str:
        self._seq += 1
        return f"pjob_{self._seq}"

    async def enqueue_release(
        self, db: Any, hold_id: str, seller_id: str, amount: int, currency: str
    ) -> str:
        job = await self.insert_job(
            db,
            PayoutJob(
                id=self._next_id(),
                seller_id=seller_id,
                source=PayoutJobSource.RELEASE.value,
                amount=amount,
                currency=currency,
                idempotency_key=f"release:{hold_id}",
                status=PayoutJobStatus.QUEUED.value,
                hold_id=hold_id,
            ),
        )
        if job is not None:
            return job.id
        return next(j.id for j in self.jobs.values() if j.hold_id == hold_id)

    async def insert_job(self, db: Any, job: PayoutJob) -> PayoutJob | None:
        for existing in self.jobs.values():
            if existing.idempotency_key == job.idempotency_key:
                return None
            if job.hold_id is not None and existing.hold_id == job.hold_id:
                return None
        self.jobs[job.id] = replace(job, created_at=utc_now())
        return replace(self.jobs[job.id])

    async def get_job(self, db: Any, job_id: str) -> PayoutJob | None:
        job = self.jobs.get(job_id)
        return replace(job) if job else None

    async def get_job_by_key(self, db: Any, idempotency_key: str) -> PayoutJob | None:
        for job in self.jobs.values():
            if job.idempotency_key == idempotency_key:
                return replace(job)
        return None

    def _runnable(self, job: PayoutJob, stale_before: datetime) -> bool:
        if job.status == PayoutJobStatus.QUEUED:
            return True
        return (
            job.status == PayoutJobStatus.IN_FLIGHT
            and job.claimed_at is not None
            and job.claimed_at < stale_before
        )

    async def claim_job(
        self, db: Any, job_id: str, stale_before: datetime
    ) -> PayoutJob | None:
        job = self.jobs.get(job_id)
        if job is None or not self._runnable(job, stale_before):
            return None
        job.status = PayoutJobStatus.IN_FLIGHT.value
        job.claimed_at = utc_now()
        return replace(job)

    async def complete_job(
        self, db: Any, job_id: str, status: str, last_error: str | None
    ) -> PayoutJob | None:
        job = self.jobs.get(job_id)
        if job is None or job.status != PayoutJobStatus.IN_FLIGHT:
            return None
        job.status = status
        job.last_error = last_error
        return replace(job)

    async def requeue_failed_job(self, db: Any, job_id: str) -> PayoutJob | None:
        job = self.jobs.get(job_id)
        if job is None or job.status != PayoutJobStatus.FAILED:
            return None
        job.status = PayoutJobStatus.QUEUED.value
        job.attempt += 1
        job.last_error = None
        job.claimed_at = None
        return replace(job)

    async def list_runnable_jobs(
        self, db: Any, stale_before: datetime, limit: int
    ) -> list[PayoutJob]:
        return [replace(j) for j in self.jobs.values() if self._runnable(j, stale_before)][:limit]

    async def find_unqueued_releases(
        self, db: Any, limit: int
    ) -> list[tuple[str, str, int, str]]:
        queued = {j.hold_id for j in self.jobs.values()}
        out = []
        for s in self._escrow.settlements:
            if s.kind == SettlementKind.RELEASE and s.hold_id not in queued:
                currency = self._escrow.holds[s.hold_id].currency
                out.append((s.hold_id, s.seller_id, s.amount, currency))
        return out[:limit]

    async def open_job_total(self, db: Any, seller_id: str) -> int:
        return sum(j.amount for j in self.jobs.values() if j.seller_id == seller_id and j.is_open)

    async def lock_seller(self, db: Any, seller_id: str) -> None:
        self.locked_sellers.append(seller_id)

    async def insert_record(self, db: Any, record: PayoutRecord) -> PayoutRecord | None:
        if record.status == PayoutRecordStatus.SUCCESS and any(
            r.idempotency_key == record.idempotency_key
            and r.status == PayoutRecordStatus.SUCCESS
            for r in self.records
        ):
            return None
        stored = replace(record, id=len(self.records) + 1, created_at=utc_now())
        self.records.append(stored)
        return replace(stored)

    async def get_success_record(
        self, db: Any, idempotency_key: str
    ) -> PayoutRecord | None:
        for r in self.records:
            if r.idempotency_key == idempotency_key and r.status == PayoutRecordStatus.SUCCESS:
                return replace(r)
        return None

    async def list_records(
        self, db: Any, seller_id: str, cursor: int | None, limit: int
    ) -> list[PayoutRecord]:
        rows = [
            r
            for r in reversed(self.records)
            if r.seller_id == seller_id and (cursor is None or (r.id or 0) < cursor)
        ]
        return [replace(r) for r in rows[:limit]]

    async def available_balance(self, db: Any, seller_id: str) -> int:
        released = sum(
            s.amount
            for s in self._escrow.settlements
            if s.seller_id == seller_id and s.kind == SettlementKind.RELEASE
        )
        paid = sum(
            r.amount
            for r in self.records
            if r.seller_id == seller_id and r.status == PayoutRecordStatus.SUCCESS
        )
        return released - paid

    async def get_account(self, db: Any, seller_id: str) -> PayoutAccount | None:
        account = self.accounts.get(seller_id)
        return replace(account) if account else None

    async def upsert_account(self, db: Any, account: PayoutAccount) -> PayoutAccount:
        self.accounts[account.seller_id] = replace(account)
        return replace(account)


class FakeWalletRepository:
    """Grouped totals folded from the escrow and payout fakes, like the SQL read model."""

    def __init__(self, escrow: FakeEscrowRepository, payouts: FakePayoutRepository) -> None:
        self._escrow = escrow
        self._payouts = payouts

    @staticmethod
    def _grouped(pairs: list[tuple[str, int]]) -> list[tuple[str, int]]:
        totals: dict[str, int] = {}
        for key, amount in pairs:
            totals[key] = totals.get(key, 0) + amount
        return list(totals.items())

    async def hold_totals(self, db: Any, seller_id: str) -> list[tuple[str, int]]:
        return self._grouped(
            [
                (h.status, h.amount)
                for h in self._escrow.holds.values()
                if h.seller_id == seller_id
                and h.status in (HoldStatus.HELD, HoldStatus.DISPUTED)
            ]
        )

    async def settlement_totals(self, db: Any, seller_id: str) -> list[tuple[str, int]]:
        return self._grouped(
            [(s.kind, s.amount) for s in self._escrow.settlements if s.seller_id == seller_id]
        )

    async def payout_totals(self, db: Any, seller_id: str) -> list[tuple[str, int]]:
        return self._grouped(
            [
                (r.status, r.amount)
                for r in self._payouts.records
                if r.seller_id == seller_id and r.status == PayoutRecordStatus.SUCCESS
            ]
        )


class FakeDisputeRepository:
    def __init__(self) -> None:
        self.rows: dict[str, Dispute] = {}

    async def insert(self, db: Any, dispute: Dispute) -> Dispute | None:
        if any(d.transaction_id == dispute.transaction_id for d in self.rows.values()):
            return None
        self.rows[dispute.id] = replace(dispute, created_at=utc_now())
        return replace(self.rows[dispute.id])

    async def get_by_id(self, db: Any, dispute_id: str) -> Dispute | None:
        row = self.rows.get(dispute_id)
        return replace(row) if row else None

    async def get_by_transaction(self, db: Any, transaction_id: str) -> Dispute | None:
        for row in self.rows.values():
            if row.transaction_id == transaction_id:
                return replace(row)
        return None

    async def claim_resolution(
        self, db: Any, dispute_id: str, resolution: str, partial_amount: int | None
    ) -> Dispute | None:
        row = self.rows.get(dispute_id)
        if row is None or not row.is_pending or row.audit_only:
            return None
        row.resolution = resolution
        row.partial_amount = partial_amount
        row.resolved_at = utc_now()
        return replace(row)

    async def revert_resolution(
        self, db: Any, dispute_id: str, resolution: str
    ) -> Dispute | None:
        row = self.rows.get(dispute_id)
        if row is None or row.resolution != resolution:
            return None
        row.resolution = "pending"
        row.partial_amount = None
        row.resolved_at = None
        return replace(row)

    async def mark_audit_only(self, db: Any, dispute_id: str) -> Dispute | None:
        row = self.rows.get(dispute_id)
        if row is None or not row.is_pending:
            return None
        row.audit_only = True
        return replace(row)


class ScriptedGateway:
    """Gateway double: each call pops the next scripted result, default SUCCESS."""

    name = "scripted"

    def __init__(self, deduplicates_by_reference: bool = True) -> None:
        self.deduplicates_by_reference = deduplicates_by_reference
        self.refund_results: list[GatewayResult] = []
        self.transfer_results: list[GatewayResult] = []
        self.known_transfers: dict[str, GatewayResult] = {}
        self.refund_calls: list[tuple[str, int, str]] = []
        self.transfer_calls: list[tuple[str, int, str]] = []
        self.charge_error: Exception | None = None

    async def initialize_charge(
        self, reference: str, amount: int, currency: str, email: str, metadata: dict[str, str]
    ) -> ChargeSession:
        if self.charge_error is not None:
            raise self.charge_error
        return ChargeSession(reference=reference, authorization_url=f"/pay/{reference}")

    async def refund(
        self, payment_reference: str, amount: int, idempotency_key: str
    ) -> GatewayResult:
        self.refund_calls.append((payment_reference, amount, idempotency_key))
        if self.refund_results:
            return self.refund_results.pop(0)
        return GatewayResult(outcome=GatewayOutcome.SUCCESS, external_reference="RFD_1")

    async def initiate_transfer(
        self, recipient_code: str, amount: int, currency: str, reference: str, reason: str
    ) -> GatewayResult:
        self.transfer_calls.append((recipient_code, amount, reference))
        if self.transfer_results:
            result = self.transfer_results.pop(0)
        else:
            result = GatewayResult(outcome=GatewayOutcome.SUCCESS, external_reference="TRF_1")
        self.known_transfers[reference] = result
        return result

    async def fetch_transfer(self, reference: str) -> GatewayResult | None:
        return self.known_transfers.get(reference)

    async def create_recipient(
        self,
        account_type: str,
        account_number: str,
        bank_code: str | None,
        name: str,
        currency: str,
    ) -> str:
        return f"RCP_{account_number}"

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        return signature == "valid"


def result(outcome: GatewayOutcome, detail: str | None = None) -> GatewayResult:
    return GatewayResult(outcome=outcome, detail=detail)


def make_transaction(
    txn_id: str = "txn_1",
    amount: int = 650000,
    seller_id: str = "seller-1",
    status: str = TransactionStatus.COMPLETED.value,
) -> Transaction:
    return Transaction(
        id=txn_id,
        listing_id="lst_1",
        seller_id=seller_id,
        amount=amount,
        currency="KES",
        payment_method="mpesa",
        payment_reference=f"KRW_lst_1_{txn_id}",
        status=status,
        buyer_email="buyer@example.com",
    )
