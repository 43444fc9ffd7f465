"""Services wired to in-memory repositories."""

from dataclasses import dataclass

import pytest

from src.kb_dispute.application.service import DisputeResolver
from src.kb_escrow.application.service import EscrowStateMachine
from src.kb_escrow.domain.models import LockResult
from src.kb_payout.application.service import PayoutExecutor
from src.kb_payout.domain.models import PayoutAccount
from tests.unit.fakes import (
    FakeDisputeRepository,
    FakeEscrowRepository,
    FakePayoutRepository,
    FakeSession,
    FakeTransactionRepository,
    ScriptedGateway,
    make_transaction,
)


@dataclass
class World:
    db: FakeSession
    transactions: FakeTransactionRepository
    holds: FakeEscrowRepository
    payouts: FakePayoutRepository
    disputes: FakeDisputeRepository
    gateway: ScriptedGateway
    escrow: EscrowStateMachine
    executor: PayoutExecutor
    resolver: DisputeResolver

    async def locked(
        self, txn_id: str = "txn_1", amount: int = 650000, seller_id: str = "seller-1"
    ) -> LockResult:
        """A completed transaction with a held hold."""
        txn = make_transaction(txn_id, amount, seller_id)
        self.transactions.rows[txn.id] = txn
        return await self.escrow.lock(self.db, txn.id)

    def add_account(self, seller_id: str = "seller-1") -> None:
        self.payouts.accounts[seller_id] = PayoutAccount(
            seller_id=seller_id,
            account_type="mpesa",
            account_number="254700000001",
            recipient_code="RCP_1",
        )


@pytest.fixture
def world() -> World:
    db = FakeSession()
    transactions = FakeTransactionRepository()
    holds = FakeEscrowRepository()
    payouts = FakePayoutRepository(holds)
    disputes = FakeDisputeRepository()
    gateway = ScriptedGateway()
    escrow = EscrowStateMachine(holds, transactions, payouts, gateway, gateway_timeout=0.5)
    executor = PayoutExecutor(payouts, gateway, gateway_timeout=0.5, stale_after_seconds=300)
    resolver = DisputeResolver(disputes, escrow, transactions)
    return World(
        db=db,
        transactions=transactions,
        holds=holds,
        payouts=payouts,
        disputes=disputes,
        gateway=gateway,
        escrow=escrow,
        executor=executor,
        resolver=resolver,
    )
