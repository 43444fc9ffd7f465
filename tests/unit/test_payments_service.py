"""Unit tests for PaymentService.record_payment."""

import re

import pytest

from src.kb_common.enums import TransactionStatus
from src.kb_common.errors import (
    ExternalServiceError,
    InvalidInputError,
    TransactionNotFoundError,
)
from src.kb_payments.application.service import PaymentService, payment_reference
from tests.unit.fakes import FakeSession, FakeTransactionRepository, ScriptedGateway


@pytest.fixture
def service_parts():
    transactions = FakeTransactionRepository()
    gateway = ScriptedGateway()
    return PaymentService(transactions, gateway), transactions, gateway


async def _record(service, amount: int = 650000):
    return await service.record_payment(
        FakeSession(),
        listing_id="lst_1",
        seller_id="seller-1",
        amount=amount,
        currency="KES",
        payment_method="mpesa",
        buyer_email="buyer@example.com",
        buyer_name="Amina",
    )


class TestPaymentReference:
    def test_format(self) -> None:
        assert payment_reference("lst_9", now_ms=1700000000123) == "KRW_lst_9_1700000000123"

    def test_defaults_to_current_time(self) -> None:
        assert re.fullmatch(r"KRW_lst_1_\d{13}", payment_reference("lst_1"))


class TestRecordPayment:
    async def test_creates_pending_transaction(self, service_parts) -> None:
        service, transactions, _ = service_parts

        txn, session = await _record(service)

        assert txn.status == TransactionStatus.PENDING
        assert transactions.rows[txn.id].payment_reference == txn.payment_reference
        assert session.reference == txn.payment_reference

    async def test_gateway_failure_marks_transaction_failed(self, service_parts) -> None:
        service, transactions, gateway = service_parts
        gateway.charge_error = ExternalServiceError("scripted", "connection refused")

        with pytest.raises(ExternalServiceError):
            await _record(service)

        [stored] = transactions.rows.values()
        assert stored.status == TransactionStatus.FAILED

    @pytest.mark.parametrize("amount", [0, -100])
    async def test_rejects_non_positive_amount(self, service_parts, amount: int) -> None:
        service, transactions, _ = service_parts

        with pytest.raises(InvalidInputError):
            await _record(service, amount)
        assert transactions.rows == {}

    async def test_get_unknown_transaction(self, service_parts) -> None:
        service, _, _ = service_parts

        with pytest.raises(TransactionNotFoundError):
            await service.get(FakeSession(), "txn_missing")
