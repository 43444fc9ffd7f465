"""Simulated gateway: the default rail; no real money moves.

Deduplicates by reference like a real processor, so replayed transfers and
refunds return the first result instead of paying twice. References listed in
``fail_references`` fail definitively and references in ``hang_references``
never answer (exercising the timeout path).
"""

import asyncio
import hashlib
import logging

from src.kb_common.enums import GatewayOutcome
from src.kb_payments.domain.models import ChargeSession, GatewayResult
from src.kb_payments.infrastructure.signatures import verify_payload

logger = logging.getLogger("kb.payments")


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:12].upper()


class SimulatedGateway:
    name = "simulated"
    deduplicates_by_reference = True

    def __init__(self, webhook_secret: str = "") -> None:
        self._webhook_secret = webhook_secret
        self._transfers: dict[str, GatewayResult] = {}
        self._refunds: dict[str, GatewayResult] = {}
        self.fail_references: set[str] = set()
        self.hang_references: set[str] = set()

    async def initialize_charge(
        self,
        reference: str,
        amount: int,
        currency: str,
        email: str,
        metadata: dict[str, str],
    ) -> ChargeSession:
        return ChargeSession(
            reference=reference,
            authorization_url=f"/simulated/checkout/{reference}",
            access_code=_short_hash(reference),
        )

    async def refund(
        self, payment_reference: str, amount: int, idempotency_key: str
    ) -> GatewayResult:
        if idempotency_key in self.hang_references:
            await asyncio.Event().wait()
        if idempotency_key not in self._refunds:
            if idempotency_key in self.fail_references:
                return GatewayResult(outcome=GatewayOutcome.FAILED, detail="simulated refund failure")
            self._refunds[idempotency_key] = GatewayResult(
                outcome=GatewayOutcome.SUCCESS,
                external_reference=f"SIM_RFD_{_short_hash(idempotency_key)}",
            )
            logger.info("Simulated refund %s: %d on %s", idempotency_key, amount, payment_reference)
        return self._refunds[idempotency_key]

    async def initiate_transfer(
        self,
        recipient_code: str,
        amount: int,
        currency: str,
        reference: str,
        reason: str,
    ) -> GatewayResult:
        if reference in self.hang_references:
            await asyncio.Event().wait()
        if reference not in self._transfers:
            if reference in self.fail_references:
                return GatewayResult(outcome=GatewayOutcome.FAILED, detail="simulated transfer failure")
            self._transfers[reference] = GatewayResult(
                outcome=GatewayOutcome.SUCCESS,
                external_reference=f"SIM_TRF_{_short_hash(reference)}",
            )
            logger.info("Simulated transfer %s: %d %s to %s", reference, amount, currency, recipient_code)
        return self._transfers[reference]

    async def fetch_transfer(self, reference: str) -> GatewayResult | None:
        return self._transfers.get(reference)

    async def create_recipient(
        self,
        account_type: str,
        account_number: str,
        bank_code: str | None,
        name: str,
        currency: str,
    ) -> str:
        return f"RCP_SIM_{_short_hash(account_type + account_number)}"

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        return verify_payload(raw_body, signature, self._webhook_secret)
