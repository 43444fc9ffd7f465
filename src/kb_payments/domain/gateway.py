"""Payment Gateway Adapter contract.

Every call that moves money (refund, transfer) goes through ``call_bounded``
so that a slow or hung gateway is cut off by a timeout and reported as
AMBIGUOUS rather than as a failure.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Protocol

import httpx

from src.kb_common.enums import GatewayOutcome
from src.kb_payments.domain.models import ChargeSession, GatewayResult

logger = logging.getLogger("kb.payments")


class PaymentGatewayProtocol(Protocol):
    name: str
    # True when a repeated reference can never produce a second transfer
    deduplicates_by_reference: bool

    async def initialize_charge(
        self,
        reference: str,
        amount: int,
        currency: str,
        email: str,
        metadata: dict[str, str],
    ) -> ChargeSession: ...

    async def refund(
        self, payment_reference: str, amount: int, idempotency_key: str
    ) -> GatewayResult: ...

    async def initiate_transfer(
        self,
        recipient_code: str,
        amount: int,
        currency: str,
        reference: str,
        reason: str,
    ) -> GatewayResult: ...

    async def fetch_transfer(self, reference: str) -> GatewayResult | None: ...

    async def create_recipient(
        self,
        account_type: str,
        account_number: str,
        bank_code: str | None,
        name: str,
        currency: str,
    ) -> str: ...

    def verify_signature(self, raw_body: bytes, signature: str) -> bool: ...


async def call_bounded(
    call: Awaitable[GatewayResult], timeout: float, operation: str
) -> GatewayResult:
    """Run a money-moving gateway call under a timeout.

    Timeouts and transport errors carry no confirmation either way, so they
    map to AMBIGUOUS; callers keep their intent recorded and retry later.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        logger.warning("Gateway %s timed out after %.1fs", operation, timeout)
        return GatewayResult(outcome=GatewayOutcome.AMBIGUOUS, detail="timeout")
    except httpx.TransportError as exc:
        logger.warning("Gateway %s transport error: %s", operation, exc)
        return GatewayResult(outcome=GatewayOutcome.AMBIGUOUS, detail=str(exc))
