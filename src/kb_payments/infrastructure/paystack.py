"""Paystack-style HTTP gateway adapter (httpx).

Amounts are already minor units (kobo/cents), so they are sent unchanged.
HTTP 4xx responses are definite failures; 5xx responses, timeouts and
transport errors are ambiguous and left for the caller to re-drive.
"""

import logging
from typing import Any

import httpx

from src.kb_common.enums import GatewayOutcome
from src.kb_common.errors import ExternalServiceError
from src.kb_payments.domain.models import ChargeSession, GatewayResult
from src.kb_payments.infrastructure.signatures import verify_payload

logger = logging.getLogger("kb.payments")

# Paystack transfer/refund data.status values
_SUCCESS_STATES = {"success", "processed"}
_FAILED_STATES = {"failed", "reversed", "abandoned"}


def _map_status(status: str | None) -> GatewayOutcome:
    if status in _SUCCESS_STATES:
        return GatewayOutcome.SUCCESS
    if status in _FAILED_STATES:
        return GatewayOutcome.FAILED
    # "pending", "otp", "processing", "queued": webhook will follow
    return GatewayOutcome.PENDING


class PaystackGateway:
    name = "paystack"
    deduplicates_by_reference = True

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        base_url: str,
        timeout: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_secret = webhook_secret or secret_key
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> GatewayResult:
        resp = await self._client.post(path, json=body)
        return self._to_result(resp)

    def _to_result(self, resp: httpx.Response) -> GatewayResult:
        if resp.status_code >= 500:
            return GatewayResult(
                outcome=GatewayOutcome.AMBIGUOUS, detail=f"HTTP {resp.status_code}"
            )
        payload: dict[str, Any] = resp.json()
        if resp.status_code >= 400 or not payload.get("status"):
            return GatewayResult(
                outcome=GatewayOutcome.FAILED,
                detail=str(payload.get("message", f"HTTP {resp.status_code}")),
                raw=payload,
            )
        data = payload.get("data") or {}
        return GatewayResult(
            outcome=_map_status(data.get("status")),
            external_reference=data.get("transfer_code") or data.get("reference"),
            raw=data,
        )

    async def initialize_charge(
        self,
        reference: str,
        amount: int,
        currency: str,
        email: str,
        metadata: dict[str, str],
    ) -> ChargeSession:
        try:
            resp = await self._client.post(
                "/transaction/initialize",
                json={
                    "email": email,
                    "amount": amount,
                    "currency": currency,
                    "reference": reference,
                    "metadata": metadata,
                },
            )
        except httpx.HTTPError as exc:
            raise ExternalServiceError("gateway", f"charge initialization failed: {exc}") from exc
        payload = resp.json()
        if resp.status_code >= 400 or not payload.get("status"):
            raise ExternalServiceError("gateway", str(payload.get("message", "charge rejected")))
        data = payload["data"]
        return ChargeSession(
            reference=reference,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )

    async def refund(
        self, payment_reference: str, amount: int, idempotency_key: str
    ) -> GatewayResult:
        result = await self._post(
            "/refund",
            {
                "transaction": payment_reference,
                "amount": amount,
                "merchant_note": idempotency_key,
            },
        )
        logger.info("Refund %s for %s -> %s", idempotency_key, payment_reference, result.outcome.value)
        return result

    async def initiate_transfer(
        self,
        recipient_code: str,
        amount: int,
        currency: str,
        reference: str,
        reason: str,
    ) -> GatewayResult:
        return await self._post(
            "/transfer",
            {
                "source": "balance",
                "amount": amount,
                "currency": currency,
                "recipient": recipient_code,
                "reason": reason,
                "reference": reference,
            },
        )

    async def fetch_transfer(self, reference: str) -> GatewayResult | None:
        resp = await self._client.get(f"/transfer/verify/{reference}")
        if resp.status_code == 404:
            return None
        return self._to_result(resp)

    async def create_recipient(
        self,
        account_type: str,
        account_number: str,
        bank_code: str | None,
        name: str,
        currency: str,
    ) -> str:
        body = {
            "type": "nuban" if account_type == "bank" else "mobile_money",
            "name": name,
            "account_number": account_number,
            "bank_code": bank_code if account_type == "bank" else "mpesa",
            "currency": currency,
        }
        try:
            result = await self._post("/transferrecipient", body)
        except httpx.HTTPError as exc:
            raise ExternalServiceError("gateway", f"recipient creation failed: {exc}") from exc
        code = result.raw.get("recipient_code")
        if result.definitely_failed or not code:
            raise ExternalServiceError("gateway", result.detail or "recipient creation failed")
        return str(code)

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        return verify_payload(raw_body, signature, self._webhook_secret)
