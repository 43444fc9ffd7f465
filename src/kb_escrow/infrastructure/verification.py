"""Dispatch verification adapters.

HttpVerificationService posts the proof to the external scoring service;
NullVerificationService is used when ``VERIFICATION_SERVICE_URL`` is empty.
"""

import logging

import httpx

from config.settings import Settings
from src.kb_common.errors import ExternalServiceError
from src.kb_escrow.domain.models import ShippingProof
from src.kb_escrow.domain.verification import (
    VerificationResult,
    VerificationServiceProtocol,
)

logger = logging.getLogger("kb.verification")


class HttpVerificationService:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def score(self, proof: ShippingProof) -> VerificationResult | None:
        try:
            resp = await self._client.post(
                "/verify",
                json={
                    "transaction_id": proof.transaction_id,
                    "courier_name": proof.courier_name,
                    "tracking_number": proof.tracking_number,
                    "images": proof.dispatch_images,
                },
            )
        except httpx.HTTPError as exc:
            raise ExternalServiceError("verification", str(exc)) from exc
        if resp.status_code >= 400:
            raise ExternalServiceError("verification", f"HTTP {resp.status_code}")

        body = resp.json()
        score = max(0, min(100, int(body.get("score", 0))))
        return VerificationResult(score=score, notes=body.get("notes"))


class NullVerificationService:
    async def score(self, proof: ShippingProof) -> VerificationResult | None:
        return None


def build_verifier(settings: Settings) -> VerificationServiceProtocol:
    if settings.VERIFICATION_SERVICE_URL:
        return HttpVerificationService(
            settings.VERIFICATION_SERVICE_URL, settings.GATEWAY_TIMEOUT_SECONDS
        )
    logger.info("VERIFICATION_SERVICE_URL not set; dispatch scoring disabled")
    return NullVerificationService()
