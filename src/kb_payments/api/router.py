"""kb_payments REST endpoints.

POST /payments          : storefront service: record a payment attempt, start the charge
POST /webhooks/gateway  : payment gateway callbacks (HMAC-SHA512 signed)
"""

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.database import get_db_session
from src.kb_common.errors import InvalidInputError, InvalidSignatureError
from src.kb_common.response import ApiResponse, success_response
from src.kb_gateway.auth.dependencies import Principal, require_operator
from src.kb_gateway.providers import get_gateway, get_payment_service, get_webhook_processor
from src.kb_payments.application.schemas import RecordPaymentRequest, RecordPaymentResponse
from src.kb_payments.application.service import PaymentService
from src.kb_payments.application.webhook import WebhookProcessor, parse_event
from src.kb_payments.domain.gateway import PaymentGatewayProtocol

logger = logging.getLogger("kb.webhook")

router = APIRouter(tags=["payments"])


@router.post("/payments", status_code=201)
async def record_payment(
    request: Request,
    req: RecordPaymentRequest,
    _: Annotated[Principal, Depends(require_operator)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    payments: Annotated[PaymentService, Depends(get_payment_service)],
) -> ApiResponse:
    txn, session = await payments.record_payment(
        db,
        req.listing_id,
        req.seller_id,
        req.amount,
        req.currency,
        req.payment_method,
        req.buyer_email,
        buyer_name=req.buyer_name,
        buyer_phone=req.buyer_phone,
    )
    return success_response(RecordPaymentResponse.build(txn, session).model_dump(), request)


@router.post("/webhooks/gateway")
async def gateway_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    gateway: Annotated[PaymentGatewayProtocol, Depends(get_gateway)],
    processor: Annotated[WebhookProcessor, Depends(get_webhook_processor)],
    x_gateway_signature: str | None = Header(None, alias="x-gateway-signature"),
) -> ApiResponse:
    raw = await request.body()
    if not x_gateway_signature or not gateway.verify_signature(raw, x_gateway_signature):
        logger.warning("Rejected webhook with invalid signature from %s", request.client)
        raise InvalidSignatureError()

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidInputError("webhook body is not JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidInputError("webhook body must be an object")

    event = parse_event(payload)
    if event is None:
        logger.info("Ignoring gateway event %s", payload.get("event"))
        return success_response({"processed": False, "retry": False}, request)

    result = await processor.handle(db, event)
    logger.info("Gateway event %s handled: %s", event.event, result)
    return success_response(result, request)
