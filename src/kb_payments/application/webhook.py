"""Gateway webhook events.

The raw body is authenticated (HMAC-SHA512, ``x-gateway-signature``) before
it is parsed. Known events are validated into a ``GatewayEvent`` variant;
event types we do not handle are acknowledged and ignored so the gateway
stops retrying them. Every handler is safe to replay.
"""

import logging
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.errors import InvalidInputError
from src.kb_escrow.application.service import EscrowStateMachine
from src.kb_payout.application.service import PayoutExecutor

logger = logging.getLogger("kb.webhook")


class _Data(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ChargeData(_Data):
    reference: str
    amount: int
    currency: str | None = None
    gateway_response: str | None = None


class TransferData(_Data):
    reference: str
    transfer_code: str | None = None
    reason: str | None = None


class RefundData(_Data):
    transaction_reference: str
    refund_reference: str | None = None
    amount: int | None = None
    status: str | None = None


class ChargeSuccess(BaseModel):
    event: Literal["charge.success"]
    data: ChargeData


class ChargeFailed(BaseModel):
    event: Literal["charge.failed"]
    data: ChargeData


class TransferSuccess(BaseModel):
    event: Literal["transfer.success"]
    data: TransferData


class TransferFailed(BaseModel):
    event: Literal["transfer.failed", "transfer.reversed"]
    data: TransferData


class RefundProcessed(BaseModel):
    event: Literal["refund.processed"]
    data: RefundData


class RefundFailed(BaseModel):
    event: Literal["refund.failed"]
    data: RefundData


GatewayEvent = Annotated[
    ChargeSuccess
    | ChargeFailed
    | TransferSuccess
    | TransferFailed
    | RefundProcessed
    | RefundFailed,
    Field(discriminator="event"),
]

HANDLED_EVENTS = frozenset(
    {
        "charge.success",
        "charge.failed",
        "transfer.success",
        "transfer.failed",
        "transfer.reversed",
        "refund.processed",
        "refund.failed",
    }
)

_adapter: TypeAdapter[Any] = TypeAdapter(GatewayEvent)


def parse_event(payload: dict[str, Any]) -> Any | None:
    """Return the event variant, or None for event types we do not handle."""
    if payload.get("event") not in HANDLED_EVENTS:
        return None
    try:
        return _adapter.validate_python(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "event"
        raise InvalidInputError(f"{loc}: {first.get('msg', 'invalid')}") from exc


class WebhookProcessor:
    def __init__(self, escrow: EscrowStateMachine, payouts: PayoutExecutor) -> None:
        self._escrow = escrow
        self._payouts = payouts

    async def handle(self, db: AsyncSession, event: Any) -> dict[str, Any]:
        if isinstance(event, ChargeSuccess):
            locked = await self._escrow.complete_payment(db, event.data.reference, event.data.amount)
            if locked is None:
                return {"processed": False}
            return {"processed": True, "hold_id": locked.hold.id, "applied": locked.applied}

        if isinstance(event, ChargeFailed):
            txn = await self._escrow.fail_payment(db, event.data.reference)
            return {"processed": txn is not None}

        if isinstance(event, (TransferSuccess, TransferFailed)):
            succeeded = isinstance(event, TransferSuccess)
            run = await self._payouts.complete_transfer_callback(
                db,
                event.data.reference,
                succeeded,
                external_reference=event.data.transfer_code,
                detail=None if succeeded else (event.data.reason or event.event),
            )
            if run is None:
                return {"processed": False}
            return {"processed": True, "job_id": run.job_id, "status": run.status}

        if isinstance(event, (RefundProcessed, RefundFailed)):
            outcome = await self._escrow.complete_refund_callback(
                db,
                event.data.transaction_reference,
                isinstance(event, RefundProcessed),
                detail=event.data.status,
            )
            if outcome is None:
                return {"processed": False}
            return {"processed": True, "hold_id": outcome.hold.id, "status": outcome.hold.status}

        raise InvalidInputError(f"unhandled event {type(event).__name__}")
