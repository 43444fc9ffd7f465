"""kb_escrow REST endpoints.

POST /escrow/lock       : service/admin: lock a completed transaction
POST /escrow/release    : admin: manual release
POST /escrow/refund     : admin: refund through the gateway
POST /escrow/confirm    : buyer (confirmation code): confirm delivery, release
POST /escrow/reject     : buyer (confirmation code): reject delivery, open dispute
POST /escrow/shipments  : seller: record shipping proof
"""

from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.database import get_db_session
from src.kb_common.enums import ReleaseTrigger
from src.kb_common.errors import InvalidInputError
from src.kb_common.response import ApiResponse, success_response
from src.kb_dispute.application.schemas import DisputeResponse
from src.kb_dispute.application.service import DisputeResolver
from src.kb_escrow.application.commands import (
    LockCommand,
    RefundCommand,
    ReleaseCommand,
    parse_command,
)
from src.kb_escrow.application.schemas import (
    ConfirmDeliveryRequest,
    LockResponse,
    RecordShipmentRequest,
    RejectDeliveryRequest,
    ShipmentResponse,
    TransitionResponse,
)
from src.kb_escrow.application.service import EscrowStateMachine
from src.kb_escrow.application.shipments import ShipmentService, score_shipment
from src.kb_escrow.domain.models import TransitionOutcome
from src.kb_escrow.domain.verification import VerificationServiceProtocol
from src.kb_escrow.infrastructure.persistence import EscrowRepository
from src.kb_gateway.auth.dependencies import (
    Principal,
    require_admin,
    require_operator,
    require_seller,
)
from src.kb_gateway.providers import (
    get_dispute_resolver,
    get_escrow_repository,
    get_payout_executor,
    get_session_factory,
    get_shipment_service,
    get_state_machine,
    get_verifier,
)
from src.kb_payout.application.background import run_payout_jobs
from src.kb_payout.application.service import PayoutExecutor

router = APIRouter(prefix="/escrow", tags=["escrow"])


async def _hold_id(
    escrow: EscrowStateMachine, db: AsyncSession, cmd: ReleaseCommand | RefundCommand
) -> str:
    if cmd.hold_id:
        return cmd.hold_id
    if not cmd.transaction_id:
        raise InvalidInputError("hold_id or transaction_id is required")
    return (await escrow.get_hold_for_transaction(db, cmd.transaction_id)).id


def _schedule_payout(
    background: BackgroundTasks,
    request: Request,
    executor: PayoutExecutor,
    outcome: TransitionOutcome,
) -> None:
    if outcome.applied and outcome.payout_job_id:
        background.add_task(
            run_payout_jobs,
            get_session_factory(request),
            executor,
            [outcome.payout_job_id],
        )


@router.post("/lock")
async def lock(
    request: Request,
    payload: Annotated[dict[str, Any], Body()],
    _: Annotated[Principal, Depends(require_operator)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    escrow: Annotated[EscrowStateMachine, Depends(get_state_machine)],
) -> ApiResponse:
    cmd: LockCommand = parse_command("lock", payload)
    result = await escrow.lock(db, cmd.transaction_id)
    return success_response(LockResponse.from_domain(result).model_dump(), request)


@router.post("/release")
async def release(
    request: Request,
    payload: Annotated[dict[str, Any], Body()],
    background: BackgroundTasks,
    _: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    escrow: Annotated[EscrowStateMachine, Depends(get_state_machine)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
) -> ApiResponse:
    cmd: ReleaseCommand = parse_command("release", payload)
    hold_id = await _hold_id(escrow, db, cmd)
    outcome = await escrow.release(db, hold_id, ReleaseTrigger.MANUAL_ADMIN.value)
    _schedule_payout(background, request, executor, outcome)
    return success_response(TransitionResponse.from_domain(outcome).model_dump(), request)


@router.post("/refund")
async def refund(
    request: Request,
    payload: Annotated[dict[str, Any], Body()],
    _: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    escrow: Annotated[EscrowStateMachine, Depends(get_state_machine)],
) -> ApiResponse:
    cmd: RefundCommand = parse_command("refund", payload)
    hold_id = await _hold_id(escrow, db, cmd)
    outcome = await escrow.refund(db, hold_id, cmd.reason)
    return success_response(TransitionResponse.from_domain(outcome).model_dump(), request)


@router.post("/confirm")
async def confirm_delivery(
    request: Request,
    req: ConfirmDeliveryRequest,
    background: BackgroundTasks,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    escrow: Annotated[EscrowStateMachine, Depends(get_state_machine)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
) -> ApiResponse:
    outcome = await escrow.confirm_delivery(db, req.confirmation_id, req.code)
    _schedule_payout(background, request, executor, outcome)
    return success_response(TransitionResponse.from_domain(outcome).model_dump(), request)


@router.post("/reject")
async def reject_delivery(
    request: Request,
    req: RejectDeliveryRequest,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    resolver: Annotated[DisputeResolver, Depends(get_dispute_resolver)],
) -> ApiResponse:
    dispute = await resolver.reject_delivery(
        db, req.confirmation_id, req.code, req.reason, req.evidence
    )
    return success_response(DisputeResponse.from_domain(dispute).model_dump(), request)


@router.post("/shipments", status_code=201)
async def record_shipment(
    request: Request,
    req: RecordShipmentRequest,
    background: BackgroundTasks,
    seller: Annotated[Principal, Depends(require_seller)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    shipments: Annotated[ShipmentService, Depends(get_shipment_service)],
    holds: Annotated[EscrowRepository, Depends(get_escrow_repository)],
    verifier: Annotated[VerificationServiceProtocol, Depends(get_verifier)],
) -> ApiResponse:
    proof = await shipments.record_shipment(
        db,
        seller.id,
        req.transaction_id,
        req.courier_name,
        courier_contact=req.courier_contact,
        tracking_number=req.tracking_number,
        dispatch_images=req.dispatch_images,
    )
    background.add_task(score_shipment, get_session_factory(request), holds, verifier, proof)
    return success_response(ShipmentResponse.from_domain(proof).model_dump(), request)
