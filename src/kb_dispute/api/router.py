"""kb_dispute REST endpoints.

POST /disputes/create  : seller (own sales) or admin
POST /disputes/resolve : admin
"""

from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.database import get_db_session
from src.kb_common.enums import DisputeInitiator, PrincipalRole
from src.kb_common.errors import ForbiddenError
from src.kb_common.response import ApiResponse, success_response
from src.kb_dispute.application.schemas import DisputeResponse, ResolutionResponse
from src.kb_dispute.application.service import DisputeResolver
from src.kb_escrow.application.commands import (
    DisputeCreateCommand,
    DisputeResolveCommand,
    parse_command,
)
from src.kb_gateway.auth.dependencies import Principal, get_current_principal, require_admin
from src.kb_gateway.providers import (
    get_dispute_resolver,
    get_payout_executor,
    get_session_factory,
)
from src.kb_payout.application.background import run_payout_jobs
from src.kb_payout.application.service import PayoutExecutor

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post("/create", status_code=201)
async def create_dispute(
    request: Request,
    payload: Annotated[dict[str, Any], Body()],
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    resolver: Annotated[DisputeResolver, Depends(get_dispute_resolver)],
) -> ApiResponse:
    cmd: DisputeCreateCommand = parse_command("dispute_create", payload)
    if principal.role == PrincipalRole.SELLER:
        seller_id: str | None = principal.id
        initiated_by = DisputeInitiator.SELLER.value
    elif principal.is_admin:
        seller_id = None
        initiated_by = cmd.initiated_by.value
    else:
        raise ForbiddenError("Seller or admin role required")

    dispute = await resolver.create(
        db,
        cmd.transaction_id,
        cmd.reason,
        cmd.evidence,
        initiated_by,
        seller_id=seller_id,
    )
    return success_response(DisputeResponse.from_domain(dispute).model_dump(), request)


@router.post("/resolve")
async def resolve_dispute(
    request: Request,
    payload: Annotated[dict[str, Any], Body()],
    background: BackgroundTasks,
    _: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    resolver: Annotated[DisputeResolver, Depends(get_dispute_resolver)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
) -> ApiResponse:
    cmd: DisputeResolveCommand = parse_command("dispute_resolve", payload)
    outcome = await resolver.resolve(db, cmd.dispute_id, cmd.resolution, cmd.partial_amount)
    if outcome.settlement.applied and outcome.settlement.payout_job_id:
        background.add_task(
            run_payout_jobs,
            get_session_factory(request),
            executor,
            [outcome.settlement.payout_job_id],
        )
    return success_response(ResolutionResponse.from_domain(outcome).model_dump(), request)
