"""kb_payout REST endpoints.

POST /payouts/withdraw             : seller, Idempotency-Key header
GET  /payouts                      : seller payout history (cursor pagination)
PUT  /payouts/account              : seller payout destination
POST /payouts/jobs/run             : scheduler (x-cron-secret): drain jobs
POST /payouts/jobs/{job_id}/retry  : admin: retry a FAILED job
"""

from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.database import get_db_session
from src.kb_common.errors import InvalidInputError
from src.kb_common.response import ApiResponse, success_response
from src.kb_gateway.auth.dependencies import (
    Principal,
    require_admin,
    require_cron_secret,
    require_seller,
)
from src.kb_gateway.providers import get_payout_executor, get_session_factory
from src.kb_payout.application.background import run_payout_jobs
from src.kb_payout.application.schemas import (
    JobRunResponse,
    PayoutAccountRequest,
    PayoutAccountResponse,
    PayoutHistoryResponse,
    PayoutJobResponse,
    PayoutRecordResponse,
    WithdrawRequest,
)
from src.kb_payout.application.service import DRAIN_BATCH_SIZE, PayoutExecutor

router = APIRouter(prefix="/payouts", tags=["payouts"])


@router.post("/withdraw", status_code=202)
async def withdraw(
    request: Request,
    req: WithdrawRequest,
    background: BackgroundTasks,
    seller: Annotated[Principal, Depends(require_seller)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
    idempotency_key: str | None = Header(None, alias="Idempotency-Key", max_length=64),
) -> ApiResponse:
    if not idempotency_key:
        raise InvalidInputError("Idempotency-Key header is required")
    job = await executor.withdraw(db, seller.id, req.amount, idempotency_key)
    if job.is_open:
        background.add_task(run_payout_jobs, get_session_factory(request), executor, [job.id])
    return success_response(PayoutJobResponse.from_domain(job).model_dump(), request)


@router.get("")
async def payout_history(
    request: Request,
    seller: Annotated[Principal, Depends(require_seller)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
    limit: int = Query(20, ge=1, le=100),
    cursor: str | None = Query(None, description="Pagination cursor (payout record id)"),
) -> ApiResponse:
    if cursor is not None and not cursor.isdigit():
        raise InvalidInputError("cursor must be a payout record id")
    records, next_cursor = await executor.history(
        db, seller.id, int(cursor) if cursor else None, limit
    )
    body = PayoutHistoryResponse(
        items=[PayoutRecordResponse.from_domain(r) for r in records],
        next_cursor=str(next_cursor) if next_cursor is not None else None,
        has_more=next_cursor is not None,
    )
    return success_response(body.model_dump(), request)


@router.put("/account")
async def set_payout_account(
    request: Request,
    req: PayoutAccountRequest,
    seller: Annotated[Principal, Depends(require_seller)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
) -> ApiResponse:
    account = await executor.set_account(
        db,
        seller.id,
        req.account_type,
        req.account_number,
        req.account_name,
        bank_code=req.bank_code,
    )
    return success_response(PayoutAccountResponse.from_domain(account).model_dump(), request)


@router.post("/jobs/run", dependencies=[Depends(require_cron_secret)])
async def drain_jobs(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
    limit: int = Query(DRAIN_BATCH_SIZE, ge=1, le=200),
) -> ApiResponse:
    results = await executor.drain(db, limit)
    return success_response(
        {
            "processed": len(results),
            "results": [JobRunResponse.from_domain(r).model_dump() for r in results],
        },
        request,
    )


@router.post("/jobs/{job_id}/retry")
async def retry_job(
    job_id: str,
    request: Request,
    background: BackgroundTasks,
    _: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
) -> ApiResponse:
    job = await executor.retry(db, job_id)
    background.add_task(run_payout_jobs, get_session_factory(request), executor, [job.id])
    return success_response(PayoutJobResponse.from_domain(job).model_dump(), request)
