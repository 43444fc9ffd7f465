"""Scheduler endpoint (external cron, ``x-cron-secret``).

GET /escrow/auto-release/sweep: release due holds, per-hold results
"""

from dataclasses import asdict
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.database import get_db_session
from src.kb_common.response import ApiResponse, success_response
from src.kb_gateway.auth.dependencies import require_cron_secret
from src.kb_gateway.providers import get_payout_executor, get_scheduler, get_session_factory
from src.kb_payout.application.background import run_payout_jobs
from src.kb_payout.application.service import PayoutExecutor
from src.kb_scheduler.application.service import SWEEP_BATCH_SIZE, AutoReleaseScheduler

router = APIRouter(prefix="/escrow/auto-release", tags=["scheduler"])


@router.get("/sweep", dependencies=[Depends(require_cron_secret)])
async def sweep(
    request: Request,
    background: BackgroundTasks,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    scheduler: Annotated[AutoReleaseScheduler, Depends(get_scheduler)],
    executor: Annotated[PayoutExecutor, Depends(get_payout_executor)],
    limit: int = Query(SWEEP_BATCH_SIZE, ge=1, le=500),
) -> ApiResponse:
    items = await scheduler.sweep(db, limit)
    job_ids = [i.payout_job_id for i in items if i.result == "released" and i.payout_job_id]
    if job_ids:
        background.add_task(run_payout_jobs, get_session_factory(request), executor, job_ids)
    return success_response(
        {
            "processed": len(items),
            "released": sum(1 for i in items if i.result == "released"),
            "results": [asdict(i) for i in items],
        },
        request,
    )
