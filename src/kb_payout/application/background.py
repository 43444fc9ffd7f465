"""Fire-and-forget payout execution after a release.

Runs after the response is sent, in its own session. A failure here only
delays the payout: the job stays QUEUED or IN_FLIGHT and the next drain
picks it up.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.kb_payout.application.service import PayoutExecutor

logger = logging.getLogger("kb.payout")


async def run_payout_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    executor: PayoutExecutor,
    job_ids: list[str],
) -> None:
    for job_id in job_ids:
        try:
            async with session_factory() as db:
                result = await executor.run_job(db, job_id)
            logger.info("Background payout job %s: %s", job_id, result.outcome)
        except Exception:
            logger.exception("Background payout job %s failed; left for the next drain", job_id)
