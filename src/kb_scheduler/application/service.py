"""AutoReleaseScheduler: externally triggered sweep over due holds.

Each hold is released on its own; one hold's failure is reported in its
result row and never stops the sweep. Re-running the sweep is a no-op for
holds that were already released.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.datetime_utils import hours_ago
from src.kb_common.enums import ReleaseTrigger
from src.kb_common.errors import AppError
from src.kb_escrow.application.service import EscrowStateMachine
from src.kb_scheduler.domain.repository import (
    CandidateRepositoryProtocol,
    ReleaseCandidate,
)

logger = logging.getLogger("kb.scheduler")

SWEEP_BATCH_SIZE = 100


@dataclass
class SweepItem:
    hold_id: str
    transaction_id: str
    result: str                      # "released" | "noop" | "error"
    trigger: str
    payout_job_id: str | None = None
    message: str | None = None


class AutoReleaseScheduler:
    def __init__(
        self,
        candidates: CandidateRepositoryProtocol,
        escrow: EscrowStateMachine,
        window_hours: int = 24,
    ) -> None:
        self._candidates = candidates
        self._escrow = escrow
        self._window_hours = window_hours

    async def sweep(self, db: AsyncSession, limit: int = SWEEP_BATCH_SIZE) -> list[SweepItem]:
        due = await self._candidates.find_due(db, hours_ago(self._window_hours), limit)
        results = [await self._release_one(db, c) for c in due]

        released = sum(1 for r in results if r.result == "released")
        errors = sum(1 for r in results if r.result == "error")
        logger.info(
            "Auto-release sweep: %d due, %d released, %d errors", len(due), released, errors
        )
        return results

    async def _release_one(self, db: AsyncSession, candidate: ReleaseCandidate) -> SweepItem:
        # A buyer confirm that never reached release is finished under its own trigger
        trigger = (
            ReleaseTrigger.BUYER_CONFIRMATION.value
            if candidate.buyer_confirmed
            else ReleaseTrigger.AUTO_RELEASE.value
        )
        try:
            outcome = await self._escrow.release(db, candidate.hold_id, trigger)
            if trigger == ReleaseTrigger.AUTO_RELEASE:
                await self._escrow.auto_confirm(db, candidate.transaction_id)
        except AppError as exc:
            logger.warning("Auto-release of hold %s failed: %s", candidate.hold_id, exc.message)
            return self._error(candidate, trigger, exc.message)
        except Exception as exc:
            logger.exception("Auto-release of hold %s errored", candidate.hold_id)
            await db.rollback()
            return self._error(candidate, trigger, f"{type(exc).__name__}: {exc}")
        return SweepItem(
            hold_id=candidate.hold_id,
            transaction_id=candidate.transaction_id,
            result="released" if outcome.applied else "noop",
            trigger=trigger,
            payout_job_id=outcome.payout_job_id,
        )

    @staticmethod
    def _error(candidate: ReleaseCandidate, trigger: str, message: str) -> SweepItem:
        return SweepItem(
            hold_id=candidate.hold_id,
            transaction_id=candidate.transaction_id,
            result="error",
            trigger=trigger,
            message=message,
        )
