"""Auto-release candidate selection.

A hold is due when it is still ``held`` with no refund in flight and no open
dispute, and either its shipment was dispatched before the cutoff or the
buyer already confirmed (a confirm whose release never committed).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class ReleaseCandidate:
    hold_id: str
    transaction_id: str
    buyer_confirmed: bool


class CandidateRepositoryProtocol(Protocol):
    async def find_due(
        self, db: AsyncSession, cutoff: datetime, limit: int
    ) -> list[ReleaseCandidate]: ...
