from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_scheduler.domain.repository import ReleaseCandidate

_FIND_DUE_SQL = text("""
    SELECT h.id AS hold_id,
           h.transaction_id,
           COALESCE(c.confirmed AND NOT c.auto_confirmed, FALSE) AS buyer_confirmed
    FROM escrow_holds h
    LEFT JOIN delivery_confirmations c ON c.transaction_id = h.transaction_id
    WHERE h.status = 'held'
      AND h.pending_action IS NULL
      AND NOT EXISTS (
          SELECT 1 FROM disputes d
          WHERE d.transaction_id = h.transaction_id
            AND d.resolution = 'pending' AND d.audit_only = FALSE
      )
      AND (
          c.confirmed = TRUE
          OR EXISTS (
              SELECT 1 FROM shipping_proofs p
              WHERE p.transaction_id = h.transaction_id AND p.dispatched_at <= :cutoff
          )
      )
    ORDER BY h.created_at
    LIMIT :limit
""")


class CandidateRepository:
    async def find_due(
        self, db: AsyncSession, cutoff: datetime, limit: int
    ) -> list[ReleaseCandidate]:
        result = await db.execute(_FIND_DUE_SQL, {"cutoff": cutoff, "limit": limit})
        return [
            ReleaseCandidate(
                hold_id=r.hold_id,  # type: ignore[attr-defined]
                transaction_id=r.transaction_id,  # type: ignore[attr-defined]
                buyer_confirmed=bool(r.buyer_confirmed),  # type: ignore[attr-defined]
            )
            for r in result.fetchall()
        ]
