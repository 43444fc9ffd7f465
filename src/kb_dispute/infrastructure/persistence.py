"""DisputeRepository: concrete implementation of DisputeRepositoryProtocol.

Transaction ownership: the CALLER commits or rolls back.
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_dispute.domain.models import Dispute

_COLUMNS = """
    id, transaction_id, hold_id, seller_id, initiated_by, reason, evidence,
    resolution, partial_amount, audit_only, resolved_at, created_at, updated_at
"""

_INSERT_SQL = text(f"""
    INSERT INTO disputes
        (id, transaction_id, hold_id, seller_id, initiated_by, reason, evidence, audit_only)
    VALUES
        (:id, :transaction_id, :hold_id, :seller_id, :initiated_by, :reason,
         CAST(:evidence AS JSONB), :audit_only)
    ON CONFLICT (transaction_id) DO NOTHING
    RETURNING {_COLUMNS}
""")

_GET_BY_ID_SQL = text(f"SELECT {_COLUMNS} FROM disputes WHERE id = :id")

_GET_BY_TXN_SQL = text(f"SELECT {_COLUMNS} FROM disputes WHERE transaction_id = :transaction_id")

# Whoever flips resolution away from 'pending' owns the money movement
_CLAIM_SQL = text(f"""
    UPDATE disputes
    SET resolution = :resolution, partial_amount = :partial_amount, resolved_at = NOW()
    WHERE id = :id AND resolution = 'pending' AND audit_only = FALSE
    RETURNING {_COLUMNS}
""")

_REVERT_SQL = text(f"""
    UPDATE disputes
    SET resolution = 'pending', partial_amount = NULL, resolved_at = NULL
    WHERE id = :id AND resolution = :resolution
    RETURNING {_COLUMNS}
""")

_MARK_AUDIT_ONLY_SQL = text(f"""
    UPDATE disputes SET audit_only = TRUE
    WHERE id = :id AND resolution = 'pending'
    RETURNING {_COLUMNS}
""")


def _row_to_dispute(row: object) -> Dispute:
    evidence = row.evidence  # type: ignore[attr-defined]
    if isinstance(evidence, str):
        evidence = json.loads(evidence)
    return Dispute(
        id=row.id,  # type: ignore[attr-defined]
        transaction_id=row.transaction_id,  # type: ignore[attr-defined]
        hold_id=row.hold_id,  # type: ignore[attr-defined]
        seller_id=row.seller_id,  # type: ignore[attr-defined]
        initiated_by=row.initiated_by,  # type: ignore[attr-defined]
        reason=row.reason,  # type: ignore[attr-defined]
        evidence=list(evidence or []),
        resolution=row.resolution,  # type: ignore[attr-defined]
        partial_amount=row.partial_amount,  # type: ignore[attr-defined]
        audit_only=row.audit_only,  # type: ignore[attr-defined]
        resolved_at=row.resolved_at,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
    )


class DisputeRepository:
    async def insert(self, db: AsyncSession, dispute: Dispute) -> Dispute | None:
        result = await db.execute(
            _INSERT_SQL,
            {
                "id": dispute.id,
                "transaction_id": dispute.transaction_id,
                "hold_id": dispute.hold_id,
                "seller_id": dispute.seller_id,
                "initiated_by": dispute.initiated_by,
                "reason": dispute.reason,
                "evidence": json.dumps(dispute.evidence),
                "audit_only": dispute.audit_only,
            },
        )
        row = result.fetchone()
        return _row_to_dispute(row) if row else None

    async def get_by_id(self, db: AsyncSession, dispute_id: str) -> Dispute | None:
        row = (await db.execute(_GET_BY_ID_SQL, {"id": dispute_id})).fetchone()
        return _row_to_dispute(row) if row else None

    async def get_by_transaction(
        self, db: AsyncSession, transaction_id: str
    ) -> Dispute | None:
        row = (
            await db.execute(_GET_BY_TXN_SQL, {"transaction_id": transaction_id})
        ).fetchone()
        return _row_to_dispute(row) if row else None

    async def claim_resolution(
        self,
        db: AsyncSession,
        dispute_id: str,
        resolution: str,
        partial_amount: int | None,
    ) -> Dispute | None:
        result = await db.execute(
            _CLAIM_SQL,
            {"id": dispute_id, "resolution": resolution, "partial_amount": partial_amount},
        )
        row = result.fetchone()
        return _row_to_dispute(row) if row else None

    async def revert_resolution(
        self, db: AsyncSession, dispute_id: str, resolution: str
    ) -> Dispute | None:
        result = await db.execute(_REVERT_SQL, {"id": dispute_id, "resolution": resolution})
        row = result.fetchone()
        return _row_to_dispute(row) if row else None

    async def mark_audit_only(self, db: AsyncSession, dispute_id: str) -> Dispute | None:
        row = (await db.execute(_MARK_AUDIT_ONLY_SQL, {"id": dispute_id})).fetchone()
        return _row_to_dispute(row) if row else None
