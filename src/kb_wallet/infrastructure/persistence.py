"""Read-only aggregates for the wallet projection.

Three independent statements; under READ COMMITTED they may observe
different commits, so the wallet is a best-effort point-in-time view.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

_HOLD_TOTALS_SQL = text("""
    SELECT status, COALESCE(SUM(amount), 0) AS total
    FROM escrow_holds
    WHERE seller_id = :seller_id AND status IN ('held', 'disputed')
    GROUP BY status
""")

_SETTLEMENT_TOTALS_SQL = text("""
    SELECT kind, COALESCE(SUM(amount), 0) AS total
    FROM hold_settlements
    WHERE seller_id = :seller_id
    GROUP BY kind
""")

_PAYOUT_TOTALS_SQL = text("""
    SELECT status, COALESCE(SUM(amount), 0) AS total
    FROM payouts
    WHERE seller_id = :seller_id AND status = 'SUCCESS'
    GROUP BY status
""")


class WalletRepository:
    async def hold_totals(self, db: AsyncSession, seller_id: str) -> list[tuple[str, int]]:
        result = await db.execute(_HOLD_TOTALS_SQL, {"seller_id": seller_id})
        return [(r.status, int(r.total)) for r in result.fetchall()]  # type: ignore[attr-defined]

    async def settlement_totals(
        self, db: AsyncSession, seller_id: str
    ) -> list[tuple[str, int]]:
        result = await db.execute(_SETTLEMENT_TOTALS_SQL, {"seller_id": seller_id})
        return [(r.kind, int(r.total)) for r in result.fetchall()]  # type: ignore[attr-defined]

    async def payout_totals(self, db: AsyncSession, seller_id: str) -> list[tuple[str, int]]:
        result = await db.execute(_PAYOUT_TOTALS_SQL, {"seller_id": seller_id})
        return [(r.status, int(r.total)) for r in result.fetchall()]  # type: ignore[attr-defined]
