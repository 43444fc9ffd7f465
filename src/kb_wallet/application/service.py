from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_wallet.domain.projector import WalletBalance, project_wallet
from src.kb_wallet.domain.repository import WalletRepositoryProtocol


class WalletProjector:
    """Read path for a seller's balances. Never writes."""

    def __init__(self, repo: WalletRepositoryProtocol, currency: str = "KES") -> None:
        self._repo = repo
        self._currency = currency

    async def get_wallet(self, db: AsyncSession, seller_id: str) -> WalletBalance:
        return project_wallet(
            seller_id,
            await self._repo.hold_totals(db, seller_id),
            await self._repo.settlement_totals(db, seller_id),
            await self._repo.payout_totals(db, seller_id),
            currency=self._currency,
        )
