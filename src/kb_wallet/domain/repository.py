from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession


class WalletRepositoryProtocol(Protocol):
    async def hold_totals(self, db: AsyncSession, seller_id: str) -> list[tuple[str, int]]: ...

    async def settlement_totals(
        self, db: AsyncSession, seller_id: str
    ) -> list[tuple[str, int]]: ...

    async def payout_totals(self, db: AsyncSession, seller_id: str) -> list[tuple[str, int]]: ...
