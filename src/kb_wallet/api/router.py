"""GET /wallet: the calling seller's four balances."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.database import get_db_session
from src.kb_common.response import ApiResponse, success_response
from src.kb_gateway.auth.dependencies import Principal, require_seller
from src.kb_gateway.providers import get_wallet_projector
from src.kb_wallet.application.schemas import WalletResponse
from src.kb_wallet.application.service import WalletProjector

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("")
async def get_wallet(
    request: Request,
    seller: Annotated[Principal, Depends(require_seller)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    projector: Annotated[WalletProjector, Depends(get_wallet_projector)],
) -> ApiResponse:
    wallet = await projector.get_wallet(db, seller.id)
    return success_response(WalletResponse.from_domain(wallet).model_dump(), request)
