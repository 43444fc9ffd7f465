from pydantic import BaseModel

from src.kb_common.amounts import amount_to_display
from src.kb_wallet.domain.projector import WalletBalance


class WalletResponse(BaseModel):
    seller_id: str
    currency: str
    pending: int
    available: int
    refunded: int
    paid: int
    pending_display: str
    available_display: str

    @classmethod
    def from_domain(cls, wallet: WalletBalance) -> "WalletResponse":
        return cls(
            seller_id=wallet.seller_id,
            currency=wallet.currency,
            pending=wallet.pending,
            available=wallet.available,
            refunded=wallet.refunded,
            paid=wallet.paid,
            pending_display=amount_to_display(wallet.pending, wallet.currency),
            available_display=amount_to_display(wallet.available, wallet.currency),
        )
