from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from src.kb_common.amounts import amount_to_display
from src.kb_payments.domain.models import ChargeSession, Transaction


class RecordPaymentRequest(BaseModel):
    listing_id: str = Field(min_length=1, max_length=64)
    seller_id: str = Field(min_length=1, max_length=64)
    amount: int = Field(gt=0, description="Minor units")
    currency: str = Field("KES", min_length=3, max_length=3)
    payment_method: Literal["mpesa", "card", "bank"] = "mpesa"
    buyer_email: str = Field(min_length=3, max_length=255)
    buyer_name: str | None = Field(None, max_length=100)
    buyer_phone: str | None = Field(None, max_length=20)


class TransactionResponse(BaseModel):
    id: str
    listing_id: str
    seller_id: str
    amount: int
    amount_display: str
    currency: str
    payment_method: str
    payment_reference: str
    status: str
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, txn: Transaction) -> "TransactionResponse":
        return cls(
            id=txn.id,
            listing_id=txn.listing_id,
            seller_id=txn.seller_id,
            amount=txn.amount,
            amount_display=amount_to_display(txn.amount, txn.currency),
            currency=txn.currency,
            payment_method=txn.payment_method,
            payment_reference=txn.payment_reference,
            status=txn.status,
            created_at=txn.created_at,
        )


class RecordPaymentResponse(BaseModel):
    transaction: TransactionResponse
    authorization_url: str | None
    access_code: str | None = None

    @classmethod
    def build(cls, txn: Transaction, session: ChargeSession) -> "RecordPaymentResponse":
        return cls(
            transaction=TransactionResponse.from_domain(txn),
            authorization_url=session.authorization_url,
            access_code=session.access_code,
        )
