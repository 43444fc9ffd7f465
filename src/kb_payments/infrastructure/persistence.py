"""TransactionRepository: concrete implementation of TransactionRepositoryProtocol.

Status changes are single-row conditional UPDATEs; a result of 0 rows means
the row was not in an expected prior status and the caller must re-read.

Transaction ownership: the CALLER commits.
"""

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.kb_common.errors import InternalError
from src.kb_payments.domain.models import Transaction

_COLUMNS = """
    id, listing_id, seller_id, buyer_name, buyer_phone, buyer_email,
    amount, currency, payment_method, payment_reference, status,
    created_at, updated_at
"""

_INSERT_SQL = text(f"""
    INSERT INTO transactions
        (id, listing_id, seller_id, buyer_name, buyer_phone, buyer_email,
         amount, currency, payment_method, payment_reference, status)
    VALUES
        (:id, :listing_id, :seller_id, :buyer_name, :buyer_phone, :buyer_email,
         :amount, :currency, :payment_method, :payment_reference, :status)
    RETURNING {_COLUMNS}
""")

_GET_BY_ID_SQL = text(f"SELECT {_COLUMNS} FROM transactions WHERE id = :id")

_GET_BY_REFERENCE_SQL = text(
    f"SELECT {_COLUMNS} FROM transactions WHERE payment_reference = :reference"
)

_TRANSITION_SQL = text(f"""
    UPDATE transactions
    SET status = :new_status
    WHERE id = :id AND status IN :expected
    RETURNING {_COLUMNS}
""").bindparams(bindparam("expected", expanding=True))


def _row_to_transaction(row: object) -> Transaction:
    return Transaction(
        id=row.id,  # type: ignore[attr-defined]
        listing_id=row.listing_id,  # type: ignore[attr-defined]
        seller_id=row.seller_id,  # type: ignore[attr-defined]
        buyer_name=row.buyer_name,  # type: ignore[attr-defined]
        buyer_phone=row.buyer_phone,  # type: ignore[attr-defined]
        buyer_email=row.buyer_email,  # type: ignore[attr-defined]
        amount=row.amount,  # type: ignore[attr-defined]
        currency=row.currency,  # type: ignore[attr-defined]
        payment_method=row.payment_method,  # type: ignore[attr-defined]
        payment_reference=row.payment_reference,  # type: ignore[attr-defined]
        status=row.status,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
    )


class TransactionRepository:
    async def create(self, db: AsyncSession, txn: Transaction) -> Transaction:
        result = await db.execute(
            _INSERT_SQL,
            {
                "id": txn.id,
                "listing_id": txn.listing_id,
                "seller_id": txn.seller_id,
                "buyer_name": txn.buyer_name,
                "buyer_phone": txn.buyer_phone,
                "buyer_email": txn.buyer_email,
                "amount": txn.amount,
                "currency": txn.currency,
                "payment_method": txn.payment_method,
                "payment_reference": txn.payment_reference,
                "status": txn.status,
            },
        )
        row = result.fetchone()
        if row is None:
            raise InternalError("Transaction insert returned no rows")
        return _row_to_transaction(row)

    async def get_by_id(self, db: AsyncSession, transaction_id: str) -> Transaction | None:
        row = (await db.execute(_GET_BY_ID_SQL, {"id": transaction_id})).fetchone()
        return _row_to_transaction(row) if row else None

    async def get_by_reference(
        self, db: AsyncSession, payment_reference: str
    ) -> Transaction | None:
        row = (
            await db.execute(_GET_BY_REFERENCE_SQL, {"reference": payment_reference})
        ).fetchone()
        return _row_to_transaction(row) if row else None

    async def transition_status(
        self,
        db: AsyncSession,
        transaction_id: str,
        expected: tuple[str, ...],
        new_status: str,
    ) -> Transaction | None:
        result = await db.execute(
            _TRANSITION_SQL,
            {"id": transaction_id, "expected": list(expected), "new_status": new_status},
        )
        row = result.fetchone()
        return _row_to_transaction(row) if row else None
