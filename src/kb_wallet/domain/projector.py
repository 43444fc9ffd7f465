"""Wallet projection: pure function, no I/O.

    pending   = Σ held + disputed holds
    available = Σ RELEASE settlements − Σ SUCCESS payouts
    refunded  = Σ REFUND settlements
    paid      = Σ SUCCESS payouts

Inputs are ``(status_or_kind, amount)`` pairs; they may be individual rows or
already grouped sums.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from src.kb_common.enums import HoldStatus, PayoutRecordStatus, SettlementKind

_PENDING_STATES = frozenset({HoldStatus.HELD, HoldStatus.DISPUTED})


@dataclass(frozen=True)
class WalletBalance:
    seller_id: str
    pending: int
    available: int
    refunded: int
    paid: int
    currency: str = "KES"


def project_wallet(
    seller_id: str,
    holds: Iterable[tuple[str, int]],
    settlements: Iterable[tuple[str, int]],
    payouts: Iterable[tuple[str, int]],
    currency: str = "KES",
) -> WalletBalance:
    pending = sum(amount for status, amount in holds if status in _PENDING_STATES)

    released = refunded = 0
    for kind, amount in settlements:
        if kind == SettlementKind.RELEASE:
            released += amount
        elif kind == SettlementKind.REFUND:
            refunded += amount

    paid = sum(amount for status, amount in payouts if status == PayoutRecordStatus.SUCCESS)

    return WalletBalance(
        seller_id=seller_id,
        pending=pending,
        available=released - paid,
        refunded=refunded,
        paid=paid,
        currency=currency,
    )
