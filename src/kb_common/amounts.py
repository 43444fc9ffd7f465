"""Integer money utilities.

All amounts are int minor units (cents for KES). No float, no Decimal.
"""


def validate_amount(amount: int) -> None:
    """Amounts crossing the API boundary must be strictly positive ints."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Amount must be a positive integer of minor units, got {amount!r}")


def amount_to_display(amount: int, currency: str = "KES") -> str:
    """Convert minor units to display string: 650000 -> 'KES 6,500.00'."""
    sign = "-" if amount < 0 else ""
    minor = abs(amount)
    return f"{sign}{currency} {minor // 100:,}.{minor % 100:02d}"


def split_amount(total: int, refunded: int) -> tuple[int, int]:
    """Split a hold into (refunded, released) parts that always sum to total."""
    if not (0 < refunded < total):
        raise ValueError(f"Refund part must satisfy 0 < {refunded} < {total}")
    return refunded, total - refunded
