"""Fixed-point money helpers (two decimals, half-up)."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
# Balances and amounts live in signed 64-bit integer columns.
MAX_CENTS = 2**63 - 1


def to_decimal(value) -> Decimal:
    """Convert API input to a Decimal rounded to currency precision."""

    if isinstance(value, bool):
        raise ValueError(f"invalid amount {value!r}")
    if isinstance(value, float):
        # Go through repr so 0.1 stays 0.1 rather than its binary expansion.
        value = repr(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise ValueError(f"invalid amount {value!r}")
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"invalid amount {value!r}") from exc


def to_cents(value) -> int:
    """Integer cents, bounded to what a BIGINT column can hold."""

    cents = int(to_decimal(value) * 100)
    if abs(cents) > MAX_CENTS:
        raise ValueError(f"amount {value!r} is out of range")
    return cents


def in_range(cents: int) -> bool:
    return -MAX_CENTS <= cents <= MAX_CENTS


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)
