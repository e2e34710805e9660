"""Ruble <-> kopeck conversion.

Balances and ledger amounts are stored as integer kopecks; decimals only exist
at the HTTP/gateway boundary.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

KOPECKS_PER_RUBLE = 100


def to_kopecks(value) -> int:
    """Convert a ruble amount (str/int/float/Decimal) to integer kopecks."""

    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid money amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid money amount: {value!r}")
    return int((amount * KOPECKS_PER_RUBLE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_rubles(kopecks: int) -> Decimal:
    return (Decimal(kopecks) / KOPECKS_PER_RUBLE).quantize(Decimal("0.01"))


def format_rubles(kopecks: int) -> str:
    """Whole-ruble label used in user-facing texts, e.g. `500₽`."""

    rubles = (Decimal(kopecks) / KOPECKS_PER_RUBLE).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"{rubles}₽"
