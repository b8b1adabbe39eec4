"""
Monetary helpers.

The core keeps every amount in integer minor units (cents). The wire carries
decimal numbers with at most two fractional digits; conversion happens only at
the JSON boundary so additive merges never see floating point drift.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation

CENT = Decimal("0.01")

# $9,999,999.99
MAX_AMOUNT_CENTS = 999_999_999


class MoneyFormatError(ValueError):
    """Raised when a wire amount is not a decimal with two fractional digits."""


def to_cents(value) -> int:
    """Convert a wire amount (int, float, str, Decimal) to integer cents."""
    if value is None or isinstance(value, bool):
        raise MoneyFormatError("amount must be a number")
    if isinstance(value, int):
        return value * 100
    try:
        # str() first: Decimal(0.1) would carry the binary expansion
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise MoneyFormatError(f"invalid amount: {value!r}")
    if not amount.is_finite():
        raise MoneyFormatError(f"invalid amount: {value!r}")
    if amount != amount.quantize(CENT):
        raise MoneyFormatError(f"amount has more than two fractional digits: {value!r}")
    return int(amount.quantize(CENT) * 100)


def from_cents(cents: int | None) -> float | None:
    """Integer cents to the wire representation."""
    if cents is None:
        return None
    return float(Decimal(int(cents)) / 100)


def apply_delta(server_cents: int, client_cents: int, base_cents: int) -> int:
    """Server value plus the client's change relative to the common ancestor."""
    return server_cents + (client_cents - base_cents)
