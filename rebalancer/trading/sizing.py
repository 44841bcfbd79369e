from __future__ import annotations

from decimal import Decimal
from fractions import Fraction

from .errors import InvalidAmount
from .types import Asset, TradeDirection


def max_source_units(
    *,
    direction: TradeDirection,
    max_notional: Decimal,
    price: Decimal,
    source: Asset,
) -> int:
    """Convert a quote-denominated cap into base units of the asset being sold.

    Exact rational arithmetic with a single floor at the end, so the cap can never be
    exceeded through rounding. The price is used as observed, never pre-truncated.
    """
    if max_notional <= 0:
        return 0

    scaled_cap = Fraction(max_notional) * (10**source.decimals)
    if direction == "quote_to_base":
        return int(scaled_cap // 1)

    if price <= 0:
        raise InvalidAmount(f"Cannot convert trade cap with non-positive price {price}")
    return int(scaled_cap // Fraction(price))


def size_trade(
    *,
    direction: TradeDirection,
    balance: int,
    max_notional: Decimal,
    price: Decimal,
    source: Asset,
) -> int:
    allowed = max_source_units(
        direction=direction,
        max_notional=max_notional,
        price=price,
        source=source,
    )
    amount = min(int(balance), allowed)
    if amount <= 0:
        raise InvalidAmount(
            f"Sized amount for {direction} is {amount}",
            details={"balance": int(balance), "max_allowed": allowed},
        )
    return amount
