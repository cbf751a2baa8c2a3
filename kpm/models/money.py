from __future__ import annotations
import math
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Any

# Arrondi comptable : tout montant est arrondi à l'unité supérieure.
# Les quantités ne sont jamais arrondies.

DEFAULT_CURRENCY = "XOF"


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, float):
        if not math.isfinite(value):
            return None
        # repr le plus court : 1.1 est lu 1.1 et non 1.100000000000000088...
        d = Decimal(repr(value))
    else:
        try:
            d = Decimal(str(value).strip().replace(" ", "").replace(",", "."))
        except (InvalidOperation, ValueError):
            return None
    if not d.is_finite():
        return None
    return d


def round_montant(amount: Any) -> int:
    d = _to_decimal(amount)
    if d is None:
        return 0
    return int(d.to_integral_value(rounding=ROUND_CEILING))


def line_total(quantity: Any, unit_price: Any) -> int:
    q = _to_decimal(quantity)
    p = _to_decimal(unit_price)
    if q is None or p is None:
        return 0
    return round_montant(q * p)


def format_montant(amount: Any, currency: str | None = DEFAULT_CURRENCY) -> str:
    """12345.01 -> '12 346 XOF'"""
    rounded = round_montant(amount)
    formatted = f"{rounded:,}".replace(",", " ")
    return f"{formatted} {currency}" if currency else formatted
