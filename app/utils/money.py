from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

CENT = Decimal("0.01")

# Currencies the gateway bills in whole units (no minor unit)
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def from_minor_units(amount: Any, currency: Optional[str]) -> Optional[Decimal]:
    """Convert a gateway amount (999) into currency units (Decimal('9.99'))."""
    minor = to_decimal(amount)
    if minor is None:
        return None
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return quantize_money(minor)
    return quantize_money(minor / 100)
