# backend/valuation_engine/utils/currency.py
"""
Currency code normalization.

Some exchanges quote in minor units (London in pence as "GBp"/"GBX",
Johannesburg in cents as "ZAc", Tel Aviv in agorot as "ILA"). Rates are
only ever stored for ISO codes, so amounts in a minor unit are scaled to
the major unit before any lookup.

Usage:
    from valuation_engine.utils.currency import normalize_currency

    code, amount = normalize_currency("GBp", Decimal("1250"))  # ("GBP", Decimal("12.50"))
"""

from decimal import Decimal

# Minor-unit currency codes used by some exchanges (London quotes in pence).
# Maps alias -> (ISO code, divisor applied to the amount)
CURRENCY_ALIASES: dict[str, tuple[str, Decimal]] = {
    "GBp": ("GBP", Decimal("100")),
    "GBX": ("GBP", Decimal("100")),
    "GBx": ("GBP", Decimal("100")),
    "ZAc": ("ZAR", Decimal("100")),
    "ZAC": ("ZAR", Decimal("100")),
    "ILA": ("ILS", Decimal("100")),
    "ILa": ("ILS", Decimal("100")),
}


def normalize_currency(code: str, amount: Decimal | None = None) -> tuple[str, Decimal | None]:
    """
    Map a currency code to its ISO form, scaling the amount if needed.

    Alias codes are case-sensitive ("GBp" is pence, "GBP" is pounds), so the
    alias table is consulted before upper-casing.

    Args:
        code: Currency code as quoted by the provider or entered by the user
        amount: Optional amount in that currency

    Returns:
        Tuple of (ISO code, amount in the ISO unit or None)
    """
    code = code.strip()
    alias = CURRENCY_ALIASES.get(code)
    if alias is not None:
        iso_code, divisor = alias
        return iso_code, (amount / divisor if amount is not None else None)
    return code.upper(), amount


def normalize_code(code: str) -> str:
    """ISO code for a possibly-aliased currency code."""
    return normalize_currency(code)[0]


def minor_unit_divisor(code: str) -> Decimal:
    """How many units of `code` make one unit of its ISO currency."""
    alias = CURRENCY_ALIASES.get(code.strip())
    return alias[1] if alias is not None else Decimal("1")
