"""Conversion between provider minor units and stored major units.

Providers report amounts in the smallest denomination (kobo, pesewas,
cents); the ledger and the public API use the major unit. Every amount
crossing that boundary goes through ``to_major_unit`` / ``to_minor_unit``.
Both functions are total: junk input converts to zero instead of raising.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext, localcontext
from typing import NewType

MinorUnits = NewType("MinorUnits", int)
MajorUnits = NewType("MajorUnits", Decimal)

# Currencies whose smallest reported unit is 1/100 of the major unit.
MINOR_UNIT_CURRENCIES = frozenset({
    "NGN",  # kobo
    "GHS",  # pesewas
    "KES",
    "ZAR",
    "EGP",  # piastres
    "MAD",  # centimes
    "XOF",
    "XAF",
    "USD",
    "EUR",
    "GBP",
})

_FACTOR = Decimal(100)
_CENT = Decimal("0.01")


def _as_decimal(amount) -> Decimal:
    if amount is None or isinstance(amount, bool):
        return Decimal(0)
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal(0)
    if not value.is_finite():
        return Decimal(0)
    return value


def _context_for(amount: Decimal):
    # enough digits that neither scaling nor quantizing can round
    context = getcontext().copy()
    digits = len(amount.as_tuple().digits) + abs(amount.adjusted())
    context.prec = max(context.prec, digits + 6)
    return localcontext(context)


def has_minor_unit(currency) -> bool:
    return isinstance(currency, str) and currency.upper() in MINOR_UNIT_CURRENCIES


def to_major_unit(amount_minor, currency) -> MajorUnits:
    amount = _as_decimal(amount_minor)
    if not has_minor_unit(currency):
        return MajorUnits(amount)
    with _context_for(amount):
        return MajorUnits((amount / _FACTOR).quantize(_CENT, rounding=ROUND_HALF_UP))


def to_minor_unit(amount_major, currency) -> MinorUnits:
    amount = _as_decimal(amount_major)
    with _context_for(amount):
        if has_minor_unit(currency):
            amount = amount * _FACTOR
        return MinorUnits(int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP)))
