"""
Module: apparel_kernel.db.types
Responsibility: Annotated column aliases and the sanctioned rounding
    functions for money and quantities.
Architecture position: Kernel > DB.  Imported by models/, domain/, services/
    and the engines.  MUST NOT import from any of those layers.

Invariants enforced:
    - round_money() is the ONLY sanctioned rounding for journal amounts
      (ROUND_HALF_UP to MONEY_DECIMAL_PLACES).
    - round_unit_cost() fixes unit costs at the storage precision so that the
      snapshot written to a ledger entry is exactly what is read back.
    - No floats: every helper rejects float input.
"""

from decimal import ROUND_HALF_UP, Decimal

MONEY_DECIMAL_PLACES = 2
STORAGE_DECIMAL_PLACES = 9

_MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_DECIMAL_PLACES)
_STORAGE_QUANTUM = Decimal(1).scaleb(-STORAGE_DECIMAL_PLACES)


def to_decimal(value: Decimal | int | str) -> Decimal:
    """
    Coerce an int, str or Decimal to Decimal.

    Raises:
        TypeError: if ``value`` is a float.
    """
    if isinstance(value, float):
        raise TypeError("Float values are not accepted for money or quantities")
    if isinstance(value, Decimal):
        return value
    return Decimal(value)


def round_money(value: Decimal, places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """Round a monetary amount with ROUND_HALF_UP."""
    quantum = _MONEY_QUANTUM if places == MONEY_DECIMAL_PLACES else Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def round_unit_cost(value: Decimal) -> Decimal:
    """Round a unit cost or quantity to storage precision."""
    return to_decimal(value).quantize(_STORAGE_QUANTUM, rounding=ROUND_HALF_UP)


def round_quantity(value: Decimal) -> Decimal:
    """Round a quantity to storage precision."""
    return round_unit_cost(value)
