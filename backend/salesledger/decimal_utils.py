# Overview: Exact decimal arithmetic, rounding and validation for money and quantity values.

"""
SalesLedger Decimal Invariants (authoritative)

- Every money and quantity calculation goes through decimal.Decimal with the
  module CONTEXT (28 significant digits, ROUND_HALF_UP). Binary floats are
  never used for arithmetic; a float input is converted through its repr.
- Money carries at most MONEY_PLACES decimal places; rounding is half-up.
- Sale line amounts (quantity * unit_price) are exact and never rounded;
  one that does not fit in MONEY_PLACES is rejected.
- Quantities for piece-like units are whole numbers.
- to_number() is lossy and exists only for system boundaries.
"""

from __future__ import annotations

import decimal
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union

from .errors import InvalidDecimalError

PRECISION = 28
MONEY_PLACES = 2
QUANTITY_PLACES = 3

DEFAULT_PIECE_UNITS = frozenset({
    "PIECE", "BAG", "BOX", "CARTON", "PACK", "ROLL", "SHEET", "BUNDLE", "PALLET",
})

CONTEXT = decimal.Context(
    prec=PRECISION,
    rounding=ROUND_HALF_UP,
    traps=[decimal.InvalidOperation, decimal.DivisionByZero, decimal.Overflow],
)

ZERO = Decimal("0")

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number, field: str = "value") -> Decimal:
    """
    Parse a value into an exact Decimal.

    Accepts Decimal, int, str and float. Booleans, None, NaN, infinities and
    unparseable strings raise InvalidDecimalError.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidDecimalError(f"{field} must be a number", details={"field": field, "value": repr(value)})

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # repr gives the shortest round-tripping text, so 0.1 -> Decimal("0.1")
        result = Decimal(repr(value)) if value == value else Decimal("NaN")
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidDecimalError(f"{field} must not be empty", details={"field": field})
        try:
            result = Decimal(text)
        except decimal.InvalidOperation:
            raise InvalidDecimalError(
                f"{field} is not a valid decimal: {value!r}",
                details={"field": field, "value": value},
            ) from None
    else:
        raise InvalidDecimalError(
            f"{field} must be a number, got {type(value).__name__}",
            details={"field": field},
        )

    if not result.is_finite():
        raise InvalidDecimalError(f"{field} must be a finite number", details={"field": field, "value": str(value)})
    return result


def add(a: Number, b: Number) -> Decimal:
    return CONTEXT.add(to_decimal(a), to_decimal(b))


def subtract(a: Number, b: Number) -> Decimal:
    return CONTEXT.subtract(to_decimal(a), to_decimal(b))


def multiply(a: Number, b: Number) -> Decimal:
    return CONTEXT.multiply(to_decimal(a), to_decimal(b))


def divide(a: Number, b: Number) -> Decimal:
    divisor = to_decimal(b)
    if divisor.is_zero():
        raise InvalidDecimalError("Division by zero", details={"dividend": str(a)})
    return CONTEXT.divide(to_decimal(a), divisor)


def absolute(value: Number) -> Decimal:
    return CONTEXT.abs(to_decimal(value))


def maximum(a: Number, b: Number) -> Decimal:
    return CONTEXT.max(to_decimal(a), to_decimal(b))


def minimum(a: Number, b: Number) -> Decimal:
    return CONTEXT.min(to_decimal(a), to_decimal(b))


def lt(a: Number, b: Number) -> bool:
    return to_decimal(a) < to_decimal(b)


def lte(a: Number, b: Number) -> bool:
    return to_decimal(a) <= to_decimal(b)


def gt(a: Number, b: Number) -> bool:
    return to_decimal(a) > to_decimal(b)


def gte(a: Number, b: Number) -> bool:
    return to_decimal(a) >= to_decimal(b)


def eq(a: Number, b: Number) -> bool:
    return to_decimal(a) == to_decimal(b)


def is_zero(value: Number) -> bool:
    return to_decimal(value).is_zero()


def is_negative(value: Number) -> bool:
    d = to_decimal(value)
    return d < 0


def round_to(value: Number, places: int = MONEY_PLACES) -> Decimal:
    """Round half-up to `places` decimal places."""
    exponent = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP, context=CONTEXT)


def round_money(value: Number, places: int = MONEY_PLACES) -> Decimal:
    return round_to(value, places)


def decimal_places(value: Number) -> int:
    """Significant decimal places; trailing zeros do not count (1.500 -> 1)."""
    exponent = to_decimal(value).normalize(CONTEXT).as_tuple().exponent
    return -exponent if exponent < 0 else 0


def to_display(value: Number, places: int = MONEY_PLACES) -> str:
    """Fixed-point string, e.g. Decimal('70') -> '70.00'."""
    return f"{round_to(value, places):f}"


def format_quantity(value: Number) -> str:
    """Plain string without exponent or superfluous zeros: 10.000 -> '10', 2.50 -> '2.5'."""
    d = to_decimal(value)
    if d == d.to_integral_value():
        return f"{d.quantize(Decimal(1)):f}"
    return f"{d.normalize(CONTEXT):f}"


def to_number(value: Number) -> float:
    """Lossy conversion; only for the outermost boundary."""
    return float(to_decimal(value))


def ensure_non_negative(value: Number, field: str = "Value") -> Decimal:
    d = to_decimal(value, field)
    if d < 0:
        raise InvalidDecimalError(f"{field} cannot be negative: {d}", details={"field": field, "value": str(d)})
    return d


def ensure_positive(value: Number, field: str = "Value") -> Decimal:
    d = to_decimal(value, field)
    if d <= 0:
        raise InvalidDecimalError(f"{field} must be greater than 0: {d}", details={"field": field, "value": str(d)})
    return d


def validate_money(value: Number, field: str = "amount", places: int = MONEY_PLACES) -> Decimal:
    """Parse a non-negative money amount with at most `places` decimals."""
    d = ensure_non_negative(value, field)
    if decimal_places(d) > places:
        raise InvalidDecimalError(
            f"{field} cannot have more than {places} decimal places: {d}",
            details={"field": field, "value": str(d), "max_places": places},
        )
    return d


def is_piece_unit(unit: str, piece_units: Iterable[str] | None = None) -> bool:
    units = DEFAULT_PIECE_UNITS if piece_units is None else piece_units
    return (unit or "").upper() in units


def validate_quantity(
    value: Number,
    unit: str,
    field: str = "quantity",
    piece_units: Iterable[str] | None = None,
) -> Decimal:
    """Quantities are positive; piece-like units only accept whole numbers."""
    d = ensure_positive(value, field)
    if is_piece_unit(unit, piece_units) and d != d.to_integral_value():
        raise InvalidDecimalError(
            f"{field} must be a whole number for unit {unit}: {d}",
            details={"field": field, "value": str(d), "unit": unit},
        )
    if decimal_places(d) > QUANTITY_PLACES:
        raise InvalidDecimalError(
            f"{field} cannot have more than {QUANTITY_PLACES} decimal places: {d}",
            details={"field": field, "value": str(d)},
        )
    return d


def line_subtotal(quantity: Number, unit_price: Number, discount: Number = 0) -> Decimal:
    """quantity * unit_price - discount, exact."""
    return subtract(multiply(quantity, unit_price), discount)


def ensure_money_scale(value: Number, field: str = "amount", places: int = MONEY_PLACES) -> Decimal:
    """Exact value that must already fit in `places` decimals; never rounded."""
    d = to_decimal(value, field)
    if decimal_places(d) > places:
        raise InvalidDecimalError(
            f"{field} is not a whole amount of cents: {d.normalize(CONTEXT):f}",
            details={"field": field, "value": f"{d.normalize(CONTEXT):f}", "max_places": places},
        )
    return d


def transaction_totals(subtotal: Number, discount: Number = 0, charges: Iterable[Number] = ()) -> dict:
    """
    total = subtotal - discount + sum(charges), exact.

    `net` (subtotal - discount) is reported separately; callers reject it
    when negative.
    """
    net = subtract(subtotal, discount)
    total = net
    for charge in charges:
        total = add(total, charge)
    return {
        "subtotal": to_decimal(subtotal),
        "discount": to_decimal(discount),
        "net": net,
        "total": total,
    }
