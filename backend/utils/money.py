"""
Money helpers: Decimal at the edges, integer minor units in storage.
"""
from decimal import Decimal, InvalidOperation

from domain.constants import MAX_AMOUNT_MINOR, MINOR_UNIT_DIGITS
from domain.errors import ValidationError

_QUANTUM = Decimal(1).scaleb(-MINOR_UNIT_DIGITS)  # Decimal("0.01")
_FACTOR = 10 ** MINOR_UNIT_DIGITS
_MAX_AMOUNT = Decimal(MAX_AMOUNT_MINOR).scaleb(-MINOR_UNIT_DIGITS)


def parse_decimal(value, field: str = "amount") -> Decimal:
    """Coerce int/str/Decimal (or float via str) into an exact, finite Decimal."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"not a number: {value!r}", field=field)
    if not amount.is_finite():
        raise ValidationError("must be a finite number", field=field)
    return amount


def to_decimal(value, field: str = "amount") -> Decimal:
    """
    Coerce into a 2-place Decimal that fits the minor-unit column.

    Raises ValidationError rather than rounding when the value carries
    more precision than the currency has.
    """
    amount = parse_decimal(value, field)
    if abs(amount) > _MAX_AMOUNT:
        raise ValidationError(f"must not exceed {_MAX_AMOUNT}", field=field)
    quantized = amount.quantize(_QUANTUM)
    if quantized != amount:
        raise ValidationError(
            f"at most {MINOR_UNIT_DIGITS} decimal places allowed", field=field
        )
    return quantized


def to_minor(value, field: str = "amount") -> int:
    return int(to_decimal(value, field) * _FACTOR)


def from_minor(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / _FACTOR).quantize(_QUANTUM)
