"""Decimal <-> integer cents conversion.

The ledger engine does all arithmetic on integer cents so that sums are
exact and order-independent. Decimals only appear at the model boundary.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from ..exceptions import ValidationError

CENT = Decimal("0.01")

# Amounts at or above this are rejected; keeps cent quantization within
# the default 28-digit decimal context
MAX_AMOUNT = Decimal("1e15")


def parse_amount(value: Decimal | int | str, field: str = "amount") -> Decimal:
    """
    Parse a monetary value with at most 2 decimal places.

    Floats are converted through ``str`` so ``0.1`` stays ``0.10``.

    Raises:
        ValidationError: If the value is not a finite number, is out of
            range or carries sub-cent precision
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be a number, got {value!r}") from e

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number, got {value!r}")

    if abs(amount) >= MAX_AMOUNT:
        raise ValidationError(f"{field} is out of range, got {value!r}")

    try:
        quantized = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValidationError(f"{field} is out of range, got {value!r}") from e

    if amount != quantized:
        raise ValidationError(
            f"{field} must have at most 2 decimal places, got {amount}"
        )

    return quantized


def to_cents(amount: Decimal) -> int:
    """
    Convert Decimal dollars to integer cents.
    Uses ROUND_HALF_UP for consistency.
    """
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a 2-place Decimal."""
    return Decimal(cents).scaleb(-2).quantize(CENT)
