"""Input validation for upstream market data.

Upstream price and balance fields arrive as numbers, numeric strings, or
garbage. These helpers normalize the good ones and raise ``ValidationError``
for the rest, so parsing code can turn a bad field into a per-key miss.
"""

from typing import Any, Optional


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


def _to_float(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be numeric, got bool")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise ValidationError(f"{label} must be numeric, got {value!r}") from None
    else:
        raise ValidationError(f"{label} must be numeric, got {type(value).__name__}")
    if number != number or number in (float("inf"), float("-inf")):
        raise ValidationError(f"{label} must be finite, got {number}")
    return number


def validate_price(price: Any, label: str = "price") -> float:
    """Validate and normalize a 0..1 outcome price.

    Raises:
        ValidationError: If price is not numeric or outside [0, 1]
    """
    price = _to_float(price, label)

    if not 0 <= price <= 1:
        raise ValidationError(f"{label} must be between 0 and 1, got {price}")

    return price


def validate_amount(amount: Any, label: str = "amount") -> float:
    """Validate a USD amount such as a wallet balance."""
    return _to_float(amount, label)


def optional_float(value: Any) -> Optional[float]:
    """Lenient numeric coercion for optional record fields."""
    if value is None or value == "":
        return None
    try:
        return _to_float(value, "value")
    except ValidationError:
        return None

