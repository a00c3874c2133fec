"""
money.py — Fixed-Point Arithmetic over Asset-Scaled Integers

Amounts travel through the Open Payments protocol as decimal digit strings that
are implicitly divided by 10^assetScale. All computations here work on Python
integers; floats never touch a monetary value.

Rounding rule: every conversion or percentage truncates toward zero.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import InvalidAmountError, NegativeOrZeroTotalError

_DIGITS = re.compile(r"[0-9]+")


class ScaledAmount(BaseModel):
    """
    Amount in the smallest unit of an asset.

    Attributes:
        value (str): Non-negative integer as decimal digits (no sign, no point).
        assetCode (str): Asset identifier, e.g. 'MXN'.
        assetScale (int): Number of implied fractional digits.
    """
    model_config = ConfigDict(frozen=True)

    value: str
    assetCode: str
    assetScale: int = Field(..., ge=0)

    @field_validator("value")
    @classmethod
    def value_is_digits(cls, v: str) -> str:
        if not _DIGITS.fullmatch(v):
            raise ValueError("value must contain only digits")
        return v

    def plus(self, other: "ScaledAmount") -> "ScaledAmount":
        if (self.assetCode, self.assetScale) != (other.assetCode, other.assetScale):
            raise InvalidAmountError(
                "Amounts with different assets cannot be combined",
                details={"left": self.model_dump(), "right": other.model_dump()},
            )
        return ScaledAmount(value=add(self.value, other.value), assetCode=self.assetCode, assetScale=self.assetScale)


def _parse_decimal(amount) -> tuple:
    text = str(amount).strip()
    if not text:
        raise InvalidAmountError("Invalid amount", details={"amount": amount})
    parts = text.split(".")
    if len(parts) > 2:
        raise InvalidAmountError("Invalid amount", details={"amount": amount})
    int_part = parts[0]
    frac_part = parts[1] if len(parts) == 2 else ""
    return int_part, frac_part


def _to_int(value: str) -> int:
    if not _DIGITS.fullmatch(str(value)):
        raise InvalidAmountError("Invalid scaled amount", details={"value": value})
    return int(value)


def to_scaled(amount, scale: int) -> str:
    """
    Converts a human decimal string into the scaled integer value.

    The fraction is right-padded with zeros or truncated to `scale` digits,
    e.g. to_scaled("12.345", 2) == "1234".

    Raises:
        InvalidAmountError: If the input is not an unsigned decimal number.
    """
    if scale < 0:
        raise InvalidAmountError("Asset scale must not be negative", details={"scale": scale})
    int_part, frac_part = _parse_decimal(amount)
    frac = (frac_part + "0" * scale)[:scale]
    digits = (int_part.lstrip("0") or "0") + frac
    if not _DIGITS.fullmatch(digits):
        raise InvalidAmountError("Invalid amount", details={"amount": amount})
    return str(int(digits))


def add(a: str, b: str) -> str:
    """Sum of two scaled values of the same scale."""
    return str(_to_int(a or "0") + _to_int(b or "0"))


def multiply_by_quantity(unit_price, quantity: int, scale: int) -> str:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise InvalidAmountError("Invalid quantity", details={"quantity": quantity})
    return str(int(to_scaled(unit_price, scale)) * quantity)


def percent_of(amount_value: str, percent) -> str:
    """
    Percentage of a scaled value, truncated.

    `percent` is a plain percentage ("16" is 16%, "8.5" is 8.5%), so
    percent_of("10000", "16") == "1600".
    """
    int_part, frac_part = _parse_decimal(percent)
    numerator = (int_part or "0") + frac_part
    if not _DIGITS.fullmatch(numerator):
        raise InvalidAmountError("Invalid percentage", details={"percent": percent})
    denominator = 10 ** (len(frac_part) + 2)
    return str(_to_int(amount_value) * int(numerator) // denominator)


def rate_to_percent(rate) -> str:
    """
    Turns a tax rate given as a fraction into a plain percentage by moving the
    decimal point two places: "0.16" -> "16", "0.085" -> "8.5", "1" -> "100".

    Raises:
        InvalidAmountError: If the rate is not an unsigned decimal number.
    """
    int_part, frac_part = _parse_decimal(rate)
    if not _DIGITS.fullmatch((int_part or "0") + frac_part):
        raise InvalidAmountError("Invalid tax rate", details={"rate": rate})
    shifted = frac_part.ljust(2, "0")
    whole = str(int((int_part or "0") + shifted[:2]))
    rest = shifted[2:].rstrip("0")
    return f"{whole}.{rest}" if rest else whole


def require_positive_total(total_value: str) -> str:
    if _to_int(total_value) <= 0:
        raise NegativeOrZeroTotalError("Order total must be greater than zero", details={"total": total_value})
    return total_value


def format_scaled(value: str, scale: int) -> str:
    """Renders a scaled value back as a decimal string ("7076", 2 -> "70.76")."""
    digits = str(_to_int(value)).rjust(scale + 1, "0")
    if scale == 0:
        return digits
    return f"{digits[:-scale]}.{digits[-scale:]}"
