from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from sakura.time_utils import parse_iso_datetime


"""
Error taxonomy (authoritative)

- ValidationError: user-correctable input or business-rule problem (400).
- NotFoundError: referenced order/coupon/product/transaction id does not exist (404).
- ConflictError: optimistic-concurrency loss that survived retries (409, retryable).
- OperationCancelled: the caller abandoned the request; the transaction is rolled back.
- Anything else is fatal: logged with context, generic 500, nothing committed.

Expected domain rejections (invalid coupon, illegal status transition) are NOT
raised: services return result objects with success=False and a reason.
"""

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")

# Largest amount accepted from clients (matches Numeric(18, 2))
MAX_MONEY = Decimal("9999999999999999.99")


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level concurrency conflict (stale version, lost race)."""


class NotFoundError(LookupError):
    """404-level missing entity."""


class OperationCancelled(Exception):
    """Raised when the caller cancels an in-flight operation."""


def to_money(value: Any, *, field: str = "amount") -> Decimal:
    """
    Coerce a client or internal value to a 2-place Decimal (half-up).

    Floats are routed through str() so 0.1 becomes Decimal("0.10"), not the
    binary approximation.
    """
    if value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    # Range check first: quantize fails past the context precision
    if abs(amount) > MAX_MONEY:
        raise ValidationError(f"{field} is out of range")
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def parse_money(value: Any, *, field: str, allow_zero: bool = True, optional: bool = False) -> Decimal | None:
    if value is None and optional:
        return None
    amount = to_money(value, field=field)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    if not allow_zero and amount == 0:
        raise ValidationError(f"{field} must be positive")
    return amount


def _int_from_text(value: str, *, field: str) -> int:
    text = value.strip()
    # isdecimal() rejects digit-like characters such as superscripts
    if not text.lstrip("-").isdecimal():
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(text)
    except ValueError:
        # Past the interpreter's int digit limit
        raise ValidationError(f"{field} must be an integer")


def parse_positive_int(value: Any, *, field: str) -> int:
    # bool is a subclass of int; reject it explicitly
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, str):
        value = _int_from_text(value, field=field)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value <= 0:
        raise ValidationError(f"{field} must be positive")
    return value


def parse_int(value: Any, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, str):
        return _int_from_text(value, field=field)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    return value


_TRUE_WORDS = ("true", "1", "yes", "on")
_FALSE_WORDS = ("false", "0", "no", "off")


def parse_bool(value: Any, *, field: str) -> bool:
    """Accept JSON booleans and the usual true/false words; anything else is a 400."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValidationError(f"{field} must be true or false")


def parse_choice(value: Any, choices: Iterable[str], *, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    normalized = value.strip().upper()
    allowed = set(choices)
    if normalized not in allowed:
        raise ValidationError(f"Invalid {field} '{value}'. Must be one of: {', '.join(sorted(allowed))}")
    return normalized


def parse_optional_datetime(value: Any, *, field: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 string")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 string")


def require_fields(data: dict | None, *fields: str) -> dict:
    """Return data, raising ValidationError naming every missing field."""
    if not isinstance(data, dict):
        raise ValidationError("JSON body required")
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required")
    return data
