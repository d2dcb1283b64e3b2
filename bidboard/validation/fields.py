"""Field-level checks applied by the services before touching the ledger."""

from __future__ import annotations

import re

from ..errors import ValidationError

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: str | None) -> str:
    email = (value or "").strip().lower()
    if not _EMAIL_PATTERN.match(email):
        raise ValidationError("invalid email address")
    return email


def require_text(value: str | None, field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required")
    return text


def require_amount(value: int, field: str = "amount", *, minimum: int = 1) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be a whole number of cents")
    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    return value


MINIMUM_INCREMENT = 100


def require_increment(value: int, field: str = "minimum_increment") -> int:
    """Bid increments are whole currency units of at least one dollar."""
    require_amount(value, field, minimum=0)
    if value < MINIMUM_INCREMENT:
        raise ValidationError(f"{field} must be at least ${MINIMUM_INCREMENT / 100:,.2f}")
    return value
