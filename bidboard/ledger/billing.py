"""Billing utilities: processing fees and payment breakdowns in minor units."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from ..errors import ValidationError
from .models import AuctionItem


@dataclass(frozen=True)
class PaymentBreakdown:
    subtotal: int
    fee: int
    total: int
    cover_fee: bool
    items: tuple[dict[str, Any], ...]

    def as_metadata(self) -> dict[str, Any]:
        return {
            "subtotal": self.subtotal,
            "fee": self.fee,
            "total": self.total,
            "cover_fee": self.cover_fee,
            "items": [dict(item) for item in self.items],
        }


def processing_fee(subtotal: int, fee_rate: Decimal, fixed_fee: int) -> int:
    """Percentage plus fixed fee, rounded half-up to the minor unit exactly once."""
    fee = Decimal(subtotal) * fee_rate + Decimal(fixed_fee)
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def payment_breakdown(
    items: Iterable[AuctionItem],
    *,
    cover_fee: bool,
    fee_rate: Decimal,
    fixed_fee: int,
) -> PaymentBreakdown:
    lines = tuple(
        {
            "item_id": item.item_id,
            "service": item.service,
            "honor": item.honor,
            "bid": item.current_bid,
        }
        for item in items
    )
    subtotal = sum(line["bid"] for line in lines)
    fee = processing_fee(subtotal, fee_rate, fixed_fee) if cover_fee else 0
    return PaymentBreakdown(
        subtotal=subtotal,
        fee=fee,
        total=subtotal + fee,
        cover_fee=cover_fee,
        items=lines,
    )


def to_minor_units(value: Any) -> int:
    """Convert a decimal currency amount (``25``, ``"25.50"``) to whole cents."""
    if value is None or isinstance(value, bool):
        raise ValidationError("amount is required")
    value_str = str(value).strip()
    if not value_str:
        raise ValidationError("amount is required")
    try:
        amount = Decimal(value_str)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"amount {value_str!r} is not a number") from exc
    if not amount.is_finite():
        raise ValidationError("amount must be finite")
    cents = amount * 100
    if cents != cents.to_integral_value():
        raise ValidationError("amount cannot have fractional cents")
    return int(cents)
