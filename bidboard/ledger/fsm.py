"""Auction and payment finite state machines."""

from __future__ import annotations

from enum import Enum

from .models import AuctionStatus, PaymentStatus


class AuctionEvent(str, Enum):
    ENDED = "ended"


class PaymentEvent(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_AUCTION_TRANSITIONS = {
    (AuctionStatus.ACTIVE, AuctionEvent.ENDED): AuctionStatus.ENDED,
}

_PAYMENT_TRANSITIONS = {
    (PaymentStatus.PENDING, PaymentEvent.SUCCEEDED): PaymentStatus.SUCCEEDED,
    (PaymentStatus.PENDING, PaymentEvent.FAILED): PaymentStatus.FAILED,
}


def auction_transition(current: AuctionStatus, event: AuctionEvent) -> AuctionStatus:
    try:
        return _AUCTION_TRANSITIONS[(current, event)]
    except KeyError as exc:
        raise ValueError(f"invalid transition from {current} via {event}") from exc


def payment_transition(current: PaymentStatus, event: PaymentEvent) -> PaymentStatus:
    try:
        return _PAYMENT_TRANSITIONS[(current, event)]
    except KeyError as exc:
        raise ValueError(f"invalid transition from {current} via {event}") from exc


def is_terminal(status: PaymentStatus) -> bool:
    return status in (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED)
