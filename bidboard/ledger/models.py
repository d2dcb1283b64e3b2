"""Ledger entities shared by the storage backends and services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class AuctionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationType(str, Enum):
    OUTBID = "outbid"
    WINNER = "winner"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class Auction:
    auction_id: str
    holiday_name: str
    start_time: datetime
    end_time: datetime
    status: AuctionStatus
    services: tuple[str, ...]
    created_at: datetime
    ended_at: datetime | None = None

    def accepts_bids(self, now: datetime) -> bool:
        return self.status is AuctionStatus.ACTIVE and self.start_time <= now < self.end_time

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Auction":
        return cls(
            auction_id=data["auction_id"],
            holiday_name=data["holiday_name"],
            start_time=_parse_dt(data["start_time"]),
            end_time=_parse_dt(data["end_time"]),
            status=AuctionStatus(data["status"]),
            services=tuple(data.get("services") or ()),
            created_at=_parse_dt(data["created_at"]),
            ended_at=_parse_dt(data.get("ended_at")),
        )


@dataclass
class AuctionItem:
    item_id: str
    auction_id: str
    title: str
    service: str
    honor: str
    starting_bid: int
    minimum_increment: int
    current_bid: int
    display_order: int = 0
    description: str | None = None
    current_bidder_id: str | None = None
    is_paid: bool = False

    @property
    def minimum_next_bid(self) -> int:
        return self.current_bid + self.minimum_increment

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuctionItem":
        return cls(
            item_id=data["item_id"],
            auction_id=data["auction_id"],
            title=data["title"],
            service=data["service"],
            honor=data["honor"],
            starting_bid=int(data["starting_bid"]),
            minimum_increment=int(data["minimum_increment"]),
            current_bid=int(data["current_bid"]),
            display_order=int(data.get("display_order", 0)),
            description=data.get("description"),
            current_bidder_id=data.get("current_bidder_id"),
            is_paid=bool(data.get("is_paid", False)),
        )


@dataclass
class Bidder:
    bidder_id: str
    full_name: str
    email: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bidder":
        return cls(bidder_id=data["bidder_id"], full_name=data["full_name"], email=data["email"])


@dataclass
class BidHistoryEntry:
    entry_id: str
    item_id: str
    amount: int
    bidder_name: str
    bidder_email: str
    created_at: datetime
    is_winning_bid: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BidHistoryEntry":
        return cls(
            entry_id=data["entry_id"],
            item_id=data["item_id"],
            amount=int(data["amount"]),
            bidder_name=data["bidder_name"],
            bidder_email=data["bidder_email"],
            created_at=_parse_dt(data["created_at"]),
            is_winning_bid=bool(data.get("is_winning_bid", False)),
        )


@dataclass
class PaymentRecord:
    payment_reference: str
    item_ids: tuple[str, ...]
    payer_email: str
    amount: int
    currency: str
    status: PaymentStatus
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    failure_reason: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentRecord":
        return cls(
            payment_reference=data["payment_reference"],
            item_ids=tuple(data.get("item_ids") or ()),
            payer_email=data["payer_email"],
            amount=int(data["amount"]),
            currency=data.get("currency", "usd"),
            status=PaymentStatus(data["status"]),
            metadata=dict(data.get("metadata") or {}),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            failure_reason=data.get("failure_reason"),
        )


@dataclass
class NotificationLogEntry:
    recipient: str
    notification_type: NotificationType
    scope_key: str
    status: NotificationStatus
    created_at: datetime
    sent_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationLogEntry":
        return cls(
            recipient=data["recipient"],
            notification_type=NotificationType(data["notification_type"]),
            scope_key=data["scope_key"],
            status=NotificationStatus(data["status"]),
            created_at=_parse_dt(data["created_at"]),
            sent_at=_parse_dt(data.get("sent_at")),
            error=data.get("error"),
        )


@dataclass
class ItemHolding:
    """An item paired with its current bidder, if any."""

    item: AuctionItem
    bidder: Bidder | None = None


@dataclass
class BidOutcome:
    item: AuctionItem
    bidder: Bidder
    entry: BidHistoryEntry
    previous_bidder_email: str | None = None


@dataclass
class NewItem:
    """Item definition supplied when an auction is started or an item is added."""

    title: str
    service: str
    honor: str
    starting_bid: int
    minimum_increment: int = 100
    display_order: int = 0
    description: str | None = None


@dataclass
class ItemChanges:
    """Operator edits to an existing item. ``None`` leaves a field unchanged and
    an empty ``description`` clears it."""

    title: str | None = None
    service: str | None = None
    honor: str | None = None
    description: str | None = None
    starting_bid: int | None = None
    minimum_increment: int | None = None
    display_order: int | None = None

    def provided(self) -> dict[str, Any]:
        return {name: value for name, value in vars(self).items() if value is not None}
