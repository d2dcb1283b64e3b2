"""Storage backend factory."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..config import ServerConfig
from ..ledger.models import (
    Auction,
    AuctionItem,
    BidHistoryEntry,
    BidOutcome,
    ItemChanges,
    ItemHolding,
    NotificationLogEntry,
    NotificationStatus,
    NotificationType,
    PaymentRecord,
    PaymentStatus,
)
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage
from .redis import RedisStorage


class LedgerStorage(Protocol):
    async def apply_bid(
        self,
        item_id: str,
        *,
        bidder_name: str,
        bidder_email: str,
        amount: int,
        now: datetime,
    ) -> BidOutcome: ...

    async def start_auction(
        self, auction: Auction, items: list[AuctionItem]
    ) -> Auction | None: ...

    async def end_auction(self, auction_id: str, now: datetime) -> tuple[Auction, bool]: ...

    async def get_auction(self, auction_id: str) -> Auction: ...

    async def get_active_auction(self) -> Auction | None: ...

    async def list_auctions(self) -> list[Auction]: ...

    async def get_item(self, item_id: str) -> AuctionItem: ...

    async def list_items(self, auction_id: str) -> list[AuctionItem]: ...

    async def add_item(self, item: AuctionItem) -> AuctionItem: ...

    async def update_item(self, item_id: str, changes: ItemChanges) -> AuctionItem: ...

    async def delete_item(self, item_id: str) -> None: ...

    async def get_holdings(self, item_ids: list[str]) -> list[ItemHolding]: ...

    async def list_holdings(
        self,
        *,
        auction_id: str | None = None,
        email: str | None = None,
        unpaid_only: bool = False,
    ) -> list[ItemHolding]: ...

    async def bid_history(
        self, item_id: str, *, include_winning: bool = False, limit: int | None = None
    ) -> list[BidHistoryEntry]: ...

    async def override_bid(
        self,
        item_id: str,
        *,
        amount: int,
        bidder_name: str | None,
        bidder_email: str | None,
        now: datetime,
    ) -> AuctionItem: ...

    async def set_paid(self, item_id: str, is_paid: bool) -> AuctionItem: ...

    async def create_payment(self, record: PaymentRecord) -> PaymentRecord: ...

    async def get_payment(self, payment_reference: str) -> PaymentRecord: ...

    async def list_payments(self, status: PaymentStatus | None = None) -> list[PaymentRecord]: ...

    async def settle_payment(
        self,
        payment_reference: str,
        outcome: PaymentStatus,
        failure_reason: str | None,
        now: datetime,
    ) -> tuple[PaymentRecord, bool]: ...

    async def claim_notification(
        self,
        recipient: str,
        notification_type: NotificationType,
        scope_key: str,
        now: datetime,
    ) -> bool: ...

    async def finish_notification(
        self,
        recipient: str,
        notification_type: NotificationType,
        scope_key: str,
        status: NotificationStatus,
        now: datetime,
        error: str | None = None,
    ) -> NotificationLogEntry: ...

    async def list_notifications(self) -> list[NotificationLogEntry]: ...

    async def close(self) -> None: ...


def build_storage(config: ServerConfig) -> LedgerStorage:
    backend = config.ledger.backend
    options = dict(config.ledger.options)
    if backend == "in_memory":
        return InMemoryStorage()
    if backend == "redis":
        return RedisStorage(**options)
    if backend == "postgres":
        return PostgresStorage(**options)
    raise ValueError(f"unknown storage backend {backend}")
