"""In-memory storage backend for the auction ledger."""

from __future__ import annotations

import asyncio
from copy import deepcopy
from dataclasses import replace
from datetime import datetime

from ..errors import ItemNotFound, NotFound
from ..ledger import apply
from ..ledger.models import (
    Auction,
    AuctionItem,
    AuctionStatus,
    Bidder,
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

_NotificationKey = tuple[str, str, str]


class InMemoryStorage:
    """Single-process ledger. Every operation runs under one lock, so same-item
    bids are applied strictly one after another."""

    def __init__(self) -> None:
        self._auctions: dict[str, Auction] = {}
        self._items: dict[str, AuctionItem] = {}
        self._bidders: dict[str, Bidder] = {}
        self._bidder_ids_by_email: dict[str, str] = {}
        self._history: dict[str, list[BidHistoryEntry]] = {}
        self._payments: dict[str, PaymentRecord] = {}
        self._notifications: dict[_NotificationKey, NotificationLogEntry] = {}
        self._lock = asyncio.Lock()

    # Bids

    async def apply_bid(
        self,
        item_id: str,
        *,
        bidder_name: str,
        bidder_email: str,
        amount: int,
        now: datetime,
    ) -> BidOutcome:
        async with self._lock:
            item = self._item(item_id)
            apply.check_bid(self._auctions[item.auction_id], item, amount, now)
            previous = self._bidders.get(item.current_bidder_id) if item.current_bidder_id else None
            bidder = self._find_or_create_bidder(bidder_name, bidder_email)
            updated, entry = apply.accept_bid(item, bidder, amount, now)
            self._append_winning(entry)
            self._items[item_id] = updated
            return BidOutcome(
                item=deepcopy(updated),
                bidder=deepcopy(bidder),
                entry=deepcopy(entry),
                previous_bidder_email=apply.outbid_email(previous, bidder),
            )

    async def override_bid(
        self,
        item_id: str,
        *,
        amount: int,
        bidder_name: str | None,
        bidder_email: str | None,
        now: datetime,
    ) -> AuctionItem:
        async with self._lock:
            item = self._item(item_id)
            if bidder_name and bidder_email:
                bidder = self._find_or_create_bidder(bidder_name, bidder_email)
                updated = replace(item, current_bid=amount, current_bidder_id=bidder.bidder_id)
                self._append_winning(apply.winning_entry(item_id, amount, bidder, now))
            else:
                updated = replace(item, current_bid=amount, current_bidder_id=None)
                self._clear_winning(item_id)
            self._items[item_id] = updated
            return deepcopy(updated)

    async def set_paid(self, item_id: str, is_paid: bool) -> AuctionItem:
        async with self._lock:
            item = replace(self._item(item_id), is_paid=is_paid)
            self._items[item_id] = item
            return deepcopy(item)

    async def bid_history(
        self, item_id: str, *, include_winning: bool = False, limit: int | None = None
    ) -> list[BidHistoryEntry]:
        async with self._lock:
            self._item(item_id)
            entries = [
                entry
                for entry in reversed(self._history.get(item_id, []))
                if include_winning or not entry.is_winning_bid
            ]
            if limit is not None:
                entries = entries[:limit]
            return deepcopy(entries)

    # Auctions

    async def start_auction(self, auction: Auction, items: list[AuctionItem]) -> Auction | None:
        async with self._lock:
            replaced = None
            auctions = dict(self._auctions)
            for existing in auctions.values():
                if existing.status is AuctionStatus.ACTIVE:
                    replaced = apply.end(existing, auction.created_at)
                    auctions[existing.auction_id] = replaced
            auctions[auction.auction_id] = deepcopy(auction)
            new_items = dict(self._items)
            for item in items:
                new_items[item.item_id] = deepcopy(item)
            self._auctions = auctions
            self._items = new_items
            return deepcopy(replaced)

    async def end_auction(self, auction_id: str, now: datetime) -> tuple[Auction, bool]:
        async with self._lock:
            auction = self._auction(auction_id)
            if auction.status is AuctionStatus.ENDED:
                return deepcopy(auction), False
            ended = apply.end(auction, now)
            self._auctions[auction_id] = ended
            return deepcopy(ended), True

    async def get_auction(self, auction_id: str) -> Auction:
        async with self._lock:
            return deepcopy(self._auction(auction_id))

    async def get_active_auction(self) -> Auction | None:
        async with self._lock:
            for auction in self._auctions.values():
                if auction.status is AuctionStatus.ACTIVE:
                    return deepcopy(auction)
            return None

    async def list_auctions(self) -> list[Auction]:
        async with self._lock:
            return deepcopy(sorted(self._auctions.values(), key=lambda a: a.created_at))

    # Items

    async def get_item(self, item_id: str) -> AuctionItem:
        async with self._lock:
            return deepcopy(self._item(item_id))

    async def list_items(self, auction_id: str) -> list[AuctionItem]:
        async with self._lock:
            self._auction(auction_id)
            items = [item for item in self._items.values() if item.auction_id == auction_id]
            return deepcopy(sorted(items, key=lambda item: item.display_order))

    async def add_item(self, item: AuctionItem) -> AuctionItem:
        async with self._lock:
            self._auction(item.auction_id)
            siblings = [existing for existing in self._items.values() if existing.auction_id == item.auction_id]
            stored = replace(deepcopy(item), display_order=apply.next_display_order(siblings))
            self._items[stored.item_id] = stored
            return deepcopy(stored)

    async def update_item(self, item_id: str, changes: ItemChanges) -> AuctionItem:
        async with self._lock:
            updated = apply.edit_item(self._item(item_id), changes)
            self._items[item_id] = updated
            return deepcopy(updated)

    async def delete_item(self, item_id: str) -> None:
        async with self._lock:
            apply.check_removable(self._item(item_id))
            del self._items[item_id]
            self._history.pop(item_id, None)

    async def get_holdings(self, item_ids: list[str]) -> list[ItemHolding]:
        async with self._lock:
            return [self._holding(self._item(item_id)) for item_id in item_ids]

    async def list_holdings(
        self,
        *,
        auction_id: str | None = None,
        email: str | None = None,
        unpaid_only: bool = False,
    ) -> list[ItemHolding]:
        async with self._lock:
            holdings = []
            for item in sorted(self._items.values(), key=lambda item: item.display_order):
                if item.current_bidder_id is None:
                    continue
                if auction_id is not None and item.auction_id != auction_id:
                    continue
                if unpaid_only and item.is_paid:
                    continue
                holding = self._holding(item)
                if email is not None and holding.bidder.email != email:
                    continue
                holdings.append(holding)
            return holdings

    # Payments

    async def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        async with self._lock:
            existing = self._payments.get(record.payment_reference)
            if existing is not None:
                return deepcopy(existing)
            self._payments[record.payment_reference] = deepcopy(record)
            return deepcopy(record)

    async def get_payment(self, payment_reference: str) -> PaymentRecord:
        async with self._lock:
            return deepcopy(self._payment(payment_reference))

    async def list_payments(self, status: PaymentStatus | None = None) -> list[PaymentRecord]:
        async with self._lock:
            records = [
                record
                for record in self._payments.values()
                if status is None or record.status is status
            ]
            return deepcopy(sorted(records, key=lambda record: record.created_at))

    async def settle_payment(
        self,
        payment_reference: str,
        outcome: PaymentStatus,
        failure_reason: str | None,
        now: datetime,
    ) -> tuple[PaymentRecord, bool]:
        async with self._lock:
            record = self._payment(payment_reference)
            settled = apply.settle(record, outcome, failure_reason, now)
            if settled is None:
                return deepcopy(record), False
            if settled.status is PaymentStatus.SUCCEEDED:
                for item_id in settled.item_ids:
                    if item_id in self._items:
                        self._items[item_id] = replace(self._items[item_id], is_paid=True)
            self._payments[payment_reference] = settled
            return deepcopy(settled), True

    # Notifications

    async def claim_notification(
        self,
        recipient: str,
        notification_type: NotificationType,
        scope_key: str,
        now: datetime,
    ) -> bool:
        key = (recipient, notification_type.value, scope_key)
        async with self._lock:
            if key in self._notifications:
                return False
            self._notifications[key] = NotificationLogEntry(
                recipient=recipient,
                notification_type=notification_type,
                scope_key=scope_key,
                status=NotificationStatus.PENDING,
                created_at=now,
            )
            return True

    async def finish_notification(
        self,
        recipient: str,
        notification_type: NotificationType,
        scope_key: str,
        status: NotificationStatus,
        now: datetime,
        error: str | None = None,
    ) -> NotificationLogEntry:
        key = (recipient, notification_type.value, scope_key)
        async with self._lock:
            if key not in self._notifications:
                raise NotFound(f"notification {key} not claimed")
            entry = replace(
                self._notifications[key],
                status=status,
                sent_at=now if status is NotificationStatus.SENT else None,
                error=error,
            )
            self._notifications[key] = entry
            return deepcopy(entry)

    async def list_notifications(self) -> list[NotificationLogEntry]:
        async with self._lock:
            return deepcopy(list(self._notifications.values()))

    async def close(self) -> None:
        return None

    # Helpers (caller holds the lock)

    def _item(self, item_id: str) -> AuctionItem:
        try:
            return self._items[item_id]
        except KeyError as exc:
            raise ItemNotFound(f"item {item_id} not found") from exc

    def _auction(self, auction_id: str) -> Auction:
        try:
            return self._auctions[auction_id]
        except KeyError as exc:
            raise NotFound(f"auction {auction_id} not found") from exc

    def _payment(self, payment_reference: str) -> PaymentRecord:
        try:
            return self._payments[payment_reference]
        except KeyError as exc:
            raise NotFound(f"payment {payment_reference} not found") from exc

    def _holding(self, item: AuctionItem) -> ItemHolding:
        bidder = self._bidders.get(item.current_bidder_id) if item.current_bidder_id else None
        return ItemHolding(item=deepcopy(item), bidder=deepcopy(bidder))

    def _find_or_create_bidder(self, full_name: str, email: str) -> Bidder:
        bidder_id = self._bidder_ids_by_email.get(email)
        if bidder_id is not None:
            return self._bidders[bidder_id]
        bidder = apply.new_bidder(full_name, email)
        self._bidders[bidder.bidder_id] = bidder
        self._bidder_ids_by_email[email] = bidder.bidder_id
        return bidder

    def _clear_winning(self, item_id: str) -> None:
        entries = self._history.setdefault(item_id, [])
        for index, entry in enumerate(entries):
            if entry.is_winning_bid:
                entries[index] = replace(entry, is_winning_bid=False)

    def _append_winning(self, entry: BidHistoryEntry) -> None:
        self._clear_winning(entry.item_id)
        self._history[entry.item_id].append(entry)
