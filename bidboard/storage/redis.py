"""Redis storage backend using redis-py asyncio client.

Every mutation is an optimistic transaction: WATCH the keys it reads, queue
the writes inside MULTI, and let EXEC fail if another client touched a
watched key in between. A failed EXEC surfaces as ``StorageContention`` and is
retried by the caller against fresh state.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, AsyncIterator

import orjson
from redis import asyncio as aioredis
from redis.exceptions import WatchError

from ..errors import ItemNotFound, NotFound, StorageContention
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


def _text(value: Any) -> str | None:
    if isinstance(value, (bytes, bytearray)):
        return value.decode()
    return value


class RedisStorage:
    def __init__(
        self,
        *,
        url: str | None = None,
        prefix: str = "bidboard",
        client: aioredis.Redis | None = None,
    ) -> None:
        if client is None and not url:
            raise ValueError("redis url missing")
        self._redis = client if client is not None else aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    def _dumps(self, value: Any) -> bytes:
        return orjson.dumps(value)

    @asynccontextmanager
    async def _watching(self, *keys: str) -> AsyncIterator[Any]:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(*keys)
                yield pipe
        except WatchError as exc:
            raise StorageContention(f"concurrent update on {keys[0]}") from exc

    async def close(self) -> None:
        await self._redis.aclose()

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
        item_key = self._key("item", item_id)
        email_key = self._key("bidder_email", bidder_email)
        async with self._watching(item_key, email_key) as pipe:
            item = await self._load_item(pipe, item_id)
            auction_key = self._key("auction", item.auction_id)
            winning_key = self._key("winning", item_id)
            await pipe.watch(auction_key, winning_key)
            auction = Auction.from_dict(orjson.loads(await pipe.get(auction_key)))
            apply.check_bid(auction, item, amount, now)
            previous = await self._load_bidder(pipe, item.current_bidder_id)
            bidder, created = await self._lookup_bidder(pipe, bidder_name, bidder_email)
            updated, entry = apply.accept_bid(item, bidder, amount, now)
            flip = await self._winning_flip(pipe, item_id)
            history_len = await pipe.llen(self._key("history", item_id))
            pipe.multi()
            if created:
                self._queue_bidder(pipe, bidder)
            pipe.set(item_key, self._dumps(updated))
            self._queue_append_winning(pipe, entry, flip, history_len)
            await pipe.execute()
        return BidOutcome(
            item=updated,
            bidder=bidder,
            entry=entry,
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
        item_key = self._key("item", item_id)
        winning_key = self._key("winning", item_id)
        async with self._watching(item_key, winning_key) as pipe:
            item = await self._load_item(pipe, item_id)
            flip = await self._winning_flip(pipe, item_id)
            if bidder_name and bidder_email:
                await pipe.watch(self._key("bidder_email", bidder_email))
                bidder, created = await self._lookup_bidder(pipe, bidder_name, bidder_email)
                updated = replace(item, current_bid=amount, current_bidder_id=bidder.bidder_id)
                history_len = await pipe.llen(self._key("history", item_id))
                pipe.multi()
                if created:
                    self._queue_bidder(pipe, bidder)
                self._queue_append_winning(
                    pipe, apply.winning_entry(item_id, amount, bidder, now), flip, history_len
                )
            else:
                updated = replace(item, current_bid=amount, current_bidder_id=None)
                pipe.multi()
                if flip is not None:
                    index, entry = flip
                    pipe.lset(self._key("history", item_id), index, self._dumps(entry))
                pipe.delete(winning_key)
            pipe.set(item_key, self._dumps(updated))
            await pipe.execute()
        return updated

    async def set_paid(self, item_id: str, is_paid: bool) -> AuctionItem:
        item_key = self._key("item", item_id)
        async with self._watching(item_key) as pipe:
            item = replace(await self._load_item(pipe, item_id), is_paid=is_paid)
            pipe.multi()
            pipe.set(item_key, self._dumps(item))
            await pipe.execute()
        return item

    async def bid_history(
        self, item_id: str, *, include_winning: bool = False, limit: int | None = None
    ) -> list[BidHistoryEntry]:
        await self.get_item(item_id)
        raw_entries = await self._redis.lrange(self._key("history", item_id), 0, -1)
        entries = [
            entry
            for entry in (BidHistoryEntry.from_dict(orjson.loads(raw)) for raw in reversed(raw_entries))
            if include_winning or not entry.is_winning_bid
        ]
        return entries[:limit] if limit is not None else entries

    # Auctions

    async def start_auction(self, auction: Auction, items: list[AuctionItem]) -> Auction | None:
        active_key = self._key("active_auction")
        async with self._watching(active_key) as pipe:
            replaced = None
            active_id = _text(await pipe.get(active_key))
            if active_id:
                active_auction_key = self._key("auction", active_id)
                await pipe.watch(active_auction_key)
                raw = await pipe.get(active_auction_key)
                if raw is not None:
                    current = Auction.from_dict(orjson.loads(raw))
                    if current.status is AuctionStatus.ACTIVE:
                        replaced = apply.end(current, auction.created_at)
            pipe.multi()
            if replaced is not None:
                pipe.set(self._key("auction", replaced.auction_id), self._dumps(replaced))
            pipe.set(self._key("auction", auction.auction_id), self._dumps(auction))
            pipe.rpush(self._key("auctions"), auction.auction_id)
            for item in items:
                pipe.set(self._key("item", item.item_id), self._dumps(item))
            if items:
                pipe.rpush(
                    self._key("auction", auction.auction_id, "items"),
                    *[item.item_id for item in items],
                )
            pipe.set(active_key, auction.auction_id)
            await pipe.execute()
        return replaced

    async def end_auction(self, auction_id: str, now: datetime) -> tuple[Auction, bool]:
        auction_key = self._key("auction", auction_id)
        active_key = self._key("active_auction")
        async with self._watching(auction_key, active_key) as pipe:
            raw = await pipe.get(auction_key)
            if raw is None:
                raise NotFound(f"auction {auction_id} not found")
            auction = Auction.from_dict(orjson.loads(raw))
            if auction.status is AuctionStatus.ENDED:
                return auction, False
            ended = apply.end(auction, now)
            active_id = _text(await pipe.get(active_key))
            pipe.multi()
            pipe.set(auction_key, self._dumps(ended))
            if active_id == auction_id:
                pipe.delete(active_key)
            await pipe.execute()
        return ended, True

    async def get_auction(self, auction_id: str) -> Auction:
        raw = await self._redis.get(self._key("auction", auction_id))
        if raw is None:
            raise NotFound(f"auction {auction_id} not found")
        return Auction.from_dict(orjson.loads(raw))

    async def get_active_auction(self) -> Auction | None:
        active_id = _text(await self._redis.get(self._key("active_auction")))
        if not active_id:
            return None
        auction = await self.get_auction(active_id)
        return auction if auction.status is AuctionStatus.ACTIVE else None

    async def list_auctions(self) -> list[Auction]:
        ids = [_text(value) for value in await self._redis.lrange(self._key("auctions"), 0, -1)]
        if not ids:
            return []
        values = await self._redis.mget([self._key("auction", auction_id) for auction_id in ids])
        return [Auction.from_dict(orjson.loads(value)) for value in values if value]

    # Items

    async def get_item(self, item_id: str) -> AuctionItem:
        raw = await self._redis.get(self._key("item", item_id))
        if raw is None:
            raise ItemNotFound(f"item {item_id} not found")
        return AuctionItem.from_dict(orjson.loads(raw))

    async def list_items(self, auction_id: str) -> list[AuctionItem]:
        await self.get_auction(auction_id)
        ids = await self._redis.lrange(self._key("auction", auction_id, "items"), 0, -1)
        items = await self._load_items([_text(value) for value in ids])
        return sorted(items, key=lambda item: item.display_order)

    async def add_item(self, item: AuctionItem) -> AuctionItem:
        auction_key = self._key("auction", item.auction_id)
        items_key = self._key("auction", item.auction_id, "items")
        async with self._watching(auction_key, items_key) as pipe:
            if not await pipe.exists(auction_key):
                raise NotFound(f"auction {item.auction_id} not found")
            item_keys = [self._key("item", _text(value)) for value in await pipe.lrange(items_key, 0, -1)]
            siblings: list[AuctionItem] = []
            if item_keys:
                await pipe.watch(*item_keys)
                siblings = [
                    AuctionItem.from_dict(orjson.loads(value))
                    for value in await pipe.mget(item_keys)
                    if value
                ]
            stored = replace(item, display_order=apply.next_display_order(siblings))
            pipe.multi()
            pipe.set(self._key("item", stored.item_id), self._dumps(stored))
            pipe.rpush(items_key, stored.item_id)
            await pipe.execute()
        return stored

    async def update_item(self, item_id: str, changes: ItemChanges) -> AuctionItem:
        item_key = self._key("item", item_id)
        async with self._watching(item_key) as pipe:
            updated = apply.edit_item(await self._load_item(pipe, item_id), changes)
            pipe.multi()
            pipe.set(item_key, self._dumps(updated))
            await pipe.execute()
        return updated

    async def delete_item(self, item_id: str) -> None:
        item_key = self._key("item", item_id)
        async with self._watching(item_key) as pipe:
            item = await self._load_item(pipe, item_id)
            apply.check_removable(item)
            pipe.multi()
            pipe.delete(item_key, self._key("history", item_id), self._key("winning", item_id))
            pipe.lrem(self._key("auction", item.auction_id, "items"), 0, item_id)
            await pipe.execute()

    async def get_holdings(self, item_ids: list[str]) -> list[ItemHolding]:
        if not item_ids:
            return []
        values = await self._redis.mget([self._key("item", item_id) for item_id in item_ids])
        for item_id, value in zip(item_ids, values):
            if value is None:
                raise ItemNotFound(f"item {item_id} not found")
        items = [AuctionItem.from_dict(orjson.loads(value)) for value in values]
        return await self._holdings(items)

    async def list_holdings(
        self,
        *,
        auction_id: str | None = None,
        email: str | None = None,
        unpaid_only: bool = False,
    ) -> list[ItemHolding]:
        auction_ids = (
            [auction_id]
            if auction_id is not None
            else [auction.auction_id for auction in await self.list_auctions()]
        )
        items: list[AuctionItem] = []
        for current_id in auction_ids:
            ids = await self._redis.lrange(self._key("auction", current_id, "items"), 0, -1)
            items.extend(await self._load_items([_text(value) for value in ids]))
        items = [
            item
            for item in items
            if item.current_bidder_id is not None and not (unpaid_only and item.is_paid)
        ]
        holdings = await self._holdings(sorted(items, key=lambda item: item.display_order))
        if email is not None:
            holdings = [holding for holding in holdings if holding.bidder and holding.bidder.email == email]
        return holdings

    # Payments

    async def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        payment_key = self._key("payment", record.payment_reference)
        async with self._watching(payment_key) as pipe:
            existing = await pipe.get(payment_key)
            if existing is not None:
                return PaymentRecord.from_dict(orjson.loads(existing))
            pipe.multi()
            pipe.set(payment_key, self._dumps(record))
            pipe.rpush(self._key("payments"), record.payment_reference)
            await pipe.execute()
        return record

    async def get_payment(self, payment_reference: str) -> PaymentRecord:
        raw = await self._redis.get(self._key("payment", payment_reference))
        if raw is None:
            raise NotFound(f"payment {payment_reference} not found")
        return PaymentRecord.from_dict(orjson.loads(raw))

    async def list_payments(self, status: PaymentStatus | None = None) -> list[PaymentRecord]:
        refs = [_text(value) for value in await self._redis.lrange(self._key("payments"), 0, -1)]
        if not refs:
            return []
        values = await self._redis.mget([self._key("payment", ref) for ref in refs])
        records = [PaymentRecord.from_dict(orjson.loads(value)) for value in values if value]
        return [record for record in records if status is None or record.status is status]

    async def settle_payment(
        self,
        payment_reference: str,
        outcome: PaymentStatus,
        failure_reason: str | None,
        now: datetime,
    ) -> tuple[PaymentRecord, bool]:
        payment_key = self._key("payment", payment_reference)
        async with self._watching(payment_key) as pipe:
            raw = await pipe.get(payment_key)
            if raw is None:
                raise NotFound(f"payment {payment_reference} not found")
            record = PaymentRecord.from_dict(orjson.loads(raw))
            settled = apply.settle(record, outcome, failure_reason, now)
            if settled is None:
                return record, False
            paid_items: list[AuctionItem] = []
            if settled.status is PaymentStatus.SUCCEEDED and settled.item_ids:
                item_keys = [self._key("item", item_id) for item_id in settled.item_ids]
                await pipe.watch(*item_keys)
                for value in await pipe.mget(item_keys):
                    if value is not None:
                        paid_items.append(replace(AuctionItem.from_dict(orjson.loads(value)), is_paid=True))
            pipe.multi()
            pipe.set(payment_key, self._dumps(settled))
            for item in paid_items:
                pipe.set(self._key("item", item.item_id), self._dumps(item))
            await pipe.execute()
        return settled, True

    # Notifications

    def _notification_key(
        self, recipient: str, notification_type: NotificationType, scope_key: str
    ) -> str:
        return self._key("notification", notification_type.value, scope_key, recipient)

    async def claim_notification(
        self,
        recipient: str,
        notification_type: NotificationType,
        scope_key: str,
        now: datetime,
    ) -> bool:
        key = self._notification_key(recipient, notification_type, scope_key)
        entry = NotificationLogEntry(
            recipient=recipient,
            notification_type=notification_type,
            scope_key=scope_key,
            status=NotificationStatus.PENDING,
            created_at=now,
        )
        try:
            async with self._watching(key) as pipe:
                if await pipe.exists(key):
                    return False
                pipe.multi()
                pipe.set(key, self._dumps(entry))
                pipe.rpush(self._key("notifications"), key)
                await pipe.execute()
        except StorageContention:
            # Only a competing claim writes an unclaimed key.
            return False
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
        key = self._notification_key(recipient, notification_type, scope_key)
        async with self._watching(key) as pipe:
            raw = await pipe.get(key)
            if raw is None:
                raise NotFound(f"notification ({recipient}, {notification_type.value}, {scope_key}) not claimed")
            entry = replace(
                NotificationLogEntry.from_dict(orjson.loads(raw)),
                status=status,
                sent_at=now if status is NotificationStatus.SENT else None,
                error=error,
            )
            pipe.multi()
            pipe.set(key, self._dumps(entry))
            await pipe.execute()
        return entry

    async def list_notifications(self) -> list[NotificationLogEntry]:
        keys = [_text(value) for value in await self._redis.lrange(self._key("notifications"), 0, -1)]
        if not keys:
            return []
        values = await self._redis.mget(keys)
        return [NotificationLogEntry.from_dict(orjson.loads(value)) for value in values if value]

    # Helpers

    async def _load_item(self, pipe: Any, item_id: str) -> AuctionItem:
        raw = await pipe.get(self._key("item", item_id))
        if raw is None:
            raise ItemNotFound(f"item {item_id} not found")
        return AuctionItem.from_dict(orjson.loads(raw))

    async def _load_items(self, item_ids: list[str]) -> list[AuctionItem]:
        if not item_ids:
            return []
        values = await self._redis.mget([self._key("item", item_id) for item_id in item_ids])
        return [AuctionItem.from_dict(orjson.loads(value)) for value in values if value]

    async def _load_bidder(self, conn: Any, bidder_id: str | None) -> Bidder | None:
        if bidder_id is None:
            return None
        raw = await conn.get(self._key("bidder", bidder_id))
        return Bidder.from_dict(orjson.loads(raw)) if raw else None

    async def _holdings(self, items: list[AuctionItem]) -> list[ItemHolding]:
        bidder_ids = sorted({item.current_bidder_id for item in items if item.current_bidder_id})
        bidders: dict[str, Bidder] = {}
        if bidder_ids:
            values = await self._redis.mget([self._key("bidder", bidder_id) for bidder_id in bidder_ids])
            for value in values:
                if value:
                    bidder = Bidder.from_dict(orjson.loads(value))
                    bidders[bidder.bidder_id] = bidder
        return [
            ItemHolding(item=item, bidder=bidders.get(item.current_bidder_id or ""))
            for item in items
        ]

    async def _lookup_bidder(self, pipe: Any, full_name: str, email: str) -> tuple[Bidder, bool]:
        bidder_id = _text(await pipe.get(self._key("bidder_email", email)))
        if bidder_id:
            bidder = await self._load_bidder(pipe, bidder_id)
            if bidder is not None:
                return bidder, False
        return apply.new_bidder(full_name, email), True

    def _queue_bidder(self, pipe: Any, bidder: Bidder) -> None:
        pipe.set(self._key("bidder", bidder.bidder_id), self._dumps(bidder))
        pipe.set(self._key("bidder_email", bidder.email), bidder.bidder_id)

    async def _winning_flip(self, pipe: Any, item_id: str) -> tuple[int, BidHistoryEntry] | None:
        """Return the current winning entry with its flag cleared, and its list index."""
        index = _text(await pipe.get(self._key("winning", item_id)))
        if index is None:
            return None
        raw = await pipe.lindex(self._key("history", item_id), int(index))
        if raw is None:
            return None
        entry = BidHistoryEntry.from_dict(orjson.loads(raw))
        return int(index), replace(entry, is_winning_bid=False)

    def _queue_append_winning(
        self,
        pipe: Any,
        entry: BidHistoryEntry,
        flip: tuple[int, BidHistoryEntry] | None,
        history_len: int,
    ) -> None:
        history_key = self._key("history", entry.item_id)
        if flip is not None:
            index, flipped = flip
            pipe.lset(history_key, index, self._dumps(flipped))
        pipe.rpush(history_key, self._dumps(entry))
        pipe.set(self._key("winning", entry.item_id), history_len)
