"""Postgres storage backend leveraging asyncpg.

Bids lock the item row with ``SELECT ... FOR UPDATE`` and share-lock the
owning auction, so the increment check always sees the committed current bid
and an auction cannot end underneath an in-flight bid. Partial unique indexes
hold the single-active-auction and single-winning-entry invariants even if a
caller bypasses this module.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg
import orjson

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

_SCHEMA = """
CREATE TABLE IF NOT EXISTS auctions (
    auction_id TEXT PRIMARY KEY,
    holiday_name TEXT NOT NULL,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('active', 'ended')),
    services JSONB NOT NULL DEFAULT '[]',
    created_at TIMESTAMPTZ NOT NULL,
    ended_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS auctions_single_active
    ON auctions ((status)) WHERE status = 'active';

CREATE TABLE IF NOT EXISTS bidders (
    bidder_id TEXT PRIMARY KEY,
    full_name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS auction_items (
    item_id TEXT PRIMARY KEY,
    auction_id TEXT NOT NULL REFERENCES auctions(auction_id),
    title TEXT NOT NULL,
    service TEXT NOT NULL,
    honor TEXT NOT NULL,
    description TEXT,
    starting_bid BIGINT NOT NULL CHECK (starting_bid >= 0),
    minimum_increment BIGINT NOT NULL CHECK (minimum_increment >= 100),
    current_bid BIGINT NOT NULL,
    current_bidder_id TEXT REFERENCES bidders(bidder_id),
    is_paid BOOLEAN NOT NULL DEFAULT FALSE,
    display_order INTEGER NOT NULL DEFAULT 0,
    CHECK (current_bid >= starting_bid)
);
CREATE INDEX IF NOT EXISTS auction_items_auction ON auction_items (auction_id);

CREATE TABLE IF NOT EXISTS bid_history (
    seq BIGSERIAL PRIMARY KEY,
    entry_id TEXT NOT NULL UNIQUE,
    item_id TEXT NOT NULL REFERENCES auction_items(item_id),
    amount BIGINT NOT NULL,
    bidder_name TEXT NOT NULL,
    bidder_email TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    is_winning_bid BOOLEAN NOT NULL DEFAULT FALSE
);
CREATE UNIQUE INDEX IF NOT EXISTS bid_history_single_winner
    ON bid_history (item_id) WHERE is_winning_bid;

CREATE TABLE IF NOT EXISTS payment_records (
    payment_reference TEXT PRIMARY KEY,
    item_ids JSONB NOT NULL,
    payer_email TEXT NOT NULL,
    amount BIGINT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'succeeded', 'failed')),
    metadata JSONB NOT NULL,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS notification_log (
    recipient TEXT NOT NULL,
    notification_type TEXT NOT NULL,
    scope_key TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    sent_at TIMESTAMPTZ,
    error TEXT,
    PRIMARY KEY (recipient, notification_type, scope_key)
);
"""

_CONTENTION_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.QueryCanceledError,
    asyncio.TimeoutError,
)

_HOLDING_SELECT = """
SELECT i.*, b.bidder_id AS b_bidder_id, b.full_name AS b_full_name, b.email AS b_email
FROM auction_items i
LEFT JOIN bidders b ON b.bidder_id = i.current_bidder_id
"""


class PostgresStorage:
    def __init__(self, *, dsn: str | None = None, **connect_kwargs: Any) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._pool: asyncpg.Pool | None = None

    def _encode(self, payload: Any) -> str:
        return orjson.dumps(payload).decode()

    def _decode(self, value: Any) -> Any:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode()
        if isinstance(value, str):
            return orjson.loads(value)
        return value

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        return self._pool

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield conn
        except _CONTENTION_ERRORS as exc:
            raise StorageContention(str(exc)) from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Row mapping

    def _auction(self, row: asyncpg.Record) -> Auction:
        data = dict(row)
        data["services"] = self._decode(data["services"])
        return Auction.from_dict(data)

    def _item(self, row: asyncpg.Record) -> AuctionItem:
        return AuctionItem.from_dict(dict(row))

    def _holding(self, row: asyncpg.Record) -> ItemHolding:
        bidder = None
        if row["b_bidder_id"] is not None:
            bidder = Bidder(
                bidder_id=row["b_bidder_id"],
                full_name=row["b_full_name"],
                email=row["b_email"],
            )
        return ItemHolding(item=self._item(row), bidder=bidder)

    def _payment(self, row: asyncpg.Record) -> PaymentRecord:
        data = dict(row)
        data["item_ids"] = self._decode(data["item_ids"])
        data["metadata"] = self._decode(data["metadata"])
        return PaymentRecord.from_dict(data)

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
        async with self._transaction() as conn:
            item = await self._lock_item(conn, item_id)
            auction_row = await conn.fetchrow(
                "SELECT * FROM auctions WHERE auction_id=$1 FOR SHARE",
                item.auction_id,
            )
            apply.check_bid(self._auction(auction_row), item, amount, now)
            previous = await self._fetch_bidder(conn, item.current_bidder_id)
            bidder = await self._find_or_create_bidder(conn, bidder_name, bidder_email)
            updated, entry = apply.accept_bid(item, bidder, amount, now)
            await conn.execute(
                "UPDATE auction_items SET current_bid=$2, current_bidder_id=$3 WHERE item_id=$1",
                item_id,
                updated.current_bid,
                updated.current_bidder_id,
            )
            await self._append_winning(conn, entry)
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
        async with self._transaction() as conn:
            await self._lock_item(conn, item_id)
            bidder_id = None
            if bidder_name and bidder_email:
                bidder = await self._find_or_create_bidder(conn, bidder_name, bidder_email)
                bidder_id = bidder.bidder_id
                await self._append_winning(conn, apply.winning_entry(item_id, amount, bidder, now))
            else:
                await self._clear_winning(conn, item_id)
            row = await conn.fetchrow(
                """UPDATE auction_items SET current_bid=$2, current_bidder_id=$3
                   WHERE item_id=$1 RETURNING *""",
                item_id,
                amount,
                bidder_id,
            )
        return self._item(row)

    async def set_paid(self, item_id: str, is_paid: bool) -> AuctionItem:
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                "UPDATE auction_items SET is_paid=$2 WHERE item_id=$1 RETURNING *",
                item_id,
                is_paid,
            )
        if not row:
            raise ItemNotFound(f"item {item_id} not found")
        return self._item(row)

    async def bid_history(
        self, item_id: str, *, include_winning: bool = False, limit: int | None = None
    ) -> list[BidHistoryEntry]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            exists = await conn.fetchval("SELECT 1 FROM auction_items WHERE item_id=$1", item_id)
            if not exists:
                raise ItemNotFound(f"item {item_id} not found")
            rows = await conn.fetch(
                """SELECT entry_id, item_id, amount, bidder_name, bidder_email,
                          created_at, is_winning_bid
                   FROM bid_history
                   WHERE item_id=$1 AND ($2 OR NOT is_winning_bid)
                   ORDER BY seq DESC
                   LIMIT $3""",
                item_id,
                include_winning,
                limit,
            )
        return [BidHistoryEntry.from_dict(dict(row)) for row in rows]

    # Auctions

    async def start_auction(self, auction: Auction, items: list[AuctionItem]) -> Auction | None:
        try:
            async with self._transaction() as conn:
                row = await conn.fetchrow(
                    """UPDATE auctions SET status='ended', ended_at=$1
                       WHERE status='active' RETURNING *""",
                    auction.created_at,
                )
                await conn.execute(
                    """INSERT INTO auctions(auction_id, holiday_name, start_time, end_time,
                                            status, services, created_at)
                       VALUES($1, $2, $3, $4, $5, $6, $7)""",
                    auction.auction_id,
                    auction.holiday_name,
                    auction.start_time,
                    auction.end_time,
                    auction.status.value,
                    self._encode(list(auction.services)),
                    auction.created_at,
                )
                await conn.executemany(
                    """INSERT INTO auction_items(item_id, auction_id, title, service, honor,
                                                 description, starting_bid, minimum_increment,
                                                 current_bid, display_order)
                       VALUES($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)""",
                    [
                        (
                            item.item_id,
                            item.auction_id,
                            item.title,
                            item.service,
                            item.honor,
                            item.description,
                            item.starting_bid,
                            item.minimum_increment,
                            item.current_bid,
                            item.display_order,
                        )
                        for item in items
                    ],
                )
        except asyncpg.exceptions.UniqueViolationError as exc:
            # Another start committed its auction between our flip and insert.
            if exc.constraint_name == "auctions_single_active":
                raise StorageContention(str(exc)) from exc
            raise
        return self._auction(row) if row else None

    async def end_auction(self, auction_id: str, now: datetime) -> tuple[Auction, bool]:
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM auctions WHERE auction_id=$1 FOR UPDATE", auction_id
            )
            if not row:
                raise NotFound(f"auction {auction_id} not found")
            auction = self._auction(row)
            if auction.status is AuctionStatus.ENDED:
                return auction, False
            ended = apply.end(auction, now)
            await conn.execute(
                "UPDATE auctions SET status=$2, ended_at=$3 WHERE auction_id=$1",
                auction_id,
                ended.status.value,
                ended.ended_at,
            )
        return ended, True

    async def get_auction(self, auction_id: str) -> Auction:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM auctions WHERE auction_id=$1", auction_id)
        if not row:
            raise NotFound(f"auction {auction_id} not found")
        return self._auction(row)

    async def get_active_auction(self) -> Auction | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM auctions WHERE status='active'")
        return self._auction(row) if row else None

    async def list_auctions(self) -> list[Auction]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM auctions ORDER BY created_at")
        return [self._auction(row) for row in rows]

    # Items

    async def get_item(self, item_id: str) -> AuctionItem:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM auction_items WHERE item_id=$1", item_id)
        if not row:
            raise ItemNotFound(f"item {item_id} not found")
        return self._item(row)

    async def list_items(self, auction_id: str) -> list[AuctionItem]:
        await self.get_auction(auction_id)
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM auction_items WHERE auction_id=$1 ORDER BY display_order",
                auction_id,
            )
        return [self._item(row) for row in rows]

    async def add_item(self, item: AuctionItem) -> AuctionItem:
        async with self._transaction() as conn:
            # The auction row lock serializes display_order assignment.
            found = await conn.fetchval(
                "SELECT 1 FROM auctions WHERE auction_id=$1 FOR UPDATE", item.auction_id
            )
            if not found:
                raise NotFound(f"auction {item.auction_id} not found")
            display_order = await conn.fetchval(
                "SELECT COALESCE(MAX(display_order), 0) + 1 FROM auction_items WHERE auction_id=$1",
                item.auction_id,
            )
            row = await conn.fetchrow(
                """INSERT INTO auction_items(item_id, auction_id, title, service, honor,
                                             description, starting_bid, minimum_increment,
                                             current_bid, display_order)
                   VALUES($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                   RETURNING *""",
                item.item_id,
                item.auction_id,
                item.title,
                item.service,
                item.honor,
                item.description,
                item.starting_bid,
                item.minimum_increment,
                item.current_bid,
                display_order,
            )
        return self._item(row)

    async def update_item(self, item_id: str, changes: ItemChanges) -> AuctionItem:
        async with self._transaction() as conn:
            updated = apply.edit_item(await self._lock_item(conn, item_id), changes)
            row = await conn.fetchrow(
                """UPDATE auction_items
                   SET title=$2, service=$3, honor=$4, description=$5, starting_bid=$6,
                       minimum_increment=$7, current_bid=$8, display_order=$9
                   WHERE item_id=$1 RETURNING *""",
                item_id,
                updated.title,
                updated.service,
                updated.honor,
                updated.description,
                updated.starting_bid,
                updated.minimum_increment,
                updated.current_bid,
                updated.display_order,
            )
        return self._item(row)

    async def delete_item(self, item_id: str) -> None:
        async with self._transaction() as conn:
            apply.check_removable(await self._lock_item(conn, item_id))
            await conn.execute("DELETE FROM bid_history WHERE item_id=$1", item_id)
            await conn.execute("DELETE FROM auction_items WHERE item_id=$1", item_id)

    async def get_holdings(self, item_ids: list[str]) -> list[ItemHolding]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                _HOLDING_SELECT + "WHERE i.item_id = ANY($1::text[])",
                list(item_ids),
            )
        by_id = {row["item_id"]: self._holding(row) for row in rows}
        missing = [item_id for item_id in item_ids if item_id not in by_id]
        if missing:
            raise ItemNotFound(f"item {missing[0]} not found")
        return [by_id[item_id] for item_id in item_ids]

    async def list_holdings(
        self,
        *,
        auction_id: str | None = None,
        email: str | None = None,
        unpaid_only: bool = False,
    ) -> list[ItemHolding]:
        clauses = ["i.current_bidder_id IS NOT NULL"]
        args: list[Any] = []
        if auction_id is not None:
            args.append(auction_id)
            clauses.append(f"i.auction_id = ${len(args)}")
        if email is not None:
            args.append(email)
            clauses.append(f"b.email = ${len(args)}")
        if unpaid_only:
            clauses.append("NOT i.is_paid")
        query = _HOLDING_SELECT + "WHERE " + " AND ".join(clauses) + " ORDER BY i.display_order"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [self._holding(row) for row in rows]

    # Payments

    async def create_payment(self, record: PaymentRecord) -> PaymentRecord:
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO payment_records(payment_reference, item_ids, payer_email, amount,
                                               currency, status, metadata, failure_reason,
                                               created_at, updated_at)
                   VALUES($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                   ON CONFLICT (payment_reference) DO NOTHING""",
                record.payment_reference,
                self._encode(list(record.item_ids)),
                record.payer_email,
                record.amount,
                record.currency,
                record.status.value,
                self._encode(record.metadata),
                record.failure_reason,
                record.created_at,
                record.updated_at,
            )
            row = await conn.fetchrow(
                "SELECT * FROM payment_records WHERE payment_reference=$1", record.payment_reference
            )
        return self._payment(row)

    async def get_payment(self, payment_reference: str) -> PaymentRecord:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM payment_records WHERE payment_reference=$1", payment_reference
            )
        if not row:
            raise NotFound(f"payment {payment_reference} not found")
        return self._payment(row)

    async def list_payments(self, status: PaymentStatus | None = None) -> list[PaymentRecord]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM payment_records
                   WHERE $1::text IS NULL OR status = $1
                   ORDER BY created_at""",
                status.value if status else None,
            )
        return [self._payment(row) for row in rows]

    async def settle_payment(
        self,
        payment_reference: str,
        outcome: PaymentStatus,
        failure_reason: str | None,
        now: datetime,
    ) -> tuple[PaymentRecord, bool]:
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM payment_records WHERE payment_reference=$1 FOR UPDATE",
                payment_reference,
            )
            if not row:
                raise NotFound(f"payment {payment_reference} not found")
            record = self._payment(row)
            settled = apply.settle(record, outcome, failure_reason, now)
            if settled is None:
                return record, False
            await conn.execute(
                """UPDATE payment_records SET status=$2, failure_reason=$3, updated_at=$4
                   WHERE payment_reference=$1""",
                payment_reference,
                settled.status.value,
                settled.failure_reason,
                settled.updated_at,
            )
            if settled.status is PaymentStatus.SUCCEEDED:
                await conn.execute(
                    "UPDATE auction_items SET is_paid=TRUE WHERE item_id = ANY($1::text[])",
                    list(settled.item_ids),
                )
        return settled, True

    # Notifications

    async def claim_notification(
        self,
        recipient: str,
        notification_type: NotificationType,
        scope_key: str,
        now: datetime,
    ) -> bool:
        async with self._transaction() as conn:
            claimed = await conn.fetchval(
                """INSERT INTO notification_log(recipient, notification_type, scope_key,
                                                status, created_at)
                   VALUES($1, $2, $3, $4, $5)
                   ON CONFLICT DO NOTHING
                   RETURNING TRUE""",
                recipient,
                notification_type.value,
                scope_key,
                NotificationStatus.PENDING.value,
                now,
            )
        return bool(claimed)

    async def finish_notification(
        self,
        recipient: str,
        notification_type: NotificationType,
        scope_key: str,
        status: NotificationStatus,
        now: datetime,
        error: str | None = None,
    ) -> NotificationLogEntry:
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                """UPDATE notification_log SET status=$4, sent_at=$5, error=$6
                   WHERE recipient=$1 AND notification_type=$2 AND scope_key=$3
                   RETURNING *""",
                recipient,
                notification_type.value,
                scope_key,
                status.value,
                now if status is NotificationStatus.SENT else None,
                error,
            )
        if not row:
            raise NotFound(f"notification ({recipient}, {notification_type.value}, {scope_key}) not claimed")
        return NotificationLogEntry.from_dict(dict(row))

    async def list_notifications(self) -> list[NotificationLogEntry]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM notification_log ORDER BY created_at")
        return [NotificationLogEntry.from_dict(dict(row)) for row in rows]

    # Helpers (inside a transaction)

    async def _lock_item(self, conn: asyncpg.Connection, item_id: str) -> AuctionItem:
        row = await conn.fetchrow(
            "SELECT * FROM auction_items WHERE item_id=$1 FOR UPDATE", item_id
        )
        if not row:
            raise ItemNotFound(f"item {item_id} not found")
        return self._item(row)

    async def _fetch_bidder(self, conn: asyncpg.Connection, bidder_id: str | None) -> Bidder | None:
        if bidder_id is None:
            return None
        row = await conn.fetchrow("SELECT * FROM bidders WHERE bidder_id=$1", bidder_id)
        return Bidder.from_dict(dict(row)) if row else None

    async def _find_or_create_bidder(
        self, conn: asyncpg.Connection, full_name: str, email: str
    ) -> Bidder:
        candidate = apply.new_bidder(full_name, email)
        await conn.execute(
            """INSERT INTO bidders(bidder_id, full_name, email) VALUES($1, $2, $3)
               ON CONFLICT (email) DO NOTHING""",
            candidate.bidder_id,
            candidate.full_name,
            candidate.email,
        )
        row = await conn.fetchrow("SELECT * FROM bidders WHERE email=$1", email)
        return Bidder.from_dict(dict(row))

    async def _clear_winning(self, conn: asyncpg.Connection, item_id: str) -> None:
        await conn.execute(
            "UPDATE bid_history SET is_winning_bid=FALSE WHERE item_id=$1 AND is_winning_bid",
            item_id,
        )

    async def _append_winning(self, conn: asyncpg.Connection, entry: BidHistoryEntry) -> None:
        await self._clear_winning(conn, entry.item_id)
        await conn.execute(
            """INSERT INTO bid_history(entry_id, item_id, amount, bidder_name, bidder_email,
                                       created_at, is_winning_bid)
               VALUES($1, $2, $3, $4, $5, $6, TRUE)""",
            entry.entry_id,
            entry.item_id,
            entry.amount,
            entry.bidder_name,
            entry.bidder_email,
            entry.created_at,
        )
