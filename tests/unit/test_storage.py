"""Ledger storage factory and in-memory backend invariants."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from bidboard.config import parse_server_config
from bidboard.errors import Conflict, NotFound
from bidboard.ledger import apply
from bidboard.ledger.models import (
    Auction,
    AuctionStatus,
    ItemChanges,
    NotificationStatus,
    NotificationType,
    PaymentRecord,
    PaymentStatus,
)
from bidboard.storage import build_storage
from bidboard.storage.in_memory import InMemoryStorage
from bidboard.storage.postgres import PostgresStorage
from bidboard.storage.redis import RedisStorage

from .conftest import DURING, END, START, make_items


def _auction(auction_id: str) -> Auction:
    return Auction(
        auction_id=auction_id,
        holiday_name="Christmas 2026",
        start_time=START,
        end_time=END,
        status=AuctionStatus.ACTIVE,
        services=("Christmas Eve",),
        created_at=START,
    )


def _payment(reference: str) -> PaymentRecord:
    return PaymentRecord(
        payment_reference=reference,
        item_ids=("i1",),
        payer_email="ada@example.org",
        amount=1030,
        currency="usd",
        status=PaymentStatus.PENDING,
        metadata={},
        created_at=START,
        updated_at=START,
    )


def test_build_storage_backends():
    assert isinstance(build_storage(parse_server_config({})), InMemoryStorage)
    redis_config = parse_server_config(
        {"ledger": {"backend": "redis", "options": {"url": "redis://localhost:6379/0"}}}
    )
    assert isinstance(build_storage(redis_config), RedisStorage)
    pg_config = parse_server_config(
        {"ledger": {"backend": "postgres", "options": {"dsn": "postgresql://localhost/bidboard"}}}
    )
    assert isinstance(build_storage(pg_config), PostgresStorage)
    with pytest.raises(ValueError):
        build_storage(parse_server_config({"ledger": {"backend": "sqlite"}}))


@pytest.mark.asyncio
async def test_start_auction_keeps_single_active(storage):
    first = _auction("a1")
    assert await storage.start_auction(first, apply.build_items("a1", make_items())) is None

    replaced = await storage.start_auction(
        replace(_auction("a2"), created_at=DURING), apply.build_items("a2", make_items())
    )

    assert replaced.auction_id == "a1"
    assert replaced.status is AuctionStatus.ENDED
    assert replaced.ended_at == DURING
    assert (await storage.get_active_auction()).auction_id == "a2"
    assert len(await storage.list_items("a1")) == 3


@pytest.mark.asyncio
async def test_reads_return_copies(storage):
    items = apply.build_items("a1", make_items())
    await storage.start_auction(_auction("a1"), items)

    item = await storage.get_item(items[0].item_id)
    item.current_bid = 999_999

    assert (await storage.get_item(items[0].item_id)).current_bid == items[0].starting_bid


@pytest.mark.asyncio
async def test_payment_records(storage):
    first = await storage.create_payment(_payment("pi_1"))
    replayed = await storage.create_payment(replace(_payment("pi_1"), amount=9999))
    assert replayed == first
    assert len(await storage.list_payments()) == 1

    settled, applied = await storage.settle_payment("pi_1", PaymentStatus.SUCCEEDED, None, DURING)
    assert applied is True
    assert settled.updated_at == DURING
    _, applied_again = await storage.settle_payment("pi_1", PaymentStatus.FAILED, "late", END)
    assert applied_again is False
    assert (await storage.get_payment("pi_1")).status is PaymentStatus.SUCCEEDED

    with pytest.raises(NotFound):
        await storage.get_payment("pi_missing")


@pytest.mark.asyncio
async def test_notification_claims_are_exclusive(storage):
    assert await storage.claim_notification("ada@example.org", NotificationType.WINNER, "a1", START) is True
    assert await storage.claim_notification("ada@example.org", NotificationType.WINNER, "a1", START) is False
    assert await storage.claim_notification("ada@example.org", NotificationType.OUTBID, "a1", START) is True

    entry = await storage.finish_notification(
        "ada@example.org", NotificationType.WINNER, "a1", NotificationStatus.SENT, START + timedelta(seconds=1)
    )
    assert entry.status is NotificationStatus.SENT
    with pytest.raises(NotFound):
        await storage.finish_notification(
            "grace@example.org", NotificationType.WINNER, "a1", NotificationStatus.SENT, START
        )


@pytest.mark.asyncio
async def test_item_edits_hold_the_bid_invariants(storage):
    items = apply.build_items("a1", make_items())
    await storage.start_auction(_auction("a1"), items)
    bidder = apply.new_bidder("Ada", "ada@example.org")
    await storage.apply_bid(
        items[0].item_id, bidder_name=bidder.full_name, bidder_email=bidder.email, amount=1500, now=DURING
    )

    (extra,) = apply.build_items("a1", make_items()[:1])
    added = await storage.add_item(extra)
    assert added.display_order == 4

    untouched = await storage.update_item(items[1].item_id, ItemChanges(starting_bid=4000))
    assert untouched.current_bid == 4000
    with pytest.raises(Conflict):
        await storage.update_item(items[0].item_id, ItemChanges(starting_bid=2000))
    assert (await storage.get_item(items[0].item_id)).starting_bid == 1000

    with pytest.raises(Conflict):
        await storage.delete_item(items[0].item_id)
    await storage.delete_item(added.item_id)
    assert len(await storage.list_items("a1")) == 3
    with pytest.raises(NotFound):
        await storage.bid_history(added.item_id)
