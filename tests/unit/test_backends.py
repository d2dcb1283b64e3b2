"""Bidding, lifecycle and settlement flows against the Redis and Postgres ledgers.

Redis runs on fakeredis. Postgres needs a disposable database named by
``BIDBOARD_TEST_POSTGRES_DSN`` and is skipped without one.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from decimal import Decimal
from types import SimpleNamespace

import fakeredis
import pytest
import pytest_asyncio

from bidboard.bidding.service import BidService
from bidboard.errors import Conflict, Transient
from bidboard.ledger.models import (
    AuctionStatus,
    ItemChanges,
    NotificationType,
    PaymentStatus,
)
from bidboard.lifecycle.manager import AuctionLifecycleManager
from bidboard.notifications.dispatcher import NotificationDispatcher
from bidboard.settlement.service import ReconcileResult, SettlementService
from bidboard.storage.postgres import PostgresStorage
from bidboard.storage.redis import RedisStorage

from .conftest import DURING, END, make_items, open_auction

POSTGRES_DSN = os.environ.get("BIDBOARD_TEST_POSTGRES_DSN")


@pytest_asyncio.fixture(params=["redis", "postgres"])
async def ledger(request):
    if request.param == "redis":
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
        storage = RedisStorage(client=client, prefix="bidboard-test")
    else:
        if not POSTGRES_DSN:
            pytest.skip("BIDBOARD_TEST_POSTGRES_DSN is not set")
        storage = PostgresStorage(dsn=POSTGRES_DSN)
        # Earlier runs may leave an auction open; close it quietly so no winner mail goes out here.
        leftover = await storage.get_active_auction()
        if leftover is not None:
            await storage.end_auction(leftover.auction_id, leftover.end_time)
    yield storage
    await storage.close()


@pytest.fixture
def services(ledger, mailer, processor):
    dispatcher = NotificationDispatcher(ledger, mailer, site_url="https://auction.example.org")
    retries = {"max_retries": 10, "retry_backoff_ms": 1}
    return SimpleNamespace(
        storage=ledger,
        dispatcher=dispatcher,
        bids=BidService(ledger, dispatcher, **retries),
        lifecycle=AuctionLifecycleManager(ledger, dispatcher, **retries),
        settlement=SettlementService(
            ledger, processor, currency="usd", fee_rate=Decimal("0.029"), fixed_fee=30, **retries
        ),
    )


@pytest.mark.asyncio
async def test_concurrent_bids_leave_one_winning_entry(services):
    _, items = await open_auction(services.lifecycle)
    item_id = items[0].item_id
    amounts = [1500, 2000, 2500, 3000, 3500]

    results = await asyncio.gather(
        *(
            services.bids.place_bid(item_id, f"Bidder {n}", f"bidder{n}@example.org", amount, now=DURING)
            for n, amount in enumerate(amounts)
        ),
        return_exceptions=True,
    )
    await services.dispatcher.drain()

    failures = [result for result in results if isinstance(result, Exception)]
    assert all(isinstance(failure, (Conflict, Transient)) for failure in failures)
    accepted = [amount for amount, result in zip(amounts, results) if not isinstance(result, Exception)]
    assert accepted

    item = await services.storage.get_item(item_id)
    history = await services.storage.bid_history(item_id, include_winning=True)
    winning = [entry for entry in history if entry.is_winning_bid]
    assert item.current_bid == max(accepted)
    assert len(winning) == 1
    assert winning[0].amount == item.current_bid
    assert sorted(entry.amount for entry in history) == sorted(accepted)


@pytest.mark.asyncio
async def test_concurrent_auction_starts_leave_one_active(services):
    (first, _), (second, _) = await asyncio.gather(
        open_auction(services.lifecycle),
        open_auction(services.lifecycle, holiday_name="Easter 2027"),
    )
    await services.dispatcher.drain()

    auctions = await services.storage.list_auctions()
    active = [auction for auction in auctions if auction.status is AuctionStatus.ACTIVE]
    assert len(active) == 1
    assert active[0].auction_id in {first.auction_id, second.auction_id}
    assert (await services.storage.get_active_auction()).auction_id == active[0].auction_id


@pytest.mark.asyncio
async def test_end_auction_is_idempotent_and_mails_each_winner_once(services, mailer):
    auction, items = await open_auction(services.lifecycle)
    await services.bids.place_bid(items[0].item_id, "Ada", "ada@example.org", 1500, now=DURING)
    await services.bids.place_bid(items[2].item_id, "Grace", "grace@example.org", 6000, now=DURING)

    results = await asyncio.gather(
        services.lifecycle.end_auction(auction.auction_id, now=END),
        services.lifecycle.end_auction(auction.auction_id, now=END),
        services.lifecycle.end_auction(auction.auction_id, now=END),
    )
    await services.dispatcher.drain()

    assert sum(result.transitioned for result in results) == 1
    assert all(result.auction.status is AuctionStatus.ENDED for result in results)
    assert sorted(message.to for message in mailer.outbox) == ["ada@example.org", "grace@example.org"]
    winners = [
        entry
        for entry in await services.storage.list_notifications()
        if entry.notification_type is NotificationType.WINNER and entry.scope_key == auction.auction_id
    ]
    assert len(winners) == 2


@pytest.mark.asyncio
async def test_payment_callbacks_settle_once(services):
    auction, items = await open_auction(services.lifecycle)
    await services.bids.place_bid(items[0].item_id, "Ada", "ada@example.org", 1500, now=DURING)
    await services.lifecycle.end_auction(auction.auction_id, now=END)
    await services.dispatcher.drain()
    request = await services.settlement.create_payment_request([items[0].item_id], "ada@example.org")

    outcomes = await asyncio.gather(
        services.settlement.reconcile_callback(request.payment_reference, PaymentStatus.SUCCEEDED),
        services.settlement.reconcile_callback(request.payment_reference, PaymentStatus.SUCCEEDED),
        services.settlement.reconcile_callback(request.payment_reference, PaymentStatus.FAILED, "late"),
    )

    results = [result for _, result in outcomes]
    assert results.count(ReconcileResult.APPLIED) == 1
    record = await services.storage.get_payment(request.payment_reference)
    assert record.status in (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED)
    assert (await services.storage.get_item(items[0].item_id)).is_paid is (
        record.status is PaymentStatus.SUCCEEDED
    )


@pytest.mark.asyncio
async def test_notification_claims_record_one_entry(services):
    auction, _ = await open_auction(services.lifecycle)
    scope = auction.auction_id

    claims = await asyncio.gather(
        *(
            services.storage.claim_notification("ada@example.org", NotificationType.WINNER, scope, END)
            for _ in range(4)
        )
    )

    assert claims.count(True) == 1
    entries = [
        entry
        for entry in await services.storage.list_notifications()
        if entry.scope_key == scope and entry.recipient == "ada@example.org"
    ]
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_item_edits(services):
    auction, items = await open_auction(services.lifecycle)
    await services.bids.place_bid(items[0].item_id, "Ada", "ada@example.org", 1500, now=DURING)

    added = await services.lifecycle.add_item(auction.auction_id, replace(make_items()[0], title="Wreath"))
    moved = await services.lifecycle.update_item(items[1].item_id, ItemChanges(starting_bid=4000))
    with pytest.raises(Conflict):
        await services.lifecycle.update_item(items[0].item_id, ItemChanges(starting_bid=2000))
    with pytest.raises(Conflict):
        await services.lifecycle.delete_item(items[0].item_id)
    await services.lifecycle.delete_item(items[2].item_id)

    assert added.display_order == 4
    assert moved.current_bid == 4000
    listed = await services.storage.list_items(auction.auction_id)
    assert [item.item_id for item in listed] == [items[0].item_id, items[1].item_id, added.item_id]
    assert (await services.storage.get_item(items[0].item_id)).starting_bid == 1000
