"""Bid acceptance: increments, concurrency, history and operator overrides."""

from __future__ import annotations

import asyncio

import pytest

from bidboard.errors import AuctionNotActive, BidTooLow, ItemNotFound, ValidationError

from .conftest import DURING, END, START, open_auction


@pytest.mark.asyncio
async def test_first_bid_must_clear_starting_bid_plus_increment(lifecycle, bid_service):
    _, items = await open_auction(lifecycle)
    flowers = items[0]

    with pytest.raises(BidTooLow) as excinfo:
        await bid_service.place_bid(flowers.item_id, "Ada", "ada@example.org", 1000, now=DURING)
    assert excinfo.value.minimum == 1500
    assert str(excinfo.value) == "bid must be at least $15.00"

    receipt = await bid_service.place_bid(flowers.item_id, "Ada", "ada@example.org", 1500, now=DURING)
    assert receipt.current_bid == 1500
    assert receipt.previous_bidder_email is None


@pytest.mark.asyncio
async def test_bid_equal_to_current_is_too_low(lifecycle, bid_service, storage):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id
    await bid_service.place_bid(item_id, "Ada", "ada@example.org", 2000, now=DURING)

    with pytest.raises(BidTooLow):
        await bid_service.place_bid(item_id, "Grace", "grace@example.org", 2000, now=DURING)

    item = await storage.get_item(item_id)
    assert item.current_bid == 2000


@pytest.mark.asyncio
async def test_outbid_scenario_updates_holder_and_history(lifecycle, bid_service, storage, dispatcher, mailer):
    _, items = await open_auction(lifecycle)
    item_id = items[1].item_id

    await bid_service.place_bid(item_id, "Ada", "ada@example.org", 2600, now=DURING)
    with pytest.raises(BidTooLow) as excinfo:
        await bid_service.place_bid(item_id, "Grace", "grace@example.org", 2650, now=DURING)
    assert excinfo.value.minimum == 2700
    receipt = await bid_service.place_bid(item_id, "Grace", "grace@example.org", 3000, now=DURING)
    await dispatcher.drain()

    assert receipt.previous_bidder_email == "ada@example.org"
    holding = (await storage.get_holdings([item_id]))[0]
    assert holding.item.current_bid == 3000
    assert holding.bidder.email == "grace@example.org"

    history = await bid_service.bid_history(item_id)
    assert [(entry.bidder_name, entry.amount) for entry in history] == [("Ada", 2600)]
    full = await storage.bid_history(item_id, include_winning=True)
    winning = [entry for entry in full if entry.is_winning_bid]
    assert len(winning) == 1
    assert winning[0].amount == 3000
    assert winning[0].bidder_email == "grace@example.org"

    assert [message.to for message in mailer.outbox] == ["ada@example.org"]
    assert "Sanctuary candles" in mailer.outbox[0].subject


@pytest.mark.asyncio
async def test_concurrent_bids_never_lose_an_update(lifecycle, bid_service, storage):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id
    amounts = [1500 + 500 * step for step in range(10)]

    results = await asyncio.gather(
        *(
            bid_service.place_bid(item_id, f"Bidder {amount}", f"b{amount}@example.org", amount, now=DURING)
            for amount in amounts
        ),
        return_exceptions=True,
    )

    accepted = [result for result in results if not isinstance(result, Exception)]
    rejected = [result for result in results if isinstance(result, Exception)]
    assert all(isinstance(error, BidTooLow) for error in rejected)
    assert accepted

    holding = (await storage.get_holdings([item_id]))[0]
    assert holding.item.current_bid == max(amounts)
    assert holding.bidder.email == f"b{max(amounts)}@example.org"
    history = await storage.bid_history(item_id, include_winning=True)
    assert len(history) == len(accepted)
    assert sum(1 for entry in history if entry.is_winning_bid) == 1


@pytest.mark.asyncio
async def test_concurrent_identical_bids_accept_exactly_one(lifecycle, bid_service, storage):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id

    results = await asyncio.gather(
        *(
            bid_service.place_bid(item_id, name, f"{name}@example.org", 2000, now=DURING)
            for name in ("ada", "grace", "linus", "barbara")
        ),
        return_exceptions=True,
    )

    assert sum(1 for result in results if not isinstance(result, Exception)) == 1
    assert sum(1 for result in results if isinstance(result, BidTooLow)) == 3
    assert (await storage.get_item(item_id)).current_bid == 2000


@pytest.mark.asyncio
async def test_bids_outside_window_are_rejected(lifecycle, bid_service):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id

    with pytest.raises(AuctionNotActive):
        await bid_service.place_bid(item_id, "Ada", "ada@example.org", 5000, now=END)
    with pytest.raises(AuctionNotActive):
        await bid_service.place_bid(item_id, "Ada", "ada@example.org", 5000, now=START.replace(year=2025))


@pytest.mark.asyncio
async def test_bid_on_ended_auction_is_rejected(lifecycle, bid_service, dispatcher):
    auction, items = await open_auction(lifecycle)
    await lifecycle.end_auction(auction.auction_id, now=DURING)
    await dispatcher.drain()

    with pytest.raises(AuctionNotActive):
        await bid_service.place_bid(items[0].item_id, "Ada", "ada@example.org", 5000, now=DURING)


@pytest.mark.asyncio
async def test_bid_input_is_validated(lifecycle, bid_service):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id

    with pytest.raises(ValidationError):
        await bid_service.place_bid(item_id, "Ada", "not-an-email", 5000, now=DURING)
    with pytest.raises(ValidationError):
        await bid_service.place_bid(item_id, "   ", "ada@example.org", 5000, now=DURING)
    with pytest.raises(ValidationError):
        await bid_service.place_bid(item_id, "Ada", "ada@example.org", 0, now=DURING)
    with pytest.raises(ItemNotFound):
        await bid_service.place_bid("missing", "Ada", "ada@example.org", 5000, now=DURING)


@pytest.mark.asyncio
async def test_emails_are_case_insensitive(lifecycle, bid_service, storage, dispatcher, mailer):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id

    await bid_service.place_bid(item_id, "Ada", "Ada@Example.org", 1500, now=DURING)
    receipt = await bid_service.place_bid(item_id, "Ada", "ada@example.org", 2000, now=DURING)
    await dispatcher.drain()

    assert receipt.previous_bidder_email is None
    assert mailer.outbox == []
    holding = (await storage.get_holdings([item_id]))[0]
    assert holding.bidder.email == "ada@example.org"


@pytest.mark.asyncio
async def test_outbid_message_sent_once_per_item(lifecycle, bid_service, dispatcher, mailer):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id

    await bid_service.place_bid(item_id, "Ada", "ada@example.org", 1500, now=DURING)
    await bid_service.place_bid(item_id, "Grace", "grace@example.org", 2000, now=DURING)
    await bid_service.place_bid(item_id, "Ada", "ada@example.org", 2500, now=DURING)
    await bid_service.place_bid(item_id, "Grace", "grace@example.org", 3000, now=DURING)
    await dispatcher.drain()

    recipients = sorted(message.to for message in mailer.outbox)
    assert recipients == ["ada@example.org", "grace@example.org"]


@pytest.mark.asyncio
async def test_restore_bid_sets_holder_and_appends_winning_entry(lifecycle, bid_service, storage):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id
    await bid_service.place_bid(item_id, "Ada", "ada@example.org", 4000, now=DURING)

    item = await bid_service.restore_bid(item_id, 3500, "Grace", "Grace@example.org", now=DURING)

    assert item.current_bid == 3500
    holding = (await storage.get_holdings([item_id]))[0]
    assert holding.bidder.email == "grace@example.org"
    history = await storage.bid_history(item_id, include_winning=True)
    assert len(history) == 2
    winning = [entry for entry in history if entry.is_winning_bid]
    assert [(entry.bidder_email, entry.amount) for entry in winning] == [("grace@example.org", 3500)]


@pytest.mark.asyncio
async def test_restore_bid_below_starting_bid_is_rejected(lifecycle, bid_service):
    _, items = await open_auction(lifecycle)

    with pytest.raises(ValidationError):
        await bid_service.restore_bid(items[0].item_id, 500, "Grace", "grace@example.org", now=DURING)


@pytest.mark.asyncio
async def test_reset_bid_clears_holder_and_winning_flag(lifecycle, bid_service, storage):
    _, items = await open_auction(lifecycle)
    item_id = items[0].item_id
    await bid_service.place_bid(item_id, "Ada", "ada@example.org", 4000, now=DURING)

    item = await bid_service.reset_bid(item_id, now=DURING)

    assert item.current_bid == item.starting_bid
    assert item.current_bidder_id is None
    history = await storage.bid_history(item_id, include_winning=True)
    assert [entry.is_winning_bid for entry in history] == [False]

    receipt = await bid_service.place_bid(item_id, "Grace", "grace@example.org", 1500, now=DURING)
    assert receipt.previous_bidder_email is None
