"""Shared fixtures: an in-memory ledger wired to local mail and payment stand-ins."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from bidboard.bidding.service import BidService
from bidboard.ledger.models import NewItem
from bidboard.lifecycle.manager import AuctionLifecycleManager
from bidboard.notifications.dispatcher import NotificationDispatcher
from bidboard.notifications.mailer import LocalMailer
from bidboard.settlement.processor import LocalProcessor
from bidboard.settlement.service import SettlementService
from bidboard.storage.in_memory import InMemoryStorage

START = datetime(2026, 12, 1, 18, 0, tzinfo=timezone.utc)
END = START + timedelta(days=7)
DURING = START + timedelta(hours=1)


def make_items() -> list[NewItem]:
    return [
        NewItem(
            title="Altar flowers",
            service="Christmas Eve 5pm",
            honor="In memory of",
            starting_bid=1000,
            minimum_increment=500,
            display_order=1,
        ),
        NewItem(
            title="Sanctuary candles",
            service="Christmas Eve 5pm",
            honor="In honor of",
            starting_bid=2500,
            minimum_increment=100,
            display_order=2,
        ),
        NewItem(
            title="Choir anthem",
            service="Christmas Day 10am",
            honor="In thanksgiving for",
            starting_bid=5000,
            minimum_increment=1000,
            display_order=3,
        ),
    ]


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def mailer():
    return LocalMailer()


@pytest.fixture
def processor():
    return LocalProcessor()


@pytest.fixture
def dispatcher(storage, mailer):
    return NotificationDispatcher(storage, mailer, site_url="https://auction.example.org")


@pytest.fixture
def bid_service(storage, dispatcher):
    return BidService(storage, dispatcher, max_retries=2, retry_backoff_ms=1)


@pytest.fixture
def lifecycle(storage, dispatcher):
    return AuctionLifecycleManager(storage, dispatcher, max_retries=2, retry_backoff_ms=1)


@pytest.fixture
def settlement(storage, processor):
    return SettlementService(
        storage,
        processor,
        currency="usd",
        fee_rate=Decimal("0.029"),
        fixed_fee=30,
        max_retries=2,
        retry_backoff_ms=1,
    )


async def open_auction(lifecycle, *, holiday_name="Christmas 2026", now=START):
    return await lifecycle.start_auction(
        holiday_name=holiday_name,
        start_time=START,
        end_time=END,
        items=make_items(),
        now=now,
    )
