"""Auction lifecycle: start (replacing any active auction), end exactly once, and edit items."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from ..errors import ValidationError
from ..ledger import apply
from ..ledger.models import Auction, AuctionItem, AuctionStatus, ItemChanges, NewItem
from ..notifications.dispatcher import NotificationDispatcher
from ..storage import LedgerStorage
from ..storage.retry import with_retries
from ..validation.fields import require_amount, require_increment, require_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndResult:
    auction: Auction
    transitioned: bool


class AuctionLifecycleManager:
    def __init__(
        self,
        storage: LedgerStorage,
        dispatcher: NotificationDispatcher,
        *,
        max_retries: int = 3,
        retry_backoff_ms: int = 25,
    ) -> None:
        self._storage = storage
        self._dispatcher = dispatcher
        self._max_retries = max_retries
        self._retry_backoff_ms = retry_backoff_ms

    async def start_auction(
        self,
        *,
        holiday_name: str,
        start_time: datetime,
        end_time: datetime,
        items: list[NewItem],
        services: Iterable[str] = (),
        now: datetime | None = None,
    ) -> tuple[Auction, list[AuctionItem]]:
        """Create a new active auction with its items in one ledger transaction.

        Any auction that is still active is ended in the same transaction, and
        its winners are notified once the new auction is committed.
        """
        holiday_name = require_text(holiday_name, "holiday_name")
        _check_window(start_time, end_time)
        if not items:
            raise ValidationError("at least one item is required")
        for index, item in enumerate(items):
            _check_item(item, f"items[{index}]")
        labels = _ordered_labels(services) or _ordered_labels(item.service for item in items)
        created_at = now or datetime.now(timezone.utc)
        auction = Auction(
            auction_id=apply.new_id(),
            holiday_name=holiday_name,
            start_time=start_time,
            end_time=end_time,
            status=AuctionStatus.ACTIVE,
            services=labels,
            created_at=created_at,
        )
        auction_items = apply.build_items(auction.auction_id, items)

        async def attempt():
            return await self._storage.start_auction(auction, auction_items)

        replaced = await with_retries(
            attempt,
            attempts=self._max_retries,
            backoff_ms=self._retry_backoff_ms,
        )
        logger.info(
            "auction %s started with %s items (ends %s)",
            auction.auction_id,
            len(auction_items),
            end_time.isoformat(),
        )
        if replaced is not None:
            logger.info("auction %s ended by new auction %s", replaced.auction_id, auction.auction_id)
            self._dispatcher.schedule(self._dispatcher.notify_winners(replaced.auction_id))
        return auction, auction_items

    async def end_auction(self, auction_id: str, *, now: datetime | None = None) -> EndResult:
        """End ``auction_id``. Ending an already-ended auction is a no-op.

        Winner notifications are scheduled on every call; the notification log
        keeps them to one message per winner.
        """

        async def attempt():
            return await self._storage.end_auction(auction_id, now or datetime.now(timezone.utc))

        auction, transitioned = await with_retries(
            attempt,
            attempts=self._max_retries,
            backoff_ms=self._retry_backoff_ms,
        )
        if transitioned:
            logger.info("auction %s ended", auction_id)
        self._dispatcher.schedule(self._dispatcher.notify_winners(auction_id))
        return EndResult(auction=auction, transitioned=transitioned)

    async def expire_if_due(self, *, now: datetime | None = None) -> EndResult | None:
        now = now or datetime.now(timezone.utc)
        auction = await self._storage.get_active_auction()
        if auction is None or now < auction.end_time:
            return None
        return await self.end_auction(auction.auction_id, now=now)

    async def active_auction(self) -> Auction | None:
        return await self._storage.get_active_auction()

    async def auction_items(self, auction_id: str) -> list[AuctionItem]:
        return await self._storage.list_items(auction_id)

    async def add_item(self, auction_id: str, item: NewItem) -> AuctionItem:
        """Append ``item`` to an existing auction after its current last item."""
        _check_item(item, "item")
        (created,) = apply.build_items(auction_id, [item])

        async def attempt():
            return await self._storage.add_item(created)

        stored = await with_retries(
            attempt,
            attempts=self._max_retries,
            backoff_ms=self._retry_backoff_ms,
        )
        logger.info("item %s added to auction %s", stored.item_id, auction_id)
        return stored

    async def update_item(self, item_id: str, changes: ItemChanges) -> AuctionItem:
        changes = _check_changes(changes)

        async def attempt():
            return await self._storage.update_item(item_id, changes)

        updated = await with_retries(
            attempt,
            attempts=self._max_retries,
            backoff_ms=self._retry_backoff_ms,
        )
        logger.info("item %s updated (%s)", item_id, ", ".join(sorted(changes.provided())))
        return updated

    async def delete_item(self, item_id: str) -> None:
        async def attempt():
            return await self._storage.delete_item(item_id)

        await with_retries(
            attempt,
            attempts=self._max_retries,
            backoff_ms=self._retry_backoff_ms,
        )
        logger.info("item %s deleted", item_id)


def _check_window(start_time: datetime, end_time: datetime) -> None:
    if start_time.tzinfo is None or end_time.tzinfo is None:
        raise ValidationError("start_time and end_time must include a timezone")
    if end_time <= start_time:
        raise ValidationError("start_time must be before end_time")


def _check_item(item: NewItem, label: str) -> None:
    for field in ("title", "service", "honor"):
        require_text(getattr(item, field), f"{label}.{field}")
    require_amount(item.starting_bid, f"{label}.starting_bid", minimum=0)
    require_increment(item.minimum_increment, f"{label}.minimum_increment")


def _check_changes(changes: ItemChanges) -> ItemChanges:
    provided = changes.provided()
    if not provided:
        raise ValidationError("no item changes supplied")
    for field in ("title", "service", "honor"):
        if field in provided:
            provided[field] = require_text(provided[field], field)
    if "starting_bid" in provided:
        require_amount(provided["starting_bid"], "starting_bid", minimum=0)
    if "minimum_increment" in provided:
        require_increment(provided["minimum_increment"])
    order = provided.get("display_order")
    if order is not None and (isinstance(order, bool) or not isinstance(order, int) or order < 0):
        raise ValidationError("display_order must be a non-negative integer")
    return ItemChanges(**provided)


def _ordered_labels(labels: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for label in labels:
        label = (label or "").strip()
        if label:
            seen.setdefault(label, None)
    return tuple(seen)
