"""Bid acceptance: validate, apply atomically, then notify the outbid bidder."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from ..ledger.models import AuctionItem, BidHistoryEntry
from ..notifications.dispatcher import NotificationDispatcher
from ..storage import LedgerStorage
from ..storage.retry import with_retries
from ..validation.fields import normalize_email, require_amount, require_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BidReceipt:
    item_id: str
    current_bid: int
    bidder_email: str
    previous_bidder_email: str | None = None


class BidService:
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

    async def place_bid(
        self,
        item_id: str,
        bidder_name: str,
        bidder_email: str,
        amount: int,
        *,
        now: datetime | None = None,
    ) -> BidReceipt:
        item_id = require_text(item_id, "item_id")
        name = require_text(bidder_name, "full_name")
        email = normalize_email(bidder_email)
        amount = require_amount(amount)

        async def attempt():
            return await self._storage.apply_bid(
                item_id,
                bidder_name=name,
                bidder_email=email,
                amount=amount,
                now=now or datetime.now(timezone.utc),
            )

        outcome = await with_retries(
            attempt,
            attempts=self._max_retries,
            backoff_ms=self._retry_backoff_ms,
        )
        logger.info("bid accepted item=%s amount=%s bidder=%s", item_id, amount, email)
        if outcome.previous_bidder_email:
            self._dispatcher.schedule(
                self._dispatcher.notify_outbid(
                    outcome.item,
                    outcome.previous_bidder_email,
                    new_bid=amount,
                    new_bidder_name=name,
                )
            )
        return BidReceipt(
            item_id=item_id,
            current_bid=outcome.item.current_bid,
            bidder_email=email,
            previous_bidder_email=outcome.previous_bidder_email,
        )

    async def bid_history(self, item_id: str, *, limit: int = 5) -> list[BidHistoryEntry]:
        """Most recent outbid entries for ``item_id``, newest first."""
        return await self._storage.bid_history(item_id, limit=limit)

    async def restore_bid(
        self,
        item_id: str,
        amount: int,
        bidder_name: str,
        bidder_email: str,
        *,
        now: datetime | None = None,
    ) -> AuctionItem:
        """Operator override: make ``bidder_email`` the holder at ``amount``.

        History is never edited; the restored bid is appended as the new
        winning entry.
        """
        name = require_text(bidder_name, "full_name")
        email = normalize_email(bidder_email)
        item = await self._storage.get_item(item_id)
        amount = require_amount(amount, minimum=item.starting_bid)
        return await self._override(item_id, amount, name, email, now)

    async def reset_bid(self, item_id: str, *, now: datetime | None = None) -> AuctionItem:
        """Operator override: return the item to its starting bid with no holder."""
        item = await self._storage.get_item(item_id)
        return await self._override(item_id, item.starting_bid, None, None, now)

    async def _override(
        self,
        item_id: str,
        amount: int,
        name: str | None,
        email: str | None,
        now: datetime | None,
    ) -> AuctionItem:
        async def attempt():
            return await self._storage.override_bid(
                item_id,
                amount=amount,
                bidder_name=name,
                bidder_email=email,
                now=now or datetime.now(timezone.utc),
            )

        item = await with_retries(
            attempt,
            attempts=self._max_retries,
            backoff_ms=self._retry_backoff_ms,
        )
        logger.info("bid overridden item=%s amount=%s bidder=%s", item_id, amount, email)
        return item
