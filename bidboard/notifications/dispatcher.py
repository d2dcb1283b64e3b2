"""Outbid and winner notifications with at-most-once bookkeeping.

The ledger's notification log is the dedup signal: a dispatch first claims
``(recipient, type, scope)`` with an atomic insert and only the claimant
sends. Failed sends stay in the log as ``failed`` so repeated triggers do not
resend.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable

from ..ledger.models import AuctionItem, NotificationStatus, NotificationType
from ..storage import LedgerStorage
from .mailer import Mailer, MailerError
from .templates import render

logger = logging.getLogger(__name__)


class NotifyResult(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class NotificationDispatcher:
    def __init__(self, storage: LedgerStorage, mailer: Mailer, *, site_url: str) -> None:
        self._storage = storage
        self._mailer = mailer
        self._site_url = site_url
        self._pending: set[asyncio.Task] = set()

    async def notify(
        self,
        notification_type: NotificationType,
        scope_key: str,
        recipient: str,
        payload: dict[str, Any],
    ) -> NotifyResult:
        claimed = await self._storage.claim_notification(
            recipient, notification_type, scope_key, datetime.now(timezone.utc)
        )
        if not claimed:
            logger.info(
                "skipping duplicate %s notification to %s (scope=%s)",
                notification_type.value,
                recipient,
                scope_key,
            )
            return NotifyResult.SKIPPED
        message = render(notification_type, recipient, payload, self._site_url)
        try:
            await self._mailer.send(message)
        except MailerError as exc:
            logger.warning("%s notification to %s failed: %s", notification_type.value, recipient, exc)
            await self._storage.finish_notification(
                recipient,
                notification_type,
                scope_key,
                NotificationStatus.FAILED,
                datetime.now(timezone.utc),
                error=str(exc),
            )
            return NotifyResult.FAILED
        await self._storage.finish_notification(
            recipient,
            notification_type,
            scope_key,
            NotificationStatus.SENT,
            datetime.now(timezone.utc),
        )
        return NotifyResult.SENT

    async def notify_outbid(
        self,
        item: AuctionItem,
        recipient: str,
        *,
        new_bid: int,
        new_bidder_name: str,
    ) -> NotifyResult:
        return await self.notify(
            NotificationType.OUTBID,
            item.item_id,
            recipient,
            {
                "item_id": item.item_id,
                "item_title": item.title,
                "new_bid": new_bid,
                "new_bidder_name": new_bidder_name,
            },
        )

    async def notify_winners(self, auction_id: str) -> dict[str, NotifyResult]:
        """Send one message per winner of ``auction_id`` listing everything they won."""
        holdings = await self._storage.list_holdings(auction_id=auction_id)
        winners: dict[str, dict[str, Any]] = {}
        for holding in holdings:
            if holding.bidder is None:
                continue
            entry = winners.setdefault(
                holding.bidder.email,
                {"name": holding.bidder.full_name, "items": [], "total": 0},
            )
            entry["items"].append({"title": holding.item.title, "amount": holding.item.current_bid})
            entry["total"] += holding.item.current_bid
        results = {}
        for email, payload in winners.items():
            results[email] = await self.notify(NotificationType.WINNER, auction_id, email, payload)
        logger.info("winner notifications for auction %s: %s", auction_id, results)
        return results

    def schedule(self, dispatch: Awaitable[Any]) -> asyncio.Task:
        """Run ``dispatch`` in the background; its failure is logged, never raised."""
        task = asyncio.create_task(self._run_guarded(dispatch))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def _run_guarded(self, dispatch: Awaitable[Any]) -> Any:
        try:
            return await dispatch
        except Exception as exc:
            logger.error(f"Background notification dispatch failed: {exc}", exc_info=True)
            return None
