"""Operational stats endpoint."""

from __future__ import annotations

from collections import Counter
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from ..errors import LedgerError
from ..ledger.models import AuctionItem, ItemHolding
from ..storage import LedgerStorage
from ..transport.http_errors import to_http

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_storage(request: Request) -> LedgerStorage:
    return request.app.state.storage


@router.get("/stats")
async def stats(
    auction_id: str | None = Query(None),
    storage: LedgerStorage = Depends(_get_storage),
) -> dict[str, Any]:
    if auction_id is None:
        auction = await storage.get_active_auction()
        auction_id = auction.auction_id if auction else None
    items: list[AuctionItem] = []
    holdings: list[ItemHolding] = []
    if auction_id:
        try:
            items = await storage.list_items(auction_id)
            # Only items with a current bidder count as bid on, whatever their price.
            holdings = await storage.list_holdings(auction_id=auction_id)
        except LedgerError as exc:
            raise to_http(exc) from exc
    paid = [holding for holding in holdings if holding.item.is_paid]

    items_by_service: Counter[str] = Counter(item.service for item in items)
    payments = await storage.list_payments()
    payments_by_status: Counter[str] = Counter(record.status.value for record in payments)
    notifications = await storage.list_notifications()
    notifications_by_status: Counter[str] = Counter(entry.status.value for entry in notifications)

    return {
        "auction_id": auction_id,
        "total_items": len(items),
        "items_with_bids": len(holdings),
        "items_without_bids": len(items) - len(holdings),
        "paid_items": len(paid),
        "unpaid_items": len(holdings) - len(paid),
        "total_committed_cents": sum(holding.item.current_bid for holding in holdings),
        "total_collected_cents": sum(holding.item.current_bid for holding in paid),
        "unique_bidders": len({holding.bidder.email for holding in holdings}),
        "items_by_service": dict(items_by_service),
        "payments_by_status": dict(payments_by_status),
        "notifications_by_status": dict(notifications_by_status),
    }
