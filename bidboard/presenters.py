"""JSON views of ledger entities returned by the HTTP surface."""

from __future__ import annotations

from typing import Any

from .ledger.models import Auction, AuctionItem, BidHistoryEntry, ItemHolding, PaymentRecord


def auction_view(auction: Auction) -> dict[str, Any]:
    return {
        "auction_id": auction.auction_id,
        "holiday_name": auction.holiday_name,
        "start_time": auction.start_time.isoformat(),
        "end_time": auction.end_time.isoformat(),
        "status": auction.status.value,
        "services": list(auction.services),
        "ended_at": auction.ended_at.isoformat() if auction.ended_at else None,
    }


def item_view(item: AuctionItem) -> dict[str, Any]:
    return {
        "item_id": item.item_id,
        "auction_id": item.auction_id,
        "title": item.title,
        "service": item.service,
        "honor": item.honor,
        "description": item.description,
        "starting_bid_cents": item.starting_bid,
        "minimum_increment_cents": item.minimum_increment,
        "current_bid_cents": item.current_bid,
        "minimum_next_bid_cents": item.minimum_next_bid,
        "has_bidder": item.current_bidder_id is not None,
        "is_paid": item.is_paid,
        "display_order": item.display_order,
    }


def holding_view(holding: ItemHolding) -> dict[str, Any]:
    view = item_view(holding.item)
    if holding.bidder is not None:
        view["current_bidder"] = {
            "full_name": holding.bidder.full_name,
            "email": holding.bidder.email,
        }
    return view


def history_view(entry: BidHistoryEntry) -> dict[str, Any]:
    # E-mail addresses are kept off the public history panel.
    return {
        "bidder_name": entry.bidder_name or "Anonymous",
        "bid_amount_cents": entry.amount,
        "created_at": entry.created_at.isoformat(),
    }


def payment_view(record: PaymentRecord) -> dict[str, Any]:
    return {
        "payment_reference": record.payment_reference,
        "item_ids": list(record.item_ids),
        "payer_email": record.payer_email,
        "amount_cents": record.amount,
        "currency": record.currency,
        "status": record.status.value,
        "failure_reason": record.failure_reason,
        "metadata": record.metadata,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }
