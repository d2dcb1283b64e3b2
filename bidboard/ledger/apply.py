"""Ledger mutations shared by every storage backend.

Backends own locking and persistence; the functions here decide what a
mutation looks like once the backend holds a fresh view of the rows it is
about to write.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime

from ..errors import AuctionNotActive, BidTooLow, Conflict
from .fsm import AuctionEvent, PaymentEvent, auction_transition, is_terminal, payment_transition
from .models import (
    Auction,
    AuctionItem,
    Bidder,
    BidHistoryEntry,
    ItemChanges,
    NewItem,
    PaymentRecord,
    PaymentStatus,
)


def new_id() -> str:
    return uuid.uuid4().hex


def check_bid(auction: Auction, item: AuctionItem, amount: int, now: datetime) -> None:
    if not auction.accepts_bids(now):
        raise AuctionNotActive(f"auction {auction.auction_id} is not accepting bids")
    if amount < item.minimum_next_bid:
        raise BidTooLow(item.minimum_next_bid)


def new_bidder(full_name: str, email: str) -> Bidder:
    return Bidder(bidder_id=new_id(), full_name=full_name, email=email)


def accept_bid(
    item: AuctionItem,
    bidder: Bidder,
    amount: int,
    now: datetime,
) -> tuple[AuctionItem, BidHistoryEntry]:
    updated = replace(item, current_bid=amount, current_bidder_id=bidder.bidder_id)
    entry = winning_entry(item.item_id, amount, bidder, now)
    return updated, entry


def winning_entry(item_id: str, amount: int, bidder: Bidder, now: datetime) -> BidHistoryEntry:
    return BidHistoryEntry(
        entry_id=new_id(),
        item_id=item_id,
        amount=amount,
        bidder_name=bidder.full_name,
        bidder_email=bidder.email,
        created_at=now,
        is_winning_bid=True,
    )


def outbid_email(previous: Bidder | None, current: Bidder) -> str | None:
    if previous is None or previous.email == current.email:
        return None
    return previous.email


def build_items(auction_id: str, items: list[NewItem]) -> list[AuctionItem]:
    return [
        AuctionItem(
            item_id=new_id(),
            auction_id=auction_id,
            title=item.title,
            service=item.service,
            honor=item.honor,
            description=item.description,
            starting_bid=item.starting_bid,
            minimum_increment=item.minimum_increment,
            current_bid=item.starting_bid,
            display_order=item.display_order,
        )
        for item in items
    ]


def next_display_order(items: list[AuctionItem]) -> int:
    return max((item.display_order for item in items), default=0) + 1


def edit_item(item: AuctionItem, changes: ItemChanges) -> AuctionItem:
    """Apply operator edits while keeping ``current_bid >= starting_bid``.

    An item nobody holds follows its starting bid. An item with a bidder keeps
    its current bid, so its starting bid cannot be raised above it.
    """
    fields = changes.provided()
    if "description" in fields:
        fields["description"] = fields["description"].strip() or None
    updated = replace(item, **fields)
    if updated.current_bidder_id is None:
        return replace(updated, current_bid=updated.starting_bid)
    if updated.starting_bid > updated.current_bid:
        raise Conflict(
            f"starting bid cannot exceed the current bid of ${updated.current_bid / 100:,.2f}"
        )
    return updated


def check_removable(item: AuctionItem) -> None:
    if item.current_bidder_id is not None:
        raise Conflict(f"item {item.item_id} has a bidder; reset its bid first")
    if item.is_paid:
        raise Conflict(f"item {item.item_id} is paid")


def end(auction: Auction, now: datetime) -> Auction:
    status = auction_transition(auction.status, AuctionEvent.ENDED)
    return replace(auction, status=status, ended_at=now)


def settle(
    record: PaymentRecord,
    outcome: PaymentStatus,
    failure_reason: str | None,
    now: datetime,
) -> PaymentRecord | None:
    """Return the settled record, or ``None`` when the record is already terminal."""
    if is_terminal(record.status):
        return None
    event = PaymentEvent.SUCCEEDED if outcome is PaymentStatus.SUCCEEDED else PaymentEvent.FAILED
    status = payment_transition(record.status, event)
    return replace(
        record,
        status=status,
        failure_reason=failure_reason if status is PaymentStatus.FAILED else None,
        updated_at=now,
    )
