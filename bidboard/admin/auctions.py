"""Operator routes: auction lifecycle, item edits and bid overrides."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from jsonschema import ValidationError

from ..bidding.service import BidService
from ..errors import LedgerError
from ..ledger.billing import to_minor_units
from ..ledger.models import ItemChanges, NewItem
from ..lifecycle.manager import AuctionLifecycleManager
from ..presenters import auction_view, item_view
from ..settlement.service import SettlementService
from ..storage import LedgerStorage
from ..transport.http_errors import to_http
from ..transport.timestamps import TimestampError, parse_timestamp
from ..validation.validator import SchemaRegistry

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_schemas(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def _get_lifecycle(request: Request) -> AuctionLifecycleManager:
    return request.app.state.lifecycle


def _get_bid_service(request: Request) -> BidService:
    return request.app.state.bid_service


def _get_settlement(request: Request) -> SettlementService:
    return request.app.state.settlement


def _get_storage(request: Request) -> LedgerStorage:
    return request.app.state.storage


def _validate(schemas: SchemaRegistry, schema_name: str, payload: Any) -> None:
    try:
        schemas.validate(schema_name, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc


def _new_item(raw: dict[str, Any]) -> NewItem:
    return NewItem(
        title=raw["title"],
        service=raw["service"],
        honor=raw["honor"],
        starting_bid=to_minor_units(raw["starting_bid"]),
        minimum_increment=to_minor_units(raw.get("minimum_increment", "1")),
        display_order=raw.get("display_order", 0),
        description=raw.get("description"),
    )


@router.get("/auctions")
async def auctions(storage: LedgerStorage = Depends(_get_storage)) -> list[dict[str, Any]]:
    return [auction_view(auction) for auction in await storage.list_auctions()]


@router.post("/auctions", status_code=status.HTTP_201_CREATED)
async def start_auction(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(_get_schemas),
    lifecycle: AuctionLifecycleManager = Depends(_get_lifecycle),
) -> dict[str, Any]:
    _validate(schemas, "start_auction_request", payload)
    try:
        start_time = parse_timestamp(payload["start_time"])
        end_time = parse_timestamp(payload["end_time"])
    except TimestampError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    try:
        items = [_new_item(raw) for raw in payload["items"]]
        auction, created = await lifecycle.start_auction(
            holiday_name=payload["holiday_name"],
            start_time=start_time,
            end_time=end_time,
            items=items,
            services=payload.get("services") or (),
        )
    except LedgerError as exc:
        raise to_http(exc) from exc
    return {"auction": auction_view(auction), "items": [item_view(item) for item in created]}


@router.post("/auctions/expire")
async def expire_auction(
    lifecycle: AuctionLifecycleManager = Depends(_get_lifecycle),
) -> dict[str, Any]:
    try:
        result = await lifecycle.expire_if_due()
    except LedgerError as exc:
        raise to_http(exc) from exc
    if result is None:
        return {"ended": False}
    return {"ended": result.transitioned, "auction": auction_view(result.auction)}


@router.post("/auctions/{auction_id}/end")
async def end_auction(
    auction_id: str,
    lifecycle: AuctionLifecycleManager = Depends(_get_lifecycle),
) -> dict[str, Any]:
    try:
        result = await lifecycle.end_auction(auction_id)
    except LedgerError as exc:
        raise to_http(exc) from exc
    return {"ended": result.transitioned, "auction": auction_view(result.auction)}


@router.post("/items/{item_id}/restore-bid")
async def restore_bid(
    item_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(_get_schemas),
    service: BidService = Depends(_get_bid_service),
) -> dict[str, Any]:
    _validate(schemas, "restore_bid_request", payload)
    try:
        item = await service.restore_bid(
            item_id,
            to_minor_units(payload["amount"]),
            payload["full_name"],
            payload["email"],
        )
    except LedgerError as exc:
        raise to_http(exc) from exc
    return item_view(item)


@router.post("/auctions/{auction_id}/items", status_code=status.HTTP_201_CREATED)
async def add_item(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(_get_schemas),
    lifecycle: AuctionLifecycleManager = Depends(_get_lifecycle),
) -> dict[str, Any]:
    _validate(schemas, "add_item_request", payload)
    try:
        item = await lifecycle.add_item(auction_id, _new_item(payload))
    except LedgerError as exc:
        raise to_http(exc) from exc
    return item_view(item)


@router.patch("/items/{item_id}")
async def update_item(
    item_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(_get_schemas),
    lifecycle: AuctionLifecycleManager = Depends(_get_lifecycle),
) -> dict[str, Any]:
    _validate(schemas, "update_item_request", payload)
    try:
        changes = ItemChanges(
            title=payload.get("title"),
            service=payload.get("service"),
            honor=payload.get("honor"),
            description=payload.get("description"),
            display_order=payload.get("display_order"),
        )
        for field in ("starting_bid", "minimum_increment"):
            if field in payload:
                setattr(changes, field, to_minor_units(payload[field]))
        item = await lifecycle.update_item(item_id, changes)
    except LedgerError as exc:
        raise to_http(exc) from exc
    return item_view(item)


@router.delete("/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_item(
    item_id: str,
    lifecycle: AuctionLifecycleManager = Depends(_get_lifecycle),
) -> None:
    try:
        await lifecycle.delete_item(item_id)
    except LedgerError as exc:
        raise to_http(exc) from exc


@router.post("/items/{item_id}/reset-bid")
async def reset_bid(
    item_id: str,
    service: BidService = Depends(_get_bid_service),
) -> dict[str, Any]:
    try:
        item = await service.reset_bid(item_id)
    except LedgerError as exc:
        raise to_http(exc) from exc
    return item_view(item)


@router.post("/items/{item_id}/mark-paid")
async def mark_paid(
    item_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(_get_schemas),
    settlement: SettlementService = Depends(_get_settlement),
) -> dict[str, Any]:
    _validate(schemas, "mark_paid_request", payload)
    try:
        item = await settlement.mark_paid(item_id, payload["is_paid"])
    except LedgerError as exc:
        raise to_http(exc) from exc
    return item_view(item)
