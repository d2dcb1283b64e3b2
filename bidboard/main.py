from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from jsonschema import ValidationError

from .admin import auctions as admin_auctions
from .admin import config as admin_config
from .admin import health as admin_health
from .admin import payments as admin_payments
from .admin import stats as admin_stats
from .bidding.service import BidService
from .config import ServerConfig, get_server_config
from .errors import LedgerError
from .ledger.billing import to_minor_units
from .lifecycle.manager import AuctionLifecycleManager
from .notifications.dispatcher import NotificationDispatcher
from .notifications.mailer import build_mailer
from .presenters import auction_view, history_view, holding_view, item_view, payment_view
from .settlement.processor import build_processor
from .settlement.service import SettlementService
from .storage import build_storage
from .transport.http_errors import to_http
from .transport.signatures import SignatureError, verify_signature
from .transport.webhooks import parse_event
from .validation.validator import SchemaRegistry, get_schema_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    schema_registry = get_schema_registry()
    storage = build_storage(server_config)
    mailer = build_mailer(server_config.notifications)
    dispatcher = NotificationDispatcher(
        storage,
        mailer,
        site_url=server_config.notifications.site_url,
    )
    processor = build_processor(server_config.settlement)
    retries = {
        "max_retries": server_config.ledger.max_retries,
        "retry_backoff_ms": server_config.ledger.retry_backoff_ms,
    }
    bid_service = BidService(storage, dispatcher, **retries)
    lifecycle = AuctionLifecycleManager(storage, dispatcher, **retries)
    settlement = SettlementService(
        storage,
        processor,
        currency=server_config.settlement.currency,
        fee_rate=server_config.settlement.fee_rate,
        fixed_fee=server_config.settlement.fixed_fee_cents,
        **retries,
    )

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.storage = storage
    app.state.mailer = mailer
    app.state.dispatcher = dispatcher
    app.state.processor = processor
    app.state.bid_service = bid_service
    app.state.lifecycle = lifecycle
    app.state.settlement = settlement
    app.state.start_time = datetime.now(timezone.utc)

    yield

    await dispatcher.drain()
    await processor.close()
    await mailer.close()
    await storage.close()


app = FastAPI(
    title="Bidboard Auction Server",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)
app.include_router(admin_config.router)
app.include_router(admin_auctions.router)
app.include_router(admin_payments.router)


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_bid_service(request: Request) -> BidService:
    return request.app.state.bid_service


def get_lifecycle(request: Request) -> AuctionLifecycleManager:
    return request.app.state.lifecycle


def get_settlement(request: Request) -> SettlementService:
    return request.app.state.settlement


def validate_payload(schemas: SchemaRegistry, schema_name: str, payload: Any) -> None:
    try:
        schemas.validate(schema_name, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc


def amount_in_cents(value: Any) -> int:
    try:
        return to_minor_units(value)
    except LedgerError as exc:
        raise to_http(exc) from exc


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "bidboard",
        "version": app.version,
        "ledger_backend": settings.ledger.backend,
        "currency": settings.settlement.currency,
    }


@app.get("/auctions/active", tags=["auctions"])
async def active_auction(
    lifecycle: AuctionLifecycleManager = Depends(get_lifecycle),
) -> dict[str, Any]:
    auction = await lifecycle.active_auction()
    if auction is None:
        return {"auction": None, "accepting_bids": False, "items": []}
    items = await lifecycle.auction_items(auction.auction_id)
    return {
        "auction": auction_view(auction),
        "accepting_bids": auction.accepts_bids(datetime.now(timezone.utc)),
        "items": [item_view(item) for item in items],
    }


@app.post("/bids", tags=["bidding"])
async def place_bid(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    service: BidService = Depends(get_bid_service),
) -> dict[str, Any]:
    validate_payload(schemas, "bid_request", payload)
    amount = amount_in_cents(payload["amount"])
    try:
        receipt = await service.place_bid(
            payload["item_id"],
            payload["full_name"],
            payload["email"],
            amount,
        )
    except LedgerError as exc:
        raise to_http(exc) from exc
    return {
        "success": True,
        "item_id": receipt.item_id,
        "current_bid_cents": receipt.current_bid,
    }


@app.get("/items/{item_id}/history", tags=["bidding"])
async def bid_history(
    item_id: str,
    limit: int = Query(5, ge=1, le=50),
    service: BidService = Depends(get_bid_service),
) -> list[dict[str, Any]]:
    try:
        entries = await service.bid_history(item_id, limit=limit)
    except LedgerError as exc:
        raise to_http(exc) from exc
    return [history_view(entry) for entry in entries]


@app.get("/bidders/unpaid-items", tags=["settlement"])
async def unpaid_items(
    email: str = Query(...),
    settlement: SettlementService = Depends(get_settlement),
) -> list[dict[str, Any]]:
    try:
        holdings = await settlement.unpaid_items(email)
    except LedgerError as exc:
        raise to_http(exc) from exc
    return [holding_view(holding) for holding in holdings]


@app.post("/payments", tags=["settlement"], status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    settlement: SettlementService = Depends(get_settlement),
) -> dict[str, Any]:
    validate_payload(schemas, "payment_request", payload)
    try:
        request = await settlement.create_payment_request(
            payload["item_ids"],
            payload["email"],
            payload.get("cover_fee", True),
        )
    except LedgerError as exc:
        raise to_http(exc) from exc
    return {
        "payment_reference": request.payment_reference,
        "client_secret": request.client_secret,
        "amount_due_cents": request.amount_due,
        "currency": request.currency,
        "breakdown": request.breakdown.as_metadata(),
    }


@app.post("/payments/webhook", tags=["settlement"])
async def payment_webhook(
    request: Request,
    settings: ServerConfig = Depends(get_server_settings),
    settlement: SettlementService = Depends(get_settlement),
) -> dict[str, Any]:
    body = await request.body()
    secret = settings.webhooks.signing_secret
    if secret:
        try:
            verify_signature(
                body,
                request.headers.get("stripe-signature", ""),
                secret,
                tolerance_seconds=settings.webhooks.tolerance_seconds,
            )
        except SignatureError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        event = parse_event(body)
    except LedgerError as exc:
        raise to_http(exc) from exc
    if event.outcome is None:
        logger.debug("ignoring processor event %s", event.event_type)
        return {"received": True, "handled": False}
    try:
        record, result = await settlement.reconcile_callback(
            event.payment_reference,
            event.outcome,
            event.failure_reason,
        )
    except LedgerError as exc:
        raise to_http(exc) from exc
    return {
        "received": True,
        "handled": True,
        "result": result.value,
        "payment": payment_view(record),
    }
