"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


@router.get("/config")
async def config(request: Request, config: ServerConfig = Depends(_get_config)) -> dict:
    # Credentials under backend options are never echoed back.
    settlement = config.settlement
    return {
        "version": request.app.version,
        "storage_backend": config.ledger.backend,
        "max_retries": config.ledger.max_retries,
        "currency": settlement.currency,
        "fee_rate": str(settlement.fee_rate),
        "fixed_fee_cents": settlement.fixed_fee_cents,
        "processor_backend": settlement.processor.backend,
        "mailer_backend": config.notifications.mailer.backend,
        "site_url": config.notifications.site_url,
        "webhook_signatures": bool(config.webhooks.signing_secret),
    }
