"""Operator view of payment records."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..ledger.models import PaymentStatus
from ..presenters import payment_view
from ..settlement.service import SettlementService

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_settlement(request: Request) -> SettlementService:
    return request.app.state.settlement


@router.get("/payments")
async def payments(
    status: str | None = Query(None),
    settlement: SettlementService = Depends(_get_settlement),
) -> list[dict[str, Any]]:
    try:
        wanted = PaymentStatus(status) if status else None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"unknown payment status {status!r}") from exc
    records = await settlement.list_payments(wanted)
    return [payment_view(record) for record in records]
