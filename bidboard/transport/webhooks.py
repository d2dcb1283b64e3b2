"""Decoding of processor webhook events into reconciliation outcomes."""

from __future__ import annotations

from dataclasses import dataclass

import orjson

from ..errors import ValidationError
from ..ledger.models import PaymentStatus

_OUTCOMES = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
}


@dataclass(frozen=True)
class ProcessorEvent:
    event_id: str | None
    event_type: str
    payment_reference: str | None
    outcome: PaymentStatus | None
    failure_reason: str | None = None


def parse_event(body: bytes) -> ProcessorEvent:
    try:
        event = orjson.loads(body)
    except orjson.JSONDecodeError as exc:
        raise ValidationError("webhook body is not valid JSON") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise ValidationError("webhook event type missing")
    event_type = event["type"]
    outcome = _OUTCOMES.get(event_type)
    if outcome is None:
        return ProcessorEvent(event.get("id"), event_type, None, None)
    intent = (event.get("data") or {}).get("object") or {}
    reference = intent.get("id") if isinstance(intent, dict) else None
    if not isinstance(reference, str) or not reference:
        raise ValidationError("webhook event carries no payment intent id")
    failure_reason = None
    if outcome is PaymentStatus.FAILED:
        error = intent.get("last_payment_error") or {}
        failure_reason = error.get("message") if isinstance(error, dict) else None
        failure_reason = failure_reason or "Unknown error"
    return ProcessorEvent(event.get("id"), event_type, reference, outcome, failure_reason)
