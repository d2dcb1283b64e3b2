"""Settlement: bill winners for their items and reconcile processor callbacks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from cryptography.hazmat.primitives import hashes

from ..errors import Conflict, Unauthorized, ValidationError
from ..ledger.billing import PaymentBreakdown, payment_breakdown
from ..ledger.models import AuctionItem, ItemHolding, PaymentRecord, PaymentStatus
from ..storage import LedgerStorage
from ..storage.retry import with_retries
from ..validation.fields import normalize_email, require_text
from .processor import PaymentProcessor

logger = logging.getLogger(__name__)


class ReconcileResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class PaymentRequest:
    payment_reference: str
    client_secret: str
    amount_due: int
    currency: str
    breakdown: PaymentBreakdown


def payment_idempotency_key(
    payer_email: str, item_ids: list[str], amount: int, currency: str, *, attempt: int = 0
) -> str:
    """Stable key for one payer paying one set of items at one amount.

    ``attempt`` counts earlier failed payments for the same request, so a
    retry after a failure opens a fresh intent instead of replaying the
    failed one.
    """
    digest = hashes.Hash(hashes.SHA256())
    material = "|".join((payer_email, ",".join(sorted(item_ids)), str(amount), currency, str(attempt)))
    digest.update(material.encode())
    return f"bidboard-{digest.finalize().hex()}"


class SettlementService:
    def __init__(
        self,
        storage: LedgerStorage,
        processor: PaymentProcessor,
        *,
        currency: str = "usd",
        fee_rate: Decimal = Decimal("0.029"),
        fixed_fee: int = 30,
        max_retries: int = 3,
        retry_backoff_ms: int = 25,
    ) -> None:
        self._storage = storage
        self._processor = processor
        self._currency = currency
        self._fee_rate = fee_rate
        self._fixed_fee = fixed_fee
        self._max_retries = max_retries
        self._retry_backoff_ms = retry_backoff_ms

    async def create_payment_request(
        self,
        item_ids: list[str],
        payer_email: str,
        cover_fee: bool = True,
        *,
        now: datetime | None = None,
    ) -> PaymentRequest:
        ids = list(dict.fromkeys(require_text(item_id, "item_id") for item_id in item_ids or []))
        if not ids:
            raise ValidationError("at least one item id is required")
        email = normalize_email(payer_email)
        holdings = await self._storage.get_holdings(ids)
        for holding in holdings:
            if holding.bidder is None or holding.bidder.email != email:
                raise Unauthorized("you do not hold every requested item")
            if holding.item.is_paid:
                raise Conflict(f"item {holding.item.item_id} is already paid")
        breakdown = payment_breakdown(
            [holding.item for holding in holdings],
            cover_fee=cover_fee,
            fee_rate=self._fee_rate,
            fixed_fee=self._fixed_fee,
        )
        if breakdown.total <= 0:
            raise ValidationError("nothing to pay for the requested items")
        auction_id = holdings[0].item.auction_id
        failed = [
            record
            for record in await self._storage.list_payments(PaymentStatus.FAILED)
            if record.payer_email == email and sorted(record.item_ids) == sorted(ids)
        ]
        intent = await self._processor.create_intent(
            breakdown.total,
            self._currency,
            metadata={
                "auction_id": auction_id,
                "item_ids": ",".join(ids),
                "bidder_email": email,
            },
            receipt_email=email,
            description=f"Auction payment for {len(ids)} item(s)",
            idempotency_key=payment_idempotency_key(
                email, ids, breakdown.total, self._currency, attempt=len(failed)
            ),
        )
        now = now or datetime.now(timezone.utc)
        record = PaymentRecord(
            payment_reference=intent.reference,
            item_ids=tuple(ids),
            payer_email=email,
            amount=breakdown.total,
            currency=self._currency,
            status=PaymentStatus.PENDING,
            metadata={**breakdown.as_metadata(), "auction_id": auction_id},
            created_at=now,
            updated_at=now,
        )

        async def attempt():
            return await self._storage.create_payment(record)

        await with_retries(attempt, attempts=self._max_retries, backoff_ms=self._retry_backoff_ms)
        logger.info(
            "payment %s pending for %s item(s), total=%s %s",
            intent.reference,
            len(ids),
            breakdown.total,
            self._currency,
        )
        return PaymentRequest(
            payment_reference=intent.reference,
            client_secret=intent.client_secret,
            amount_due=breakdown.total,
            currency=self._currency,
            breakdown=breakdown,
        )

    async def reconcile_callback(
        self,
        payment_reference: str,
        outcome: PaymentStatus,
        failure_reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> tuple[PaymentRecord, ReconcileResult]:
        """Apply a processor outcome once. Later deliveries for a settled record are no-ops."""
        payment_reference = require_text(payment_reference, "payment_reference")
        if outcome is PaymentStatus.PENDING:
            raise ValidationError("callback outcome must be succeeded or failed")
        if outcome is PaymentStatus.FAILED and not failure_reason:
            failure_reason = "Unknown error"

        async def attempt():
            return await self._storage.settle_payment(
                payment_reference,
                outcome,
                failure_reason,
                now or datetime.now(timezone.utc),
            )

        record, applied = await with_retries(
            attempt,
            attempts=self._max_retries,
            backoff_ms=self._retry_backoff_ms,
        )
        if not applied:
            logger.info(
                "duplicate %s callback for payment %s (already %s)",
                outcome.value,
                payment_reference,
                record.status.value,
            )
            return record, ReconcileResult.DUPLICATE
        if record.status is PaymentStatus.SUCCEEDED:
            logger.info("payment %s succeeded for items %s", payment_reference, list(record.item_ids))
        else:
            logger.warning("payment %s failed: %s", payment_reference, record.failure_reason)
        return record, ReconcileResult.APPLIED

    async def unpaid_items(self, email: str) -> list[ItemHolding]:
        return await self._storage.list_holdings(email=normalize_email(email), unpaid_only=True)

    async def mark_paid(self, item_id: str, is_paid: bool) -> AuctionItem:
        """Operator override for payments collected outside the processor."""

        async def attempt():
            return await self._storage.set_paid(item_id, is_paid)

        item = await with_retries(attempt, attempts=self._max_retries, backoff_ms=self._retry_backoff_ms)
        logger.info("item %s marked %s by operator", item_id, "paid" if is_paid else "unpaid")
        return item

    async def list_payments(self, status: PaymentStatus | None = None) -> list[PaymentRecord]:
        return await self._storage.list_payments(status)
