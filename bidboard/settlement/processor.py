"""Payment processor clients used to open payment intents."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import SettlementConfig
from ..errors import ProcessorError, Transient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    reference: str
    client_secret: str
    amount: int
    currency: str


class PaymentProcessor:
    async def create_intent(
        self,
        amount: int,
        currency: str,
        *,
        metadata: dict[str, str],
        receipt_email: str,
        description: str,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:  # pragma: no cover - protocol
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LocalProcessor(PaymentProcessor):
    """In-process stand-in for the processor; callbacks are delivered by hand."""

    def __init__(self) -> None:
        self.intents: list[tuple[PaymentIntent, dict[str, str]]] = []
        self._by_key: dict[str, PaymentIntent] = {}

    async def create_intent(
        self,
        amount: int,
        currency: str,
        *,
        metadata: dict[str, str],
        receipt_email: str,
        description: str,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        reference = f"pi_local_{uuid.uuid4().hex}"
        intent = PaymentIntent(
            reference=reference,
            client_secret=f"{reference}_secret_{uuid.uuid4().hex[:16]}",
            amount=amount,
            currency=currency,
        )
        self.intents.append((intent, dict(metadata)))
        if idempotency_key is not None:
            self._by_key[idempotency_key] = intent
        logger.info("[local-processor] intent=%s amount=%s %s", reference, amount, currency)
        return intent


class StripeProcessor(PaymentProcessor):
    """PaymentIntents over the Stripe REST API, optionally on a connected account."""

    def __init__(
        self,
        options: dict[str, Any],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        api_key = options.get("api_key")
        if not api_key:
            raise ValueError("stripe processor requires api_key")
        headers = {"Authorization": f"Bearer {api_key}"}
        if options.get("account_id"):
            headers["Stripe-Account"] = options["account_id"]
        self._client = httpx.AsyncClient(
            base_url=options.get("api_base", "https://api.stripe.com"),
            headers=headers,
            timeout=float(options.get("timeout_seconds", 10)),
            transport=transport,
        )

    async def create_intent(
        self,
        amount: int,
        currency: str,
        *,
        metadata: dict[str, str],
        receipt_email: str,
        description: str,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        form = {
            "amount": str(amount),
            "currency": currency,
            "description": description,
            "receipt_email": receipt_email,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value
        try:
            response = await self._client.post(
                "/v1/payment_intents",
                data=form,
                headers={"Idempotency-Key": idempotency_key} if idempotency_key else None,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise Transient("payment processor timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise ProcessorError(_error_message(exc.response)) from exc
        except httpx.TransportError as exc:
            raise Transient(f"payment processor unreachable: {exc}") from exc
        data = response.json()
        return PaymentIntent(
            reference=data["id"],
            client_secret=data["client_secret"],
            amount=int(data["amount"]),
            currency=data["currency"],
        )

    async def close(self) -> None:
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"payment processor returned {response.status_code}"


def build_processor(config: SettlementConfig) -> PaymentProcessor:
    backend = config.processor.backend
    if backend == "local":
        return LocalProcessor()
    if backend == "stripe":
        return StripeProcessor(dict(config.processor.options))
    raise ValueError(f"unknown payment processor backend {backend}")
