"""Outbound mail transports handed rendered notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import NotificationConfig

logger = logging.getLogger(__name__)


class MailerError(RuntimeError):
    """Raised when the mail transport refuses or fails to accept a message."""


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str


class Mailer:
    async def send(self, message: EmailMessage) -> None:  # pragma: no cover - protocol
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LocalMailer(Mailer):
    """Keeps messages in memory and logs them; used for development and tests."""

    def __init__(self) -> None:
        self.outbox: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.outbox.append(message)
        logger.info("[local-mailer] to=%s subject=%s", message.to, message.subject)


class HttpMailer(Mailer):
    """Posts messages to a Resend-compatible ``/emails`` endpoint."""

    def __init__(
        self,
        *,
        sender: str,
        options: dict[str, Any],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = options.get("endpoint", "https://api.resend.com/emails")
        api_key = options.get("api_key")
        if not api_key:
            raise ValueError("http mailer requires api_key")
        self._sender = sender
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=float(options.get("timeout_seconds", 10)),
            transport=transport,
        )

    async def send(self, message: EmailMessage) -> None:
        try:
            response = await self._client.post(
                self._endpoint,
                json={
                    "from": self._sender,
                    "to": message.to,
                    "subject": message.subject,
                    "html": message.html,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MailerError(f"mail delivery to {message.to} failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


def build_mailer(config: NotificationConfig) -> Mailer:
    backend = config.mailer.backend
    if backend == "local":
        return LocalMailer()
    if backend == "http":
        return HttpMailer(sender=config.sender, options=dict(config.mailer.options))
    raise ValueError(f"unknown mailer backend {backend}")
