"""Configuration helpers for the auction server."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"


@dataclass(frozen=True)
class LedgerConfig:
    backend: str
    options: Mapping[str, Any]
    max_retries: int
    retry_backoff_ms: int


@dataclass(frozen=True)
class ProcessorConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class SettlementConfig:
    currency: str
    fee_rate: Decimal
    fixed_fee_cents: int
    processor: ProcessorConfig


@dataclass(frozen=True)
class MailerConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class NotificationConfig:
    site_url: str
    sender: str
    mailer: MailerConfig


@dataclass(frozen=True)
class WebhookConfig:
    signing_secret: str | None
    tolerance_seconds: int


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    ledger: LedgerConfig
    settlement: SettlementConfig
    notifications: NotificationConfig
    webhooks: WebhookConfig


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    ledger = data.get("ledger", {})
    settlement = data.get("settlement", {})
    processor = settlement.get("processor", {})
    notifications = data.get("notifications", {})
    mailer = notifications.get("mailer", {})
    webhooks = data.get("webhooks", {})
    return ServerConfig(
        listen=data.get("listen", {}),
        ledger=LedgerConfig(
            backend=str(ledger.get("backend", "in_memory")),
            options=dict(ledger.get("options") or {}),
            max_retries=int(ledger.get("max_retries", 3)),
            retry_backoff_ms=int(ledger.get("retry_backoff_ms", 25)),
        ),
        settlement=SettlementConfig(
            currency=str(settlement.get("currency", "usd")).lower(),
            fee_rate=Decimal(str(settlement.get("fee_rate", "0.029"))),
            fixed_fee_cents=int(settlement.get("fixed_fee_cents", 30)),
            processor=ProcessorConfig(
                backend=str(processor.get("backend", "local")),
                options=dict(processor.get("options") or {}),
            ),
        ),
        notifications=NotificationConfig(
            site_url=str(notifications.get("site_url", "http://localhost:3000")),
            sender=str(notifications.get("sender", "auction@localhost")),
            mailer=MailerConfig(
                backend=str(mailer.get("backend", "local")),
                options=dict(mailer.get("options") or {}),
            ),
        ),
        webhooks=WebhookConfig(
            signing_secret=os.getenv("BIDBOARD_WEBHOOK_SECRET") or webhooks.get("signing_secret"),
            tolerance_seconds=int(webhooks.get("tolerance_seconds", 300)),
        ),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("BIDBOARD_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return parse_server_config(_load_yaml(path))
