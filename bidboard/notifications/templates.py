"""HTML bodies for outbid and winner e-mails."""

from __future__ import annotations

from html import escape
from typing import Any

from ..ledger.models import NotificationType
from .mailer import EmailMessage


def _money(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def outbid_message(recipient: str, payload: dict[str, Any], site_url: str) -> EmailMessage:
    title = escape(payload["item_title"])
    return EmailMessage(
        to=recipient,
        subject=f"You've been outbid on {payload['item_title']}",
        html=(
            '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
            "<h2>You've been outbid!</h2>"
            f"<p>Someone has placed a higher bid on: <strong>{title}</strong></p>"
            f"<p>New bid amount: <strong>{_money(payload['new_bid'])}</strong></p>"
            f"<p>New bidder: {escape(payload['new_bidder_name'])}</p>"
            f'<p><a href="{escape(site_url)}">Place a new bid</a></p>'
            "</div>"
        ),
    )


def winner_message(recipient: str, payload: dict[str, Any], site_url: str) -> EmailMessage:
    rows = "".join(
        f"<li>{escape(item['title'])}: <strong>{_money(item['amount'])}</strong></li>"
        for item in payload["items"]
    )
    return EmailMessage(
        to=recipient,
        subject="Congratulations! You won auction items",
        html=(
            '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
            f"<h2>Congratulations {escape(payload['name'])}!</h2>"
            "<p>The auction has ended and you've won the following items:</p>"
            f'<ul style="list-style: none; padding: 0;">{rows}</ul>'
            f"<p><strong>Total amount due: {_money(payload['total'])}</strong></p>"
            f'<p><a href="{escape(site_url)}">Proceed to payment</a></p>'
            "</div>"
        ),
    )


_RENDERERS = {
    NotificationType.OUTBID: outbid_message,
    NotificationType.WINNER: winner_message,
}


def render(
    notification_type: NotificationType,
    recipient: str,
    payload: dict[str, Any],
    site_url: str,
) -> EmailMessage:
    return _RENDERERS[notification_type](recipient, payload, site_url)
