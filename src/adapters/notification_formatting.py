"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps messages
consistent regardless of delivery channel.
"""

from __future__ import annotations

import html

from core.models import LifecycleEvent

EVENT_TITLES = {
    "accepted": "Your request was accepted",
    "receipt_uploaded": "Receipt uploaded",
    "completed": "Order completed",
    "rejected": "Helper handed the request back",
    "message": "New message",
}

DIVIDER = "──────────────"


def event_title(event: LifecycleEvent) -> str:
    return EVENT_TITLES.get(event.kind, event.kind.replace("_", " ").capitalize())


def short_request_id(request_id: str) -> str:
    """First block of the request id, enough to tell requests apart."""

    return request_id.split("-", 1)[0]


def _format_markdown(event: LifecycleEvent) -> str:
    """Create the Markdown notification body."""

    def escape_md(value: str) -> str:
        for ch in r"*[`_":
            value = value.replace(ch, f"\\{ch}")
        return value

    timestamp = event.occurred_at.astimezone().strftime("%H:%M:%S %d-%m-%Y").strip()
    lines = [
        f"[{timestamp}]",
        f"**{escape_md(event_title(event))}**",
        f"**Request:** {escape_md(short_request_id(event.request_id))}",
    ]
    if event.recipient_id:
        lines.append(f"**To:** {escape_md(event.recipient_id)}")
    lines.append(DIVIDER)
    if event.detail:
        lines.extend(["", escape_md(event.detail), ""])
    lines.append(DIVIDER)
    return "\n".join(lines)


def _format_html(event: LifecycleEvent) -> str:
    """Create the HTML notification body used by the Bot API adapter."""

    timestamp = html.escape(event.occurred_at.astimezone().strftime("%H:%M:%S %d-%m-%Y").strip())
    parts = [
        f"[{timestamp}]",
        f"<b>{html.escape(event_title(event))}</b>",
        f"<b>Request:</b> {html.escape(short_request_id(event.request_id))}",
    ]
    if event.recipient_id:
        parts.append(f"<b>To:</b> {html.escape(event.recipient_id)}")
    parts.append(DIVIDER)
    if event.detail:
        parts.extend(["", html.escape(event.detail), ""])
    parts.append(DIVIDER)
    return "\n".join(parts)


def format_notification(event: LifecycleEvent, mode: str) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(event)
    if mode == "html":
        return _format_html(event)
    raise ValueError(f"Unsupported notification format: {mode}")
