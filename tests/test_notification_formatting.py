from __future__ import annotations

from datetime import datetime, timezone

import pytest

from adapters.notification_formatting import event_title, format_notification, short_request_id
from adapters.telegram_bot_notifier import TelegramBotNotifier
from core.models import LifecycleEvent


def _event(kind: str = "accepted", detail: str = "") -> LifecycleEvent:
    return LifecycleEvent(
        kind=kind,
        request_id="3f2a9c1e-0000-4000-8000-000000000000",
        actor_id="helper",
        recipient_id="buyer",
        occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        detail=detail,
    )


def test_event_title_for_known_and_unknown_kinds() -> None:
    assert event_title(_event("accepted")) == "Your request was accepted"
    assert event_title(_event("price_changed")) == "Price changed"


def test_short_request_id_keeps_first_block() -> None:
    assert short_request_id("3f2a9c1e-0000-4000") == "3f2a9c1e"
    assert short_request_id("plain") == "plain"


def test_markdown_escapes_detail() -> None:
    body = format_notification(_event("message", detail="2*3 [sic]"), "markdown")
    assert "**New message**" in body
    assert "3f2a9c1e" in body
    assert r"2\*3 \[sic]" in body


def test_html_escapes_detail() -> None:
    body = format_notification(_event("receipt_uploaded", detail="<b>30.00</b>"), "html")
    assert "<b>Receipt uploaded</b>" in body
    assert "&lt;b&gt;30.00&lt;/b&gt;" in body


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        format_notification(_event(), "plain")


def test_bot_payload_uses_html() -> None:
    payload = TelegramBotNotifier("token", "42").build_payload(_event("completed"))
    assert payload["chat_id"] == "42"
    assert payload["parse_mode"] == "HTML"
    assert "Order completed" in payload["text"]
    assert "<b>To:</b> buyer" in payload["text"]


def test_bodies_name_the_recipient() -> None:
    event = LifecycleEvent(
        kind="message",
        request_id="req-1",
        actor_id="helper",
        recipient_id="buyer_<1>",
        occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )

    assert "**To:** buyer\\_<1>" in format_notification(event, "markdown")
    assert "<b>To:</b> buyer_&lt;1&gt;" in format_notification(event, "html")
