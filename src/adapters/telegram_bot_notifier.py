"""Telegram Bot API notification adapter.

Uses the Bot API for delivery so lifecycle updates can be routed via a bot
chat. The chat is an operator feed shared by all users, so every message
names the user it is meant for.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request

from adapters.notification_formatting import format_notification
from core.errors import UpstreamUnavailable
from core.models import LifecycleEvent

LOGGER = logging.getLogger(__name__)


class TelegramBotNotifier:
    """Notifier adapter that sends messages via the Telegram Bot API."""

    def __init__(self, bot_token: str, chat_id: str) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id

    def _endpoint(self) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    def build_payload(self, event: LifecycleEvent) -> dict:
        return {
            "chat_id": self._chat_id,
            "text": format_notification(event, mode="html"),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

    async def send(self, event: LifecycleEvent) -> None:
        """Send the formatted notification via the Bot API."""

        data = json.dumps(self.build_payload(event)).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=10):
                pass
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise UpstreamUnavailable(f"Bot API error {e.code}: {body}") from e
        except urllib.error.URLError as e:
            raise UpstreamUnavailable(f"Bot API unreachable: {e.reason}") from e


class LogNotifier:
    """Notifier adapter that writes the Markdown body to the log."""

    async def send(self, event: LifecycleEvent) -> None:
        LOGGER.info("Notification for %s:\n%s", event.recipient_id or "-", format_notification(event, "markdown"))
