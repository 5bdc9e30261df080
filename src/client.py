"""Client session factory for helpmate.

Wires the adapters (SQLite store, local uploads, in-process realtime, env
auth, notifier) into the core services in one place so the CLI stays thin
and it is obvious which backend each collaborator uses.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

import settings
from adapters.env_auth import EnvAuth
from adapters.local_object_storage import LocalObjectStorage
from adapters.memory_realtime import InProcessRealtime
from adapters.sqlite_store import SQLiteStore
from adapters.telegram_bot_notifier import LogNotifier, TelegramBotNotifier
from core.config import ChatConfig, PollingConfig, RetryConfig
from core.discovery import DiscoveryView
from core.fulfillment import FulfillmentWorkflow
from core.matching import MatchingEngine
from core.messaging import MessagingChannel
from core.ports import NotifierPort
from core.requests import RequestDesk


@dataclass
class HelpmateClient:
    store: SQLiteStore
    realtime: InProcessRealtime
    auth: EnvAuth
    notifier: Optional[NotifierPort]
    desk: RequestDesk
    matching: MatchingEngine
    fulfillment: FulfillmentWorkflow
    messaging: MessagingChannel
    discovery: DiscoveryView
    retry: RetryConfig
    polling: PollingConfig


def build_notifier() -> Optional[NotifierPort]:
    """Select the notification adapter based on configuration."""

    method = settings.NOTIFICATION_METHOD
    if method == "off":
        return None
    if method == "log":
        return LogNotifier()
    if method == "bot":
        bot_token = os.getenv("BOT_API")
        if not bot_token:
            raise RuntimeError("BOT_API is required when notification_method=bot")
        if not settings.BOT_CHAT_ID:
            raise RuntimeError("notifications.bot_chat_id is required for bot notifications")
        return TelegramBotNotifier(bot_token=bot_token, chat_id=str(settings.BOT_CHAT_ID))
    raise RuntimeError("notification_method must be 'log', 'bot' or 'off'")


def build_client(user_id: Optional[str] = None) -> HelpmateClient:
    """Create a client session from config.json and environment variables."""

    load_dotenv()

    realtime = InProcessRealtime()
    store = SQLiteStore(settings.DB_PATH, on_change=realtime.publish)
    store.init_db()
    storage = LocalObjectStorage(settings.UPLOADS_DIR, settings.PUBLIC_BASE_URL)
    chat_config = ChatConfig(
        reconnect_delay_seconds=settings.CHAT_RECONNECT_DELAY,
        max_reconnects=settings.CHAT_MAX_RECONNECTS,
    )

    logging.getLogger(__name__).debug("Using store at %s", settings.DB_PATH)

    return HelpmateClient(
        store=store,
        realtime=realtime,
        auth=EnvAuth(user_id),
        notifier=build_notifier(),
        desk=RequestDesk(store),
        matching=MatchingEngine(store),
        fulfillment=FulfillmentWorkflow(store, storage),
        messaging=MessagingChannel(store, realtime, chat_config),
        discovery=DiscoveryView(store),
        retry=RetryConfig(
            attempts=settings.RETRY_ATTEMPTS,
            base_delay_seconds=settings.RETRY_BASE_DELAY,
            max_delay_seconds=settings.RETRY_MAX_DELAY,
        ),
        polling=PollingConfig(interval_seconds=settings.POLL_INTERVAL),
    )
