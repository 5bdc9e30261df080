"""Static configuration for helpmate.

All user-editable settings (store, uploads, retry, polling, chat,
notifications, logging) live in a single JSON file for quick edits without
touching Python. Secrets and the acting user come from the environment.
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.getenv("HELPMATE_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database.
DB_PATH = _project_path(_CONFIG.get("store", {}).get("db_path", "helpmate.db"))

# Receipt and profile images are written here and served from the base URL.
_uploads = _CONFIG.get("uploads", {})
UPLOADS_DIR = _project_path(_uploads.get("root_dir", "uploads"))
PUBLIC_BASE_URL = _uploads.get("public_base_url", "http://localhost:8000/uploads")

# Bounded retry for upstream failures, applied by the CLI around each call.
_retry = _CONFIG.get("retry", {})
RETRY_ATTEMPTS = int(_retry.get("attempts", 3))
RETRY_BASE_DELAY = float(_retry.get("base_delay_seconds", 0.5))
RETRY_MAX_DELAY = float(_retry.get("max_delay_seconds", 5.0))

# Activity lists are refreshed by polling.
POLL_INTERVAL = float(_CONFIG.get("polling", {}).get("interval_seconds", 10))

# Live chat reconnect behaviour (0 reconnects = unlimited).
_chat = _CONFIG.get("chat", {})
CHAT_RECONNECT_DELAY = float(_chat.get("reconnect_delay_seconds", 2))
CHAT_MAX_RECONNECTS = int(_chat.get("max_reconnects", 0))

# Default ordering for the helper's browse list.
DISCOVERY_MODE = _CONFIG.get("discovery", {}).get("default_mode", "near_home")

# Notification method switches adapters without changing core logic.
# - "log": write notifications to the log
# - "bot": send via the Telegram Bot API (needs BOT_API and bot_chat_id)
# - "off": no notifications
_notifications = _CONFIG.get("notifications", {})
NOTIFICATION_METHOD = _notifications.get("notification_method", "log")
BOT_CHAT_ID = _notifications.get("bot_chat_id")

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
