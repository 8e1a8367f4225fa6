"""Static configuration for igbridge.

All user-editable settings (paths, relay behaviour, reconnect policy, logging)
live in a single JSON file for quick edits without touching Python. Secrets
stay in the environment / .env.
"""

import json
import os

from dotenv import load_dotenv

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")

load_dotenv()


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    # Relative paths are anchored at the project root, not the cwd.
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Instagram credentials come from the environment only.
IG_USERNAME = os.getenv("IG_USERNAME", "")
IG_PASSWORD = os.getenv("IG_PASSWORD") or None
IG_2FA_CODE = os.getenv("IG_2FA_CODE") or None
IG_TOTP_SECRET = os.getenv("IG_TOTP_SECRET") or None
IG_PROXY = os.getenv("IG_PROXY") or None

# Login and polling behaviour of the source client.
_instagram = _CONFIG.get("instagram", {})
FORCE_FRESH_LOGIN = bool(_instagram.get("force_fresh_login", False))
FRESH_LOGIN_COOLDOWN = float(_instagram.get("fresh_login_cooldown", 5))
FOREGROUND_POLL_INTERVAL = float(_instagram.get("foreground_poll_interval", 5))
BACKGROUND_POLL_INTERVAL = float(_instagram.get("background_poll_interval", 30))
THREAD_AMOUNT = int(_instagram.get("thread_amount", 20))
THREAD_MESSAGE_LIMIT = int(_instagram.get("thread_message_limit", 10))
HISTORY_BACKFILL_LIMIT = int(_instagram.get("history_backfill_limit", 100))
REQUEST_DELAY = tuple(_instagram.get("request_delay", [1, 3]))

# The forum supergroup the bot posts into; required for `run`.
_telegram = _CONFIG.get("telegram", {})
DEST_CHAT_ID = _telegram.get("chat_id")
TOPIC_ICON_COLOR = int(_telegram.get("topic_icon_color", 0x7ABA3C))

_relay = _CONFIG.get("relay", {})
COMMAND_PREFIX = _relay.get("command_prefix", ".")
DEDUP_CAPACITY = int(_relay.get("dedup_capacity", 1000))

# Reconnect backoff and presence simulation for the realtime stream.
_connection = _CONFIG.get("connection", {})
RECONNECT_BASE_DELAY = float(_connection.get("base_delay", 2))
RECONNECT_MAX_DELAY = float(_connection.get("max_delay", 300))
RECONNECT_MAX_ATTEMPTS = int(_connection.get("max_attempts", 10))
RECONNECT_JITTER = float(_connection.get("jitter", 0.2))
HEARTBEAT_INTERVAL = float(_connection.get("heartbeat_interval", 300))
PRESENCE = _connection.get("presence", {})

# Durable state: SQLite database plus the identity artifacts.
_paths = _CONFIG.get("paths", {})
DB_PATH = _project_path(_paths.get("db", "data/igbridge.db"))
DEVICE_PATH = _project_path(_paths.get("device", "data/device.json"))
SESSION_PATH = _project_path(_paths.get("session", "data/session.json"))
COOKIES_PATH = _project_path(_paths.get("cookies", "data/cookies.json"))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
