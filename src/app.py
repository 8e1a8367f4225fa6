"""Application entry point for the igbridge relay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_destination import TelegramTopicDestination, register_topic_handler
from client import bot_token, build_client
from core.config import PresenceConfig, ReconnectConfig, RelayConfig
from core.connection import ConnectionController
from core.directory import ProfileDirectory, TopicDirectory
from core.errors import AuthFailure, ChallengeFailure
from core.filters import FilterSet
from core.ingestion import MessageIngestor
from core.login import LoginEngine
from core.relay import RelayEngine
from get_session import authorize, build_identity_store, build_login_config, build_source_client

NAME = "IGBRIDGE"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/igbridge.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _open_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


def _reconnect_config() -> ReconnectConfig:
    return ReconnectConfig(
        base_delay=settings.RECONNECT_BASE_DELAY,
        max_delay=settings.RECONNECT_MAX_DELAY,
        max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
        jitter=settings.RECONNECT_JITTER,
    )


def _presence_config() -> PresenceConfig:
    presence = settings.PRESENCE
    return PresenceConfig(
        enabled=bool(presence.get("enabled", True)),
        foreground_min=float(presence.get("foreground_min", 120)),
        foreground_max=float(presence.get("foreground_max", 480)),
        background_min=float(presence.get("background_min", 900)),
        background_max=float(presence.get("background_max", 2700)),
        heartbeat_interval=settings.HEARTBEAT_INTERVAL,
        jitter=settings.RECONNECT_JITTER,
    )


async def _serve() -> None:
    logger = logging.getLogger(__name__)

    if settings.DEST_CHAT_ID is None:
        raise RuntimeError("telegram.chat_id is required in config.json")

    storage = _open_storage()
    topics = TopicDirectory(storage)
    topics.load()
    profiles = ProfileDirectory(storage)
    filters = FilterSet(storage)
    filters.load()
    logger.info("%s topic mappings and %s filters are loaded", len(topics), len(filters.words))

    source = build_source_client()
    login = LoginEngine(source, build_identity_store(), build_login_config())

    bot = build_client()
    await bot.start(bot_token=bot_token())
    destination = TelegramTopicDestination(bot, int(settings.DEST_CHAT_ID), settings.TOPIC_ICON_COLOR)
    await destination.resolve_chat()

    relay = RelayEngine(
        destination=destination,
        source=source,
        topics=topics,
        profiles=profiles,
        filters=filters,
        config=RelayConfig(
            command_prefix=settings.COMMAND_PREFIX,
            dedup_capacity=settings.DEDUP_CAPACITY,
        ),
    )
    ingestor = MessageIngestor(settings.DEDUP_CAPACITY, user_lookup=source.lookup_username)
    ingestor.add_handler(relay.handle_inbound)

    controller = ConnectionController(
        source,
        login,
        on_event=ingestor.handle,
        reconnect=_reconnect_config(),
        presence=_presence_config(),
    )

    # Single handler keeps Telethon integration minimal and defers routing
    # to the relay engine.
    register_topic_handler(bot, destination.chat_id, relay.handle_outbound)

    try:
        result = await controller.start()
        relay.bind_identity(result.user_id)
        logger.info("Bridge running. Relaying messages...")

        closed = asyncio.ensure_future(controller.wait_closed())
        await asyncio.wait({closed, bot.disconnected}, return_when=asyncio.FIRST_COMPLETED)
        closed.cancel()
        if controller.state.reason:
            logger.warning("Bridge stopped: %s", controller.state.reason)
    finally:
        await controller.stop()
        await bot.disconnect()


def _run() -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting igbridge")

    try:
        asyncio.run(_serve())
    except (AuthFailure, ChallengeFailure) as exc:
        logger.error("Login failed: %s", exc)
        raise SystemExit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


def _login() -> None:
    _print_banner()
    _configure_logging()
    try:
        result = asyncio.run(authorize(force_fresh=False))
    except (AuthFailure, ChallengeFailure) as exc:
        print(f"Login failed: {exc}")
        raise SystemExit(1)
    print(f"Logged in as user {result.user_id} via {result.strategy}; session saved.")


def _filters(action: str, word: Optional[str]) -> None:
    filters = FilterSet(_open_storage())
    filters.load()

    if action == "add":
        if not word:
            raise SystemExit("filters add requires a word")
        print(f"Added filter: {filters.add(word)}")
    elif action == "remove":
        if not word:
            raise SystemExit("filters remove requires a word")
        if filters.remove(word):
            print(f"Removed filter: {word.lower()}")
        else:
            print(f"No such filter: {word.lower()}")
    elif action == "clear":
        print(f"Cleared {filters.clear()} filters")
    else:
        words = sorted(filters.words)
        if not words:
            print("No filters configured.")
            return
        for index, item in enumerate(words, start=1):
            print(f"{index}. {item}")


def _mappings() -> None:
    storage = _open_storage()
    mappings = storage.load_chat_mappings()
    users = storage.list_users()

    if not mappings:
        print("No thread mappings yet.")
    for index, (thread_id, topic_id) in enumerate(sorted(mappings.items()), start=1):
        print(f"{index}. thread {thread_id} | topic {topic_id}")

    if users:
        print("")
        print("Known users:")
    for profile in users:
        name = f"@{profile.username}" if profile.username else "unknown"
        print(
            f"{profile.user_id} | {name} | messages={profile.message_count} "
            f"| last seen {profile.last_seen:%Y-%m-%d %H:%M}"
        )


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="igbridge")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the bridge")
    subparsers.add_parser("login", help="Log in interactively and save the session")

    filters_parser = subparsers.add_parser("filters", help="Manage outgoing message filters")
    filters_parser.add_argument("action", nargs="?", default="list", choices=["list", "add", "remove", "clear"])
    filters_parser.add_argument("word", nargs="?")

    subparsers.add_parser("mappings", help="Show thread/topic mappings and known users")

    args = parser.parse_args(argv)
    if args.command == "login":
        _login()
        return
    if args.command == "filters":
        _filters(args.action, args.word)
        return
    if args.command == "mappings":
        _mappings()
        return
    _run()


if __name__ == "__main__":
    main()
