"""Instagram source adapter built on instagrapi.

instagrapi is synchronous, so every network call runs in a worker thread via
``asyncio.to_thread`` and the event loop never blocks. Inbound messages are
picked up by a polling task that emits the same realtime payloads the
ingestion pipeline consumes; the foreground/background presence only changes
how often that task polls.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from instagrapi import Client
from instagrapi.exceptions import (
    BadPassword,
    ChallengeRequired as IgChallengeRequired,
    ClientError,
    LoginRequired,
    TwoFactorRequired as IgTwoFactorRequired,
)

from adapters.instagram_mapper import ids_of, message_ids, new_events, newest_timestamp, timestamp_us
from core.errors import SessionExpired, TransientNetworkFailure, TransportClosed
from core.models import (
    ChallengeRequired,
    DeviceFingerprint,
    InvalidCredentials,
    LoginOutcome,
    LoginSuccess,
    SessionArtifact,
    TransientFailure,
    TwoFactorRequired,
)
from core.ports import StreamCallbacks

LOGGER = logging.getLogger(__name__)

_SESSION_COOKIE = "sessionid"


class InstagramClient:
    """Satisfies SourceClientPort for one Instagram account."""

    def __init__(
        self,
        proxy: Optional[str] = None,
        foreground_poll_interval: float = 5.0,
        background_poll_interval: float = 30.0,
        thread_amount: int = 20,
        thread_message_limit: int = 10,
        history_backfill_limit: int = 100,
        request_delay: tuple[float, float] = (1.0, 3.0),
        challenge_code_handler: Optional[Callable[[str, Any], str]] = None,
        client_factory: Callable[[], Client] = Client,
    ) -> None:
        self._factory = client_factory
        self._client = client_factory()
        self._client.delay_range = list(request_delay)
        if proxy:
            self._client.set_proxy(proxy)
        if challenge_code_handler is not None:
            self._client.challenge_code_handler = challenge_code_handler

        self._foreground_interval = foreground_poll_interval
        self._background_interval = background_poll_interval
        self._thread_amount = thread_amount
        self._thread_message_limit = thread_message_limit
        self._history_backfill_limit = history_backfill_limit

        self._device: Optional[DeviceFingerprint] = None
        self._credentials: Optional[tuple[str, str]] = None
        self._foreground = True
        self._poll_task: Optional[asyncio.Task] = None
        self._seen: set[str] = set()
        self._since: Optional[int] = None
        self._seeded = False

    # Device and session state

    async def generate_device(self, account_id: str) -> DeviceFingerprint:
        # A fresh instagrapi client generates a random device on init.
        settings = self._factory().get_settings()
        uuids = dict(settings.get("uuids") or {})
        device_settings = dict(settings.get("device_settings") or {})
        return DeviceFingerprint(
            account_id=account_id,
            device_id=uuids.get("android_device_id", ""),
            installation_id=uuids.get("uuid", ""),
            phone_id=uuids.get("phone_id", ""),
            advertising_id=uuids.get("advertising_id", ""),
            os_build=str(device_settings.get("android_release", "")),
            settings={
                "uuids": uuids,
                "device_settings": device_settings,
                "user_agent": settings.get("user_agent"),
            },
        )

    async def apply_device(self, device: DeviceFingerprint) -> None:
        self._device = device
        self._apply_device_settings(device)
        LOGGER.info("Using device %s", device.device_id)

    def _apply_device_settings(self, device: DeviceFingerprint) -> None:
        uuids = dict(device.settings.get("uuids") or {})
        uuids.update(
            {
                "android_device_id": device.device_id,
                "uuid": device.installation_id,
                "phone_id": device.phone_id,
                "advertising_id": device.advertising_id,
            }
        )
        self._client.set_uuids(uuids)
        device_settings = device.settings.get("device_settings")
        if device_settings:
            self._client.set_device(device_settings)
        user_agent = device.settings.get("user_agent")
        if user_agent:
            self._client.set_user_agent(user_agent)

    async def restore_session(self, artifact: SessionArtifact) -> None:
        await asyncio.to_thread(self._client.set_settings, artifact.data)
        # The persisted fingerprint wins over whatever the artifact carried.
        if self._device is not None:
            self._apply_device_settings(self._device)

    async def export_session(self) -> SessionArtifact:
        data = self._client.get_settings()
        return SessionArtifact(data=data, saved_at=datetime.now(timezone.utc))

    async def restore_cookies(self, cookies: list[dict]) -> None:
        session_id = next(
            (c.get("value") for c in cookies if c.get("name") == _SESSION_COOKIE and c.get("value")),
            None,
        )
        if not session_id:
            raise ValueError("Cookie jar has no sessionid cookie")
        await asyncio.to_thread(self._client.login_by_sessionid, session_id)

    async def probe_identity(self) -> str:
        try:
            account = await asyncio.to_thread(self._client.account_info)
        except LoginRequired as exc:
            raise SessionExpired(f"Session rejected: {exc}") from exc
        return str(account.pk)

    # Fresh login

    async def login(self, username: str, password: str) -> LoginOutcome:
        self._credentials = (username, password)
        return await self._attempt_login(username, password, "")

    async def two_factor_login(self, identifier: str, code: str) -> LoginOutcome:
        if self._credentials is None:
            return TransientFailure("two-factor login without a prior password attempt")
        username, password = self._credentials
        return await self._attempt_login(username, password, code)

    async def _attempt_login(self, username: str, password: str, code: str) -> LoginOutcome:
        try:
            await asyncio.to_thread(
                self._client.login, username, password, verification_code=code
            )
        except IgTwoFactorRequired:
            info = (self._client.last_json or {}).get("two_factor_info") or {}
            methods = []
            if info.get("totp_two_factor_on"):
                methods.append("totp")
            if info.get("sms_two_factor_on"):
                methods.append("sms")
            return TwoFactorRequired(
                identifier=str(info.get("two_factor_identifier", "")),
                allowed_methods=tuple(methods),
            )
        except IgChallengeRequired:
            challenge = (self._client.last_json or {}).get("challenge") or {}
            return ChallengeRequired(challenge.get("api_path") or "challenge")
        except BadPassword as exc:
            return InvalidCredentials(str(exc))
        except (ClientError, OSError) as exc:
            return TransientFailure(f"{type(exc).__name__}: {exc}")
        return LoginSuccess(user_id=str(self._client.user_id) if self._client.user_id else None)

    async def resolve_challenge(self, challenge_kind: str) -> bool:
        LOGGER.info("Resolving challenge %s", challenge_kind)
        resolved = await asyncio.to_thread(self._client.challenge_resolve, self._client.last_json)
        return bool(resolved)

    # Realtime stream

    async def fetch_inbox_snapshot(self) -> Any:
        return await self._fetch_threads()

    async def _fetch_threads(self) -> list:
        try:
            return await asyncio.to_thread(
                self._client.direct_threads,
                amount=self._thread_amount,
                thread_message_limit=self._thread_message_limit,
            )
        except LoginRequired as exc:
            raise SessionExpired(f"Session rejected while reading the inbox: {exc}") from exc
        except (ClientError, OSError) as exc:
            raise TransientNetworkFailure(f"Inbox fetch failed: {exc}") from exc

    async def _fetch_history(self, thread_id: str) -> Optional[list]:
        try:
            return await asyncio.to_thread(
                self._client.direct_messages, int(thread_id), amount=self._history_backfill_limit
            )
        except LoginRequired as exc:
            raise SessionExpired(f"Session rejected while reading thread {thread_id}: {exc}") from exc
        except (ClientError, OSError) as exc:
            LOGGER.warning("History backfill for thread %s failed: %s", thread_id, exc)
            return None

    def _needs_backfill(self, messages: list) -> bool:
        # A short page already reaches the start of the thread.
        if len(messages) < self._thread_message_limit:
            return False
        if ids_of(messages) & self._seen:
            return False
        if self._since is not None:
            oldest = timestamp_us(getattr(messages[-1], "timestamp", None))
            if oldest is not None and oldest < self._since:
                return False
        return True

    async def _collect_events(self, threads: list) -> list[dict]:
        history: dict[str, list] = {}
        for thread in threads:
            messages = list(getattr(thread, "messages", None) or [])
            if not self._needs_backfill(messages):
                continue
            thread_id = str(getattr(thread, "id", ""))
            older = await self._fetch_history(thread_id)
            if older:
                LOGGER.info("Backfilled %s messages for thread %s", len(older), thread_id)
                history[thread_id] = older

        current = message_ids(threads)
        for messages in history.values():
            current |= ids_of(messages)
        events = new_events(threads, self._seen, history=history, since=self._since)
        self._seen = current
        return events

    async def connect(self, callbacks: StreamCallbacks, snapshot: Any = None) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            raise TransportClosed("Stream already connected")
        threads = snapshot if snapshot is not None else await self._fetch_threads()
        if not self._seeded:
            self._seen = message_ids(threads)
            self._since = newest_timestamp(threads)
            self._seeded = True
        else:
            # Later connects keep the watermark and catch up on the outage.
            for event in await self._collect_events(threads):
                callbacks.on_event(event)
        self._poll_task = asyncio.create_task(self._poll_loop(callbacks))
        LOGGER.info("Inbox polling started (%s known messages)", len(self._seen))

    async def _poll_loop(self, callbacks: StreamCallbacks) -> None:
        while True:
            interval = self._foreground_interval if self._foreground else self._background_interval
            await asyncio.sleep(interval)
            try:
                threads = await self._fetch_threads()
                events = await self._collect_events(threads)
            except TransientNetworkFailure as exc:  # includes SessionExpired
                callbacks.on_error(exc)
                return
            for event in events:
                callbacks.on_event(event)

    async def disconnect(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        LOGGER.info("Inbox polling stopped")

    async def set_presence(self, foreground: bool) -> None:
        self._foreground = foreground

    # Lookups and sending

    async def lookup_username(self, user_id: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._client.username_from_user_id, user_id)
        except ClientError as exc:
            LOGGER.debug("Username lookup for %s failed: %s", user_id, exc)
            return None

    async def send_text(self, thread_id: str, text: str) -> None:
        await asyncio.to_thread(self._client.direct_send, text, thread_ids=[int(thread_id)])
