"""Realtime connection lifecycle controller.

Owns the single ConnectionState of the process. Transitions:

    DISCONNECTED -> CONNECTING -> CONNECTED -> DEGRADED -> RECONNECTING -> ...

Inbound events are queued and consumed by one dispatch loop, so handlers for
one event finish before the next one starts. Heartbeat and presence cycling
only run while CONNECTED and are cancelled whenever that state is left.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional

from core.config import PresenceConfig, ReconnectConfig
from core.errors import AuthFailure, ChallengeFailure, SessionExpired
from core.login import LoginEngine
from core.models import ConnectionPhase, ConnectionState, LoginResult
from core.ports import SourceClientPort, StreamCallbacks

LOGGER = logging.getLogger(__name__)

_STOP = object()


def backoff_delay(attempt: int, base: float, max_delay: float) -> float:
    """Return min(max_delay, base * 2**attempt) without jitter."""

    return min(max_delay, base * (2 ** min(max(attempt, 0), 32)))


def apply_jitter(delay: float, ratio: float, rand: Callable[[], float] = random.random) -> float:
    """Spread a delay uniformly over +/- ratio."""

    return max(0.0, delay * (1 + ratio * (2 * rand() - 1)))


class ConnectionController:
    """Connects, watches and reconnects the source realtime stream."""

    def __init__(
        self,
        client: SourceClientPort,
        login: LoginEngine,
        on_event: Callable[[dict], Awaitable[None]],
        reconnect: ReconnectConfig,
        presence: PresenceConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._login = login
        self._on_event = on_event
        self._reconnect = reconnect
        self._presence = presence
        self._sleep = sleep
        self._rand = rand
        self._clock = clock

        self._state = ConnectionState(ConnectionPhase.DISCONNECTED)
        self._running = False
        self._attempt = 0
        self._needs_reauth = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._presence_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._foreground = False
        self.events_dispatched = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    def _set_state(self, phase: ConnectionPhase, **kwargs: Any) -> None:
        self._state = ConnectionState(phase, **kwargs)
        LOGGER.debug("Connection state -> %s", self._state)

    async def start(self) -> LoginResult:
        """Authenticate, start dispatching and open the stream.

        Login failures propagate; a failed first open falls into the reconnect
        loop like any later drop.
        """

        self._running = True
        self._closed.clear()
        try:
            result = await self._login.authenticate()
        except Exception:
            self._running = False
            self._closed.set()
            raise
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        try:
            await self._open()
        except Exception as exc:
            LOGGER.warning("Initial connect failed: %s", exc)
            if isinstance(exc, SessionExpired):
                self._needs_reauth = True
            self._transport_lost(f"connect failed: {exc}")
        return result

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _open(self) -> None:
        self._set_state(ConnectionPhase.CONNECTING, attempt=self._attempt)
        snapshot = None
        try:
            snapshot = await self._client.fetch_inbox_snapshot()
        except SessionExpired:
            raise
        except Exception as exc:
            LOGGER.warning("Inbox snapshot unavailable, connecting without it: %s", exc)

        callbacks = StreamCallbacks(
            on_event=self._enqueue,
            on_close=self._handle_close,
            on_error=self._handle_error,
        )
        await self._client.connect(callbacks, snapshot)
        self._attempt = 0
        self._set_state(ConnectionPhase.CONNECTED)
        LOGGER.info("Realtime stream connected")
        self._start_periodic()
        await self.set_presence(True)

    def _enqueue(self, raw: dict) -> None:
        if not self._running:
            return
        self._queue.put_nowait(raw)

    def _handle_close(self) -> None:
        LOGGER.warning("Realtime connection closed")
        self._transport_lost("closed")

    def _handle_error(self, exc: BaseException) -> None:
        LOGGER.error("Realtime error: %s", exc)
        if isinstance(exc, SessionExpired):
            self._needs_reauth = True
        self._transport_lost(f"error: {exc}")

    def _transport_lost(self, reason: str) -> None:
        if not self._running:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._stop_periodic()
        self._set_state(ConnectionPhase.DEGRADED, reason=reason, attempt=self._attempt)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(reason))

    async def _reconnect_loop(self, reason: str) -> None:
        while self._running:
            if self._attempt >= self._reconnect.max_attempts:
                LOGGER.error(
                    "Reconnect attempts exhausted (%s/%s), last reason: %s",
                    self._attempt,
                    self._reconnect.max_attempts,
                    reason,
                )
                self._give_up(reason)
                return

            delay = apply_jitter(
                backoff_delay(self._attempt, self._reconnect.base_delay, self._reconnect.max_delay),
                self._reconnect.jitter,
                self._rand,
            )
            self._set_state(
                ConnectionPhase.RECONNECTING,
                reason=reason,
                attempt=self._attempt,
                next_retry_at=self._clock() + delay,
            )
            LOGGER.info("Reconnecting in %.1fs (attempt %s)", delay, self._attempt + 1)
            await self._sleep(delay)
            if not self._running:
                return
            self._attempt += 1

            try:
                await self._client.disconnect()
            except Exception as exc:
                LOGGER.debug("Disconnect before reconnect failed: %s", exc)

            try:
                if self._needs_reauth:
                    LOGGER.warning("Session expired, re-authenticating")
                    await self._login.authenticate()
                    self._needs_reauth = False
                await self._open()
                return
            except (AuthFailure, ChallengeFailure) as auth_exc:
                LOGGER.error("Re-authentication failed: %s", auth_exc)
                self._give_up(str(auth_exc))
                return
            except SessionExpired as exc:
                self._needs_reauth = True
                reason = f"session expired: {exc}"
            except Exception as exc:
                reason = f"reconnect failed: {exc}"
            LOGGER.warning("Reconnect attempt %s failed: %s", self._attempt, reason)

    def _give_up(self, reason: str) -> None:
        self._set_state(ConnectionPhase.DISCONNECTED, reason=reason, attempt=self._attempt)
        self._running = False
        self._stop_periodic()
        self._queue.put_nowait(_STOP)
        self._closed.set()

    async def _dispatch_loop(self) -> None:
        while True:
            raw = await self._queue.get()
            if raw is _STOP:
                return
            try:
                await self._on_event(raw)
                self.events_dispatched += 1
            except Exception:
                LOGGER.exception("Inbound event dispatch failed")

    def _start_periodic(self) -> None:
        self._stop_periodic()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        if self._presence.enabled:
            self._presence_task = asyncio.create_task(self._presence_loop())

    def _stop_periodic(self) -> None:
        for task in (self._heartbeat_task, self._presence_task):
            if task is not None and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._presence_task = None

    async def _heartbeat_loop(self) -> None:
        while self._state.phase is ConnectionPhase.CONNECTED:
            await self._sleep(apply_jitter(self._presence.heartbeat_interval, self._presence.jitter, self._rand))
            LOGGER.info(
                "Heartbeat - state=%s, foreground=%s, dispatched=%s, queued=%s",
                self._state.phase.value,
                self._foreground,
                self.events_dispatched,
                self._queue.qsize(),
            )

    async def _presence_loop(self) -> None:
        cfg = self._presence
        while self._state.phase is ConnectionPhase.CONNECTED:
            await self._sleep(cfg.foreground_min + (cfg.foreground_max - cfg.foreground_min) * self._rand())
            await self.set_presence(False)
            await self._sleep(cfg.background_min + (cfg.background_max - cfg.background_min) * self._rand())
            await self.set_presence(True)

    async def set_presence(self, foreground: bool) -> bool:
        """Send a foreground/background signal; no-op unless connected."""

        if self._state.phase is not ConnectionPhase.CONNECTED:
            return False
        try:
            await self._client.set_presence(foreground)
        except Exception as exc:
            LOGGER.error("Failed to set presence: %s", exc)
            return False
        self._foreground = foreground
        LOGGER.debug("Presence set to %s", "foreground" if foreground else "background")
        return True

    async def stop(self) -> None:
        """Graceful shutdown; queued inbound events are still dispatched."""

        was_connected = self._state.phase is ConnectionPhase.CONNECTED
        self._running = False
        self._stop_periodic()
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        if was_connected:
            try:
                await self._client.set_presence(False)
            except Exception as exc:
                LOGGER.debug("Background presence on shutdown failed: %s", exc)
        try:
            await self._client.disconnect()
        except Exception as exc:
            LOGGER.warning("Error during disconnect: %s", exc)

        if self._dispatch_task is not None:
            self._queue.put_nowait(_STOP)
            await self._dispatch_task
            self._dispatch_task = None

        self._set_state(ConnectionPhase.DISCONNECTED, reason="shutdown")
        self._closed.set()
        LOGGER.info("Disconnected")
