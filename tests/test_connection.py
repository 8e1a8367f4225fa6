from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from core.config import PresenceConfig, ReconnectConfig
from core.connection import ConnectionController, apply_jitter, backoff_delay
from core.errors import AuthFailure, SessionExpired, TransientNetworkFailure
from core.models import ConnectionPhase, LoginResult


class FakeSource:
    def __init__(self) -> None:
        self.callbacks = None
        self.connect_calls = 0
        self.connect_errors: list[Exception] = []
        self.fail_connect = False
        self.disconnects = 0
        self.presence: list[bool] = []

    async def fetch_inbox_snapshot(self):
        return []

    async def connect(self, callbacks, snapshot=None) -> None:
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        if self.fail_connect:
            raise TransientNetworkFailure("network down")
        self.callbacks = callbacks

    async def disconnect(self) -> None:
        self.disconnects += 1

    async def set_presence(self, foreground: bool) -> None:
        self.presence.append(foreground)


class FakeLogin:
    def __init__(self, error: Exception = None) -> None:
        self.calls = 0
        self.error = error

    async def authenticate(self) -> LoginResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return LoginResult(strategy="session", user_id="100")


class FakeSleep:
    """Records delays; long timers (heartbeat, presence) park forever."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if delay >= 60:
            await asyncio.Event().wait()
        await asyncio.sleep(0)

    @property
    def short(self) -> list[float]:
        return [delay for delay in self.delays if delay < 60]


def _controller(source, login=None, on_event=None, sleep=None, **reconnect) -> ConnectionController:
    async def ignore(raw: dict) -> None:
        return None

    params = {"base_delay": 1.0, "max_delay": 30.0, "max_attempts": 3, "jitter": 0.2}
    params.update(reconnect)
    return ConnectionController(
        source,
        login or FakeLogin(),
        on_event=on_event or ignore,
        reconnect=ReconnectConfig(**params),
        presence=PresenceConfig(),
        sleep=sleep or FakeSleep(),
        rand=lambda: 0.5,
        clock=lambda: 1000.0,
    )


async def _settle(predicate: Callable[[], bool], rounds: int = 200) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def test_backoff_is_monotonic_and_capped() -> None:
    delays = [backoff_delay(attempt, 2.0, 300.0) for attempt in range(15)]
    assert delays[:4] == [2.0, 4.0, 8.0, 16.0]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 300.0
    assert backoff_delay(10_000, 2.0, 300.0) == 300.0


def test_jitter_stays_within_ratio() -> None:
    assert apply_jitter(10.0, 0.2, lambda: 0.0) == pytest.approx(8.0)
    assert apply_jitter(10.0, 0.2, lambda: 1.0) == pytest.approx(12.0)
    assert apply_jitter(10.0, 0.2, lambda: 0.5) == pytest.approx(10.0)


def test_start_connects_and_goes_foreground() -> None:
    source = FakeSource()

    async def scenario() -> None:
        controller = _controller(source)
        result = await controller.start()
        assert result.strategy == "session"
        assert controller.state.phase is ConnectionPhase.CONNECTED
        assert source.presence == [True]
        await controller.stop()

    asyncio.run(scenario())


def test_login_failure_propagates_from_start() -> None:
    source = FakeSource()

    async def scenario() -> ConnectionController:
        controller = _controller(source, login=FakeLogin(AuthFailure("bad password")))
        with pytest.raises(AuthFailure):
            await controller.start()
        await asyncio.wait_for(controller.wait_closed(), timeout=1)
        return controller

    controller = asyncio.run(scenario())
    assert source.connect_calls == 0
    assert controller.state.phase is ConnectionPhase.DISCONNECTED


def test_reconnect_success_resets_attempt_counter() -> None:
    source = FakeSource()
    sleep = FakeSleep()

    async def scenario() -> ConnectionController:
        controller = _controller(source, sleep=sleep)
        await controller.start()
        source.connect_errors = [TransientNetworkFailure("still down")]
        source.callbacks.on_close()
        assert controller.state.phase in (ConnectionPhase.DEGRADED, ConnectionPhase.RECONNECTING)
        await _settle(lambda: source.connect_calls == 3 and controller.state.phase is ConnectionPhase.CONNECTED)
        await controller.stop()
        return controller

    asyncio.run(scenario())
    assert sleep.short == [1.0, 2.0]
    assert source.presence[:2] == [True, True]


def test_reconnect_exhaustion_is_terminal() -> None:
    source = FakeSource()
    sleep = FakeSleep()

    async def scenario() -> ConnectionController:
        controller = _controller(source, sleep=sleep)
        await controller.start()
        source.fail_connect = True
        source.callbacks.on_error(RuntimeError("socket reset"))
        await asyncio.wait_for(controller.wait_closed(), timeout=1)
        return controller

    controller = asyncio.run(scenario())
    assert controller.state.phase is ConnectionPhase.DISCONNECTED
    assert not controller.running
    # One initial connect plus max_attempts retries, with doubling delays.
    assert source.connect_calls == 4
    assert sleep.short == [1.0, 2.0, 4.0]


def test_reconnecting_state_reports_next_retry() -> None:
    source = FakeSource()

    async def scenario() -> None:
        controller = _controller(source, sleep=FakeSleep(), base_delay=100.0, max_delay=100.0)
        await controller.start()
        source.callbacks.on_close()
        await _settle(lambda: controller.state.phase is ConnectionPhase.RECONNECTING)
        assert controller.state.attempt == 0
        assert controller.state.next_retry_at == pytest.approx(1100.0)
        await controller.stop()

    asyncio.run(scenario())


def test_session_expiry_triggers_reauthentication() -> None:
    source = FakeSource()
    login = FakeLogin()

    async def scenario() -> None:
        controller = _controller(source, login=login)
        await controller.start()
        source.callbacks.on_error(SessionExpired("login_required"))
        await _settle(lambda: login.calls == 2 and controller.state.phase is ConnectionPhase.CONNECTED)
        await controller.stop()

    asyncio.run(scenario())
    assert source.connect_calls == 2


def test_session_rejected_on_reconnect_reauthenticates_next_attempt() -> None:
    source = FakeSource()
    login = FakeLogin()
    sleep = FakeSleep()

    async def scenario() -> None:
        controller = _controller(source, login=login, sleep=sleep)
        await controller.start()
        source.connect_errors = [SessionExpired("login_required")]
        source.callbacks.on_close()
        await _settle(lambda: login.calls == 2 and controller.state.phase is ConnectionPhase.CONNECTED)
        await controller.stop()

    asyncio.run(scenario())
    assert source.connect_calls == 3
    assert sleep.short == [1.0, 2.0]


def test_failed_reauthentication_is_terminal() -> None:
    source = FakeSource()
    login = FakeLogin()

    async def scenario() -> ConnectionController:
        controller = _controller(source, login=login)
        await controller.start()
        login.error = AuthFailure("password changed")
        source.callbacks.on_error(SessionExpired("login_required"))
        await asyncio.wait_for(controller.wait_closed(), timeout=1)
        return controller

    controller = asyncio.run(scenario())
    assert controller.state.phase is ConnectionPhase.DISCONNECTED
    assert controller.state.reason == "password changed"
    assert source.connect_calls == 1


def test_repeated_failure_signals_start_one_reconnect_loop() -> None:
    source = FakeSource()

    async def scenario() -> None:
        controller = _controller(source)
        await controller.start()
        source.callbacks.on_close()
        source.callbacks.on_error(RuntimeError("late error"))
        await _settle(lambda: controller.state.phase is ConnectionPhase.CONNECTED and source.connect_calls > 1)
        await controller.stop()

    asyncio.run(scenario())
    assert source.connect_calls == 2


def test_presence_is_noop_unless_connected() -> None:
    source = FakeSource()

    async def scenario() -> bool:
        controller = _controller(source)
        return await controller.set_presence(True)

    assert asyncio.run(scenario()) is False
    assert source.presence == []


def test_events_are_dispatched_one_at_a_time() -> None:
    source = FakeSource()
    trace: list[str] = []

    async def on_event(raw: dict) -> None:
        trace.append(f"start:{raw['n']}")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        trace.append(f"end:{raw['n']}")

    async def scenario() -> ConnectionController:
        controller = _controller(source, on_event=on_event)
        await controller.start()
        for n in range(3):
            source.callbacks.on_event({"n": n})
        await _settle(lambda: controller.events_dispatched == 3)
        await controller.stop()
        return controller

    asyncio.run(scenario())
    assert trace == ["start:0", "end:0", "start:1", "end:1", "start:2", "end:2"]


def test_dispatch_survives_handler_errors() -> None:
    source = FakeSource()
    seen: list[int] = []

    async def on_event(raw: dict) -> None:
        if raw["n"] == 0:
            raise ValueError("bad event")
        seen.append(raw["n"])

    async def scenario() -> None:
        controller = _controller(source, on_event=on_event)
        await controller.start()
        source.callbacks.on_event({"n": 0})
        source.callbacks.on_event({"n": 1})
        await controller.stop()

    asyncio.run(scenario())
    assert seen == [1]


def test_shutdown_drains_queue_and_goes_background() -> None:
    source = FakeSource()
    handled: list[int] = []

    async def on_event(raw: dict) -> None:
        await asyncio.sleep(0)
        handled.append(raw["n"])

    async def scenario() -> ConnectionController:
        controller = _controller(source, on_event=on_event)
        await controller.start()
        for n in range(5):
            source.callbacks.on_event({"n": n})
        await controller.stop()
        await asyncio.wait_for(controller.wait_closed(), timeout=1)
        return controller

    controller = asyncio.run(scenario())
    assert handled == [0, 1, 2, 3, 4]
    assert source.presence[-1] is False
    assert source.disconnects == 1
    assert controller.state.phase is ConnectionPhase.DISCONNECTED
    assert controller.state.reason == "shutdown"
