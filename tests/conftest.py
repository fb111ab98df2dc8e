"""Test harness configuration.

This repo uses a `src/` layout. Ensure tests always import the in-repo code
even when an older `relaycord` is installed.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 30


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_path = str(repo_root / "src")
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Apply a default per-test timeout (via `pytest-timeout`) to unit tests."""
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"

READY_USER = {"id": "100", "username": "me", "discriminator": "0"}


def ready_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "session_id": "session-1",
        "resume_gateway_url": "wss://resume.test",
        "user": dict(READY_USER),
        "users": [],
        "guilds": [],
        "private_channels": [],
        "user_settings": {},
    }
    payload.update(overrides)
    return payload


class FakeGatewaySocket:
    """Scripted stand-in for a gateway websocket.

    Frames are queued with `push*`; replies to Identify, Resume and Heartbeat
    are generated the way the gateway would send them.
    """

    def __init__(
        self,
        *,
        heartbeat_interval_ms: int = 40_000,
        hello: bool = True,
        auto_ack: bool = True,
        on_identify: Optional[Callable[["FakeGatewaySocket", dict[str, Any]], None]] = None,
        on_resume: Optional[Callable[["FakeGatewaySocket", dict[str, Any]], None]] = None,
        ready: Optional[dict[str, Any]] = None,
    ) -> None:
        self.inbox: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.close_codes: list[int] = []
        self.sequence = 0
        self.auto_ack = auto_ack
        self.closed = False
        self._on_identify = on_identify or FakeGatewaySocket.reply_ready
        self._on_resume = on_resume or FakeGatewaySocket.reply_resumed
        self._ready = ready or ready_payload()
        if hello:
            self.push({"op": 10, "d": {"heartbeat_interval": heartbeat_interval_ms}})

    def push(self, payload: dict[str, Any]) -> None:
        self.inbox.put_nowait(json.dumps(payload))

    def push_dispatch(self, event: str, data: Any, *, seq: Optional[int] = None) -> int:
        if seq is None:
            self.sequence += 1
            seq = self.sequence
        self.push({"op": 0, "t": event, "s": seq, "d": data})
        return seq

    def push_close(self, code: int, reason: str = "") -> None:
        self.inbox.put_nowait(ConnectionClosed(Close(code, reason), None))

    @staticmethod
    def reply_ready(socket: "FakeGatewaySocket", _payload: dict[str, Any]) -> None:
        socket.push_dispatch("READY", socket._ready)

    @staticmethod
    def reply_resumed(socket: "FakeGatewaySocket", payload: dict[str, Any]) -> None:
        socket.sequence = int(payload["d"]["seq"] or 0)
        socket.push_dispatch("RESUMED", {})

    def ops_sent(self) -> list[int]:
        return [payload["op"] for payload in self.sent]

    def sent_with_op(self, op: int) -> list[dict[str, Any]]:
        return [payload for payload in self.sent if payload["op"] == op]

    async def recv(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            self.closed = True
            self.inbox.put_nowait(item)
            raise item
        return item

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionClosed(None, Close(1006, ""))
        payload = json.loads(message)
        self.sent.append(payload)
        op = payload["op"]
        if op == 2:
            self._on_identify(self, payload)
        elif op == 6:
            self._on_resume(self, payload)
        elif op == 1 and self.auto_ack:
            self.push({"op": 11})

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_codes.append(code)
        self.push_close(code, reason)


class FakeSocketFactory:
    def __init__(self, *items: Any) -> None:
        self._items = list(items)
        self.calls: list[tuple[str, str, str]] = []

    async def __call__(self, url: str, origin: str, user_agent: str) -> FakeGatewaySocket:
        self.calls.append((url, origin, user_agent))
        if not self._items:
            raise OSError("no more sockets")
        item = self._items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeSleep:
    """Records requested delays; `instant` decides which return immediately.

    Calls that are not instant block until cancelled, or until the event in
    `gates` for that call index is set.
    """

    def __init__(
        self,
        instant: Callable[[int, float], bool] = lambda _index, _seconds: True,
        gates: Optional[dict[int, asyncio.Event]] = None,
    ) -> None:
        self.calls: list[float] = []
        self._instant = instant
        self._gates = gates or {}

    async def __call__(self, seconds: float) -> None:
        index = len(self.calls)
        self.calls.append(seconds)
        gate = self._gates.get(index)
        if gate is not None:
            await gate.wait()
            return
        if self._instant(index, seconds):
            await asyncio.sleep(0)
            return
        await asyncio.Event().wait()


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition was not met in time")
        await asyncio.sleep(0.001)


async def _drain(subscription: Any) -> list[Any]:
    items = []
    while subscription.pending():
        items.append(await subscription.get())
    return items


@pytest.fixture
def fake_socket_cls() -> type[FakeGatewaySocket]:
    return FakeGatewaySocket


@pytest.fixture
def socket_factory_cls() -> type[FakeSocketFactory]:
    return FakeSocketFactory


@pytest.fixture
def fake_sleep_cls() -> type[FakeSleep]:
    return FakeSleep


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return _wait_until


@pytest.fixture
def drain() -> Callable[..., Any]:
    return _drain


@pytest.fixture
def make_ready() -> Callable[..., dict[str, Any]]:
    return ready_payload
