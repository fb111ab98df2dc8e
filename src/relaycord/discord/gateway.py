from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.logging_utils import log_event
from .broadcast import Broadcast, CurrentValue
from .constants import (
    DEFAULT_CLOSE_TIMEOUT_SECONDS,
    DEFAULT_HELLO_TIMEOUT_SECONDS,
    DEFAULT_RECONNECT_BASE_SECONDS,
    DEFAULT_RECONNECT_MAX_SECONDS,
    DEFAULT_UNVIABLE_AFTER,
    DISCORD_API_VERSION,
    DISCORD_GATEWAY_URL,
    RESUMABLE_CLOSE_CODE,
)
from .disguise import DEFAULT_DISGUISE, Branch, Disguise
from .errors import (
    GatewayAuthenticationError,
    GatewayClosedError,
    GatewayConnectError,
    GatewayError,
    GatewayProtocolError,
    GatewayStateError,
)
from .packet_log import PacketLog, redact_packet


class Opcode(enum.IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    PRESENCE_UPDATE = 3
    VOICE_STATE_UPDATE = 4
    RESUME = 6
    RECONNECT = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    IDENTIFYING = "identifying"
    RESUMING = "resuming"
    CONNECTED = "connected"
    UNVIABLE = "unviable"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


AUTHENTICATION_FAILED_CLOSE_CODE = 4004
DEFAULT_FATAL_CLOSE_CODES = frozenset({4004, 4010, 4011, 4012, 4013, 4014})
DEFAULT_NON_RESUMABLE_CLOSE_CODES = frozenset({1000, 1001, 4007, 4009})


class CloseAction(enum.Enum):
    RESUME = "resume"
    IDENTIFY = "identify"
    FAIL = "fail"


@dataclass(frozen=True)
class ClosePolicy:
    """Maps gateway close codes to what the connection does next."""

    fatal_codes: frozenset[int] = DEFAULT_FATAL_CLOSE_CODES
    non_resumable_codes: frozenset[int] = DEFAULT_NON_RESUMABLE_CLOSE_CODES

    @classmethod
    def from_codes(
        cls,
        *,
        fatal: Optional[Iterable[int]] = None,
        non_resumable: Optional[Iterable[int]] = None,
    ) -> "ClosePolicy":
        return cls(
            fatal_codes=(
                DEFAULT_FATAL_CLOSE_CODES if fatal is None else frozenset(fatal)
            ),
            non_resumable_codes=(
                DEFAULT_NON_RESUMABLE_CLOSE_CODES
                if non_resumable is None
                else frozenset(non_resumable)
            ),
        )

    def classify(self, code: Optional[int]) -> CloseAction:
        if code is None:
            return CloseAction.RESUME
        if code in self.fatal_codes:
            return CloseAction.FAIL
        if code in self.non_resumable_codes:
            return CloseAction.IDENTIFY
        return CloseAction.RESUME


@dataclass(frozen=True)
class GatewayPacket:
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None
    raw: dict[str, Any] | None = field(default=None, compare=False, repr=False)

    def to_json(self) -> dict[str, Any]:
        if self.raw is not None:
            return self.raw
        return {"op": self.op, "d": self.d, "s": self.s, "t": self.t}


@dataclass
class GatewaySession:
    session_id: Optional[str] = None
    sequence: Optional[int] = None
    resume_url: Optional[str] = None

    @property
    def resumable(self) -> bool:
        return self.session_id is not None

    def observe(self, sequence: int) -> None:
        if self.sequence is None or sequence > self.sequence:
            self.sequence = sequence

    def clear(self) -> None:
        self.session_id = None
        self.sequence = None
        self.resume_url = None


class GatewaySocket(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


SocketFactory = Callable[[str, str, str], Awaitable[GatewaySocket]]


async def open_websocket(url: str, origin: str, user_agent: str) -> GatewaySocket:
    return await websockets.connect(
        url,
        origin=origin,
        user_agent_header=user_agent,
        max_size=None,
    )


def parse_gateway_packet(frame: str | bytes | dict[str, Any]) -> GatewayPacket:
    if isinstance(frame, bytes):
        frame = frame.decode("utf-8")
    try:
        payload = json.loads(frame) if isinstance(frame, str) else dict(frame)
    except ValueError as exc:
        raise GatewayProtocolError(f"gateway frame is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise GatewayProtocolError("gateway frame must be a JSON object")
    op = payload.get("op")
    if not isinstance(op, int) or isinstance(op, bool):
        raise GatewayProtocolError(f"gateway frame missing numeric op: {payload!r}")
    seq = payload.get("s")
    event_name = payload.get("t")
    return GatewayPacket(
        op=op,
        d=payload.get("d"),
        s=seq if isinstance(seq, int) else None,
        t=event_name if isinstance(event_name, str) else None,
        raw=payload,
    )


def build_identify_payload(
    *, token: str, disguise: Disguise, intents: Optional[int] = None
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "token": token,
        "capabilities": disguise.capabilities,
        "properties": disguise.properties(),
        "presence": {
            "status": "online",
            "since": 0,
            "activities": [],
            "afk": False,
        },
        "compress": False,
        "client_state": {
            "guild_versions": {},
            "highest_last_message_id": "0",
            "read_state_version": 0,
            "user_guild_settings_version": -1,
            "user_settings_version": -1,
        },
    }
    if intents is not None:
        data["intents"] = intents
    return {"op": Opcode.IDENTIFY.value, "d": data}


def build_resume_payload(
    *, token: str, session_id: str, sequence: Optional[int]
) -> dict[str, Any]:
    return {
        "op": Opcode.RESUME.value,
        "d": {"token": token, "session_id": session_id, "seq": sequence},
    }


def build_heartbeat_payload(sequence: Optional[int]) -> dict[str, Any]:
    return {"op": Opcode.HEARTBEAT.value, "d": sequence}


def calculate_reconnect_backoff(
    attempt: int,
    *,
    base_seconds: float = DEFAULT_RECONNECT_BASE_SECONDS,
    max_seconds: float = DEFAULT_RECONNECT_MAX_SECONDS,
    rand_float: Callable[[], float] = random.random,
) -> float:
    normalized_attempt = max(attempt, 0)
    if max_seconds <= 0.0:
        return 0.0
    if base_seconds <= 0.0:
        return 0.0
    min_jitter = 0.8
    # Past this attempt even the smallest jitter lands above the cap.
    cap_threshold = math.ceil(math.log2(max_seconds / (base_seconds * min_jitter)))
    if normalized_attempt >= max(cap_threshold, 0):
        return max_seconds
    scaled = base_seconds * (2**normalized_attempt)
    jitter_factor = 0.8 + (0.4 * min(max(rand_float(), 0.0), 1.0))
    result: float = min(max_seconds, max(0.0, scaled * jitter_factor))
    return result


def gateway_close_code(exc: BaseException) -> tuple[Optional[int], str]:
    received = getattr(exc, "rcvd", None)
    received_code = getattr(received, "code", None)
    if isinstance(received_code, int):
        return received_code, str(getattr(received, "reason", "") or "")
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code, str(getattr(exc, "reason", "") or "")
    return None, ""


def _with_query(url: str) -> str:
    if "?" in url:
        return url
    return f"{url.rstrip('/')}/?encoding=json&v={DISCORD_API_VERSION}"


def _random_invalid_session_delay() -> float:
    return random.uniform(1.0, 5.0)


class _SocketEnded(Exception):
    def __init__(self, code: Optional[int], reason: str) -> None:
        super().__init__(f"gateway socket ended (code={code})")
        self.code = code
        self.reason = reason


class GatewayConnection:
    """One authenticated gateway session, carried across sockets.

    `connect` performs the first handshake itself and then hands the socket to
    a single background task that owns receiving, heartbeating and
    reconnecting. Decoded packets are published on `packets` in arrival order;
    lifecycle transitions are published on `connection_state`.
    """

    def __init__(
        self,
        *,
        token: str,
        disguise: Disguise = DEFAULT_DISGUISE,
        intents: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
        packet_log: Optional[PacketLog] = None,
        close_policy: Optional[ClosePolicy] = None,
        hello_timeout: float = DEFAULT_HELLO_TIMEOUT_SECONDS,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT_SECONDS,
        reconnect_base_seconds: float = DEFAULT_RECONNECT_BASE_SECONDS,
        reconnect_max_seconds: float = DEFAULT_RECONNECT_MAX_SECONDS,
        unviable_after: float = DEFAULT_UNVIABLE_AFTER,
        socket_factory: Optional[SocketFactory] = None,
        rand_float: Callable[[], float] = random.random,
        invalid_session_delay: Callable[[], float] = _random_invalid_session_delay,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not token:
            raise ValueError("gateway connection requires a non-empty token")
        self._token = token
        self._disguise = disguise
        self._intents = intents
        self._logger = logger or logging.getLogger(__name__)
        self._packet_log = packet_log
        self._close_policy = close_policy or ClosePolicy()
        self._hello_timeout = hello_timeout
        self._close_timeout = close_timeout
        self._reconnect_base_seconds = reconnect_base_seconds
        self._reconnect_max_seconds = reconnect_max_seconds
        self._unviable_after = min(max(unviable_after, 0.0), 1.0)
        self._socket_factory = socket_factory or open_websocket
        self._rand_float = rand_float
        self._invalid_session_delay = invalid_session_delay
        self._sleep = sleep_fn

        self.packets: Broadcast[GatewayPacket] = Broadcast()
        self.sent_packets: Broadcast[dict[str, Any]] = Broadcast()
        self.connection_state: CurrentValue[ConnectionState] = CurrentValue(
            ConnectionState.DISCONNECTED, distinct=True
        )
        self.session = GatewaySession()

        self._gateway_url = DISCORD_GATEWAY_URL
        self._origin = Branch.STABLE.base_url
        self._socket: Optional[GatewaySocket] = None
        self._run_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._reidentify_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_interval: Optional[float] = None
        self._acknowledged = True
        self._close_intent: Optional[CloseAction] = None
        self._stopping = False
        self._failure: Optional[GatewayError] = None
        self._reconnect_attempt = 0

    @property
    def state(self) -> ConnectionState:
        return self.connection_state.value

    @property
    def heartbeat_interval(self) -> Optional[float]:
        return self._heartbeat_interval

    @property
    def failure(self) -> Optional[GatewayError]:
        return self._failure

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def connect(
        self,
        gateway_url: str = DISCORD_GATEWAY_URL,
        origin_endpoint: str = Branch.STABLE.base_url,
    ) -> None:
        if self.running or self._socket is not None:
            raise GatewayStateError("gateway connection is already running")
        self._stopping = False
        self._failure = None
        self._reconnect_attempt = 0
        self._gateway_url = gateway_url
        self._origin = origin_endpoint
        try:
            socket = await self._handshake(gateway_url)
        except _SocketEnded as exc:
            error: GatewayError
            if self._close_policy.classify(exc.code) is CloseAction.FAIL:
                error = self._terminal_error(exc.code, exc.reason)
            else:
                error = GatewayConnectError(
                    f"gateway closed during handshake (code={exc.code})"
                )
            self._fail(error)
            raise error from exc
        except GatewayConnectError as exc:
            self._fail(exc)
            raise
        self._run_task = asyncio.create_task(
            self._run(socket), name="relaycord-gateway"
        )

    async def disconnect(self, code: int = 1000) -> None:
        run_task, self._run_task = self._run_task, None
        socket = self._socket
        if socket is None and (run_task is None or run_task.done()):
            return
        self._stopping = True
        await self._cancel_background()
        if run_task is not None and not run_task.done():
            run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await run_task
        socket, self._socket = self._socket, None
        if socket is not None:
            await self._close_socket(socket, code)
        log_event(self._logger, logging.INFO, "gateway.disconnected", code=code)
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self) -> None:
        """Wait for the background task to end, re-raising a terminal failure."""
        task = self._run_task
        if task is not None:
            await asyncio.wait({task})
        if self._failure is not None:
            raise self._failure

    def close_streams(self) -> None:
        self.packets.close()
        self.sent_packets.close()
        self.connection_state.close()

    async def send(self, payload: dict[str, Any]) -> None:
        socket = self._socket
        if socket is None:
            raise GatewayStateError("gateway connection is not open")
        await self._send(socket, payload)

    async def _handshake(self, url: str) -> GatewaySocket:
        self._set_state(ConnectionState.CONNECTING)
        log_event(self._logger, logging.INFO, "gateway.connecting", url=url)
        try:
            socket = await asyncio.wait_for(
                self._socket_factory(url, self._origin, self._disguise.user_agent),
                timeout=self._hello_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayConnectError(f"timed out opening gateway socket {url}") from exc
        except ConnectionClosed as exc:
            raise _SocketEnded(*gateway_close_code(exc)) from exc
        except (OSError, WebSocketException) as exc:
            raise GatewayConnectError(f"failed to open gateway socket: {exc}") from exc

        self._socket = socket
        self._acknowledged = True
        self._close_intent = None
        try:
            hello = await self._await_hello(socket)
        except BaseException:
            self._socket = None
            with contextlib.suppress(Exception):
                await socket.close(code=RESUMABLE_CLOSE_CODE)
            raise

        interval_ms = hello.d.get("heartbeat_interval") if isinstance(hello.d, dict) else None
        if not isinstance(interval_ms, (int, float)) or interval_ms <= 0:
            self._socket = None
            with contextlib.suppress(Exception):
                await socket.close(code=RESUMABLE_CLOSE_CODE)
            raise GatewayConnectError("gateway HELLO missing heartbeat_interval")
        self._heartbeat_interval = float(interval_ms) / 1000.0
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(socket, self._heartbeat_interval),
            name="relaycord-heartbeat",
        )

        try:
            if self.session.resumable:
                self._set_state(ConnectionState.RESUMING)
                await self._send(
                    socket,
                    build_resume_payload(
                        token=self._token,
                        session_id=self.session.session_id or "",
                        sequence=self.session.sequence,
                    ),
                )
            else:
                await self._identify(socket)
        except ConnectionClosed as exc:
            await self._abort_handshake(socket)
            raise _SocketEnded(*gateway_close_code(exc)) from exc
        except (OSError, WebSocketException) as exc:
            await self._abort_handshake(socket)
            raise GatewayConnectError(
                f"gateway socket failed while starting the session: {exc}"
            ) from exc
        return socket

    async def _abort_handshake(self, socket: GatewaySocket) -> None:
        await self._cancel_background()
        if self._socket is socket:
            self._socket = None
        await self._close_socket(socket, RESUMABLE_CLOSE_CODE)

    async def _await_hello(self, socket: GatewaySocket) -> GatewayPacket:
        try:
            raw = await asyncio.wait_for(socket.recv(), timeout=self._hello_timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayConnectError("timed out waiting for gateway HELLO") from exc
        except ConnectionClosed as exc:
            raise _SocketEnded(*gateway_close_code(exc)) from exc
        except OSError as exc:
            raise GatewayConnectError(f"gateway socket failed before HELLO: {exc}") from exc
        try:
            hello = parse_gateway_packet(raw)
        except GatewayProtocolError as exc:
            raise GatewayConnectError(str(exc)) from exc
        self._receive(hello)
        if hello.op != Opcode.HELLO:
            raise GatewayConnectError(
                f"gateway sent op {hello.op} before HELLO"
            )
        return hello

    async def _identify(self, socket: GatewaySocket) -> None:
        self._set_state(ConnectionState.IDENTIFYING)
        await self._send(
            socket,
            build_identify_payload(
                token=self._token, disguise=self._disguise, intents=self._intents
            ),
        )

    async def _run(self, socket: GatewaySocket) -> None:
        current: Optional[GatewaySocket] = socket
        while current is not None:
            code, reason = await self._serve(current)
            await self._cancel_background()
            if self._socket is current:
                self._socket = None
            if self._stopping:
                return
            action = self._close_intent or self._close_policy.classify(code)
            log_event(
                self._logger,
                logging.INFO,
                "gateway.socket_closed",
                code=code,
                reason=reason,
                action=action.value,
            )
            if action is CloseAction.FAIL:
                self._fail(self._terminal_error(code, reason))
                return
            if action is CloseAction.IDENTIFY:
                self.session.clear()
            current = await self._reconnect()

    async def _serve(self, socket: GatewaySocket) -> tuple[Optional[int], str]:
        try:
            while True:
                raw = await socket.recv()
                try:
                    packet = parse_gateway_packet(raw)
                except GatewayProtocolError as exc:
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "gateway.packet.undecodable",
                        exc=exc,
                    )
                    continue
                await self._handle_packet(socket, packet)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            return gateway_close_code(exc)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "gateway.socket_error",
                exc=exc,
            )
            return None, str(exc)

    async def _reconnect(self) -> Optional[GatewaySocket]:
        while not self._stopping:
            self._set_state(ConnectionState.RECONNECTING)
            delay = calculate_reconnect_backoff(
                self._reconnect_attempt,
                base_seconds=self._reconnect_base_seconds,
                max_seconds=self._reconnect_max_seconds,
                rand_float=self._rand_float,
            )
            self._reconnect_attempt += 1
            log_event(
                self._logger,
                logging.INFO,
                "gateway.reconnect.scheduled",
                attempt=self._reconnect_attempt,
                delay_seconds=round(delay, 3),
                resume=self.session.resumable,
            )
            await self._sleep(delay)
            url = self._gateway_url
            if self.session.resumable and self.session.resume_url:
                url = _with_query(self.session.resume_url)
            try:
                return await self._handshake(url)
            except _SocketEnded as exc:
                action = self._close_policy.classify(exc.code)
                if action is CloseAction.FAIL:
                    self._fail(self._terminal_error(exc.code, exc.reason))
                    return None
                if action is CloseAction.IDENTIFY:
                    self.session.clear()
            except GatewayConnectError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "gateway.reconnect.failed",
                    attempt=self._reconnect_attempt,
                    exc=exc,
                )
        return None

    async def _handle_packet(self, socket: GatewaySocket, packet: GatewayPacket) -> None:
        self._receive(packet)
        op = packet.op
        if op == Opcode.DISPATCH:
            if packet.t == "READY" and isinstance(packet.d, dict):
                session_id = packet.d.get("session_id")
                if isinstance(session_id, str):
                    self.session.session_id = session_id
                resume_url = packet.d.get("resume_gateway_url")
                if isinstance(resume_url, str) and resume_url:
                    self.session.resume_url = resume_url
                self._established("identified")
            elif packet.t == "RESUMED":
                self._established("resumed")
            return
        if op == Opcode.HEARTBEAT:
            await self._send(socket, build_heartbeat_payload(self.session.sequence))
            return
        if op == Opcode.HEARTBEAT_ACK:
            self._acknowledged = True
            if self.state is ConnectionState.UNVIABLE:
                self._set_state(ConnectionState.CONNECTED)
            return
        if op == Opcode.RECONNECT:
            log_event(self._logger, logging.INFO, "gateway.reconnect.requested")
            await self._abandon(socket, CloseAction.RESUME)
            return
        if op == Opcode.INVALID_SESSION:
            resumable = packet.d is True
            log_event(
                self._logger,
                logging.WARNING,
                "gateway.session.invalid",
                resumable=resumable,
            )
            if resumable:
                await self._abandon(socket, CloseAction.RESUME)
                return
            self.session.clear()
            if self._reidentify_task is None or self._reidentify_task.done():
                self._reidentify_task = asyncio.create_task(
                    self._reidentify(socket), name="relaycord-reidentify"
                )
            return
        if op == Opcode.HELLO:
            log_event(self._logger, logging.DEBUG, "gateway.hello.unexpected")
            return
        log_event(self._logger, logging.DEBUG, "gateway.op.unhandled", op=op)

    def _receive(self, packet: GatewayPacket) -> None:
        if packet.s is not None:
            self.session.observe(packet.s)
        self._logger.debug("gateway <- op=%s t=%s s=%s", packet.op, packet.t, packet.s)
        self.packets.publish(packet)

    def _established(self, how: str) -> None:
        self._reconnect_attempt = 0
        log_event(
            self._logger,
            logging.INFO,
            "gateway.connected",
            how=how,
            sequence=self.session.sequence,
        )
        self._set_state(ConnectionState.CONNECTED)

    async def _heartbeat_loop(self, socket: GatewaySocket, interval_seconds: float) -> None:
        # Spread the first beat so reconnecting clients do not beat in lockstep.
        await self._sleep(interval_seconds * min(max(self._rand_float(), 0.0), 1.0))
        while not self._stopping:
            if not self._acknowledged:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "gateway.heartbeat.missed_ack",
                    interval_seconds=interval_seconds,
                )
                await self._abandon(socket, CloseAction.RESUME)
                return
            self._acknowledged = False
            await self._send(socket, build_heartbeat_payload(self.session.sequence))
            if self._unviable_after > 0.0:
                await self._sleep(interval_seconds * self._unviable_after)
                if not self._acknowledged and self.state is ConnectionState.CONNECTED:
                    log_event(self._logger, logging.WARNING, "gateway.unviable")
                    self._set_state(ConnectionState.UNVIABLE)
                await self._sleep(interval_seconds * (1.0 - self._unviable_after))
            else:
                await self._sleep(interval_seconds)

    async def _abandon(self, socket: GatewaySocket, intent: CloseAction) -> None:
        """Close the current socket once so the run loop moves on."""
        if self._close_intent is not None:
            return
        self._close_intent = intent
        await self._close_socket(socket, RESUMABLE_CLOSE_CODE)

    async def _close_socket(self, socket: GatewaySocket, code: int) -> None:
        try:
            await asyncio.wait_for(socket.close(code=code), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            log_event(
                self._logger,
                logging.WARNING,
                "gateway.close.timeout",
                code=code,
                timeout_seconds=self._close_timeout,
            )
        except Exception as exc:
            log_event(self._logger, logging.DEBUG, "gateway.close.error", exc=exc)

    async def _send(self, socket: GatewaySocket, payload: dict[str, Any]) -> None:
        await socket.send(json.dumps(payload))
        redacted = redact_packet(payload)
        self._logger.debug("gateway -> op=%s", payload.get("op"))
        if self._packet_log is not None:
            self._packet_log.record_sent(payload)
        self.sent_packets.publish(redacted)

    async def _reidentify(self, socket: GatewaySocket) -> None:
        await self._sleep(self._invalid_session_delay())
        if self._socket is not socket:
            return
        try:
            await self._identify(socket)
        except (OSError, WebSocketException) as exc:
            # The receive loop sees the same failure and reconnects.
            log_event(self._logger, logging.DEBUG, "gateway.reidentify.failed", exc=exc)

    async def _cancel_background(self) -> None:
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        reidentify, self._reidentify_task = self._reidentify_task, None
        for task in (heartbeat, reidentify):
            if task is None or task is asyncio.current_task():
                continue
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                # Heartbeats fail routinely once the socket is gone.
                log_event(self._logger, logging.DEBUG, "gateway.task.ended", exc=exc)

    def _terminal_error(self, code: Optional[int], reason: str) -> GatewayClosedError:
        if code == AUTHENTICATION_FAILED_CLOSE_CODE:
            return GatewayAuthenticationError(
                "gateway rejected the authentication token", code=code, reason=reason
            )
        return GatewayClosedError(
            f"gateway closed the session with fatal code {code}",
            code=code,
            reason=reason,
        )

    def _fail(self, error: GatewayError) -> None:
        self._failure = error
        self.session.clear()
        log_event(self._logger, logging.ERROR, "gateway.failed", exc=error)
        self._set_state(ConnectionState.FAILED)

    def _set_state(self, state: ConnectionState) -> None:
        if self.connection_state.set(state):
            log_event(self._logger, logging.DEBUG, "gateway.state", state=state.value)
