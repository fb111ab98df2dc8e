from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

from relaycord.discord.constants import DISCORD_GATEWAY_URL
from relaycord.discord.disguise import DEFAULT_DISGUISE
from relaycord.discord.errors import (
    GatewayAuthenticationError,
    GatewayConnectError,
    GatewayProtocolError,
    GatewayStateError,
)
from relaycord.discord.gateway import (
    CloseAction,
    ClosePolicy,
    ConnectionState,
    GatewayConnection,
    Opcode,
    build_heartbeat_payload,
    build_identify_payload,
    build_resume_payload,
    calculate_reconnect_backoff,
    gateway_close_code,
    parse_gateway_packet,
)


def _connection(factory: Any, sleep: Any, **kwargs: Any) -> GatewayConnection:
    kwargs.setdefault("rand_float", lambda: 0.5)
    return GatewayConnection(
        token="token-abc",
        socket_factory=factory,
        sleep_fn=sleep,
        invalid_session_delay=lambda: 2.5,
        logger=logging.getLogger("test.gateway"),
        **kwargs,
    )


def test_parse_gateway_packet_reads_fields() -> None:
    packet = parse_gateway_packet('{"op": 0, "t": "READY", "s": 1, "d": {"v": 9}}')
    assert packet.op == Opcode.DISPATCH
    assert packet.t == "READY"
    assert packet.s == 1
    assert packet.d == {"v": 9}

    hello = parse_gateway_packet(b'{"op": 10, "d": {"heartbeat_interval": 41250}}')
    assert hello.op == Opcode.HELLO
    assert hello.s is None
    assert hello.t is None


@pytest.mark.parametrize("frame", ["not json", "[1, 2]", '{"d": null}', '{"op": "0"}'])
def test_parse_gateway_packet_rejects_malformed_frames(frame: str) -> None:
    with pytest.raises(GatewayProtocolError):
        parse_gateway_packet(frame)


def test_identify_payload_carries_disguise() -> None:
    payload = build_identify_payload(token="token-abc", disguise=DEFAULT_DISGUISE)
    assert payload["op"] == Opcode.IDENTIFY
    data = payload["d"]
    assert data["token"] == "token-abc"
    assert data["capabilities"] == 125
    assert data["properties"]["os"] == "Mac OS X"
    assert data["properties"]["browser_user_agent"] == DEFAULT_DISGUISE.user_agent
    assert data["properties"]["client_build_number"] == 105780
    assert "intents" not in data

    with_intents = build_identify_payload(
        token="token-abc", disguise=DEFAULT_DISGUISE, intents=513
    )
    assert with_intents["d"]["intents"] == 513


def test_resume_and_heartbeat_payloads() -> None:
    assert build_resume_payload(token="t", session_id="s", sequence=42) == {
        "op": 6,
        "d": {"token": "t", "session_id": "s", "seq": 42},
    }
    assert build_heartbeat_payload(None) == {"op": 1, "d": None}
    assert build_heartbeat_payload(7) == {"op": 1, "d": 7}


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (4004, CloseAction.FAIL),
        (4014, CloseAction.FAIL),
        (1000, CloseAction.IDENTIFY),
        (4009, CloseAction.IDENTIFY),
        (4000, CloseAction.RESUME),
        (1006, CloseAction.RESUME),
        (None, CloseAction.RESUME),
    ],
)
def test_close_policy_defaults(code: Any, expected: CloseAction) -> None:
    assert ClosePolicy().classify(code) is expected


def test_close_policy_is_configurable() -> None:
    policy = ClosePolicy.from_codes(fatal=[4004, 4999], non_resumable=[])
    assert policy.classify(4999) is CloseAction.FAIL
    assert policy.classify(4009) is CloseAction.RESUME


def test_reconnect_backoff_is_non_decreasing_and_capped() -> None:
    delays = [
        calculate_reconnect_backoff(
            attempt, base_seconds=1.0, max_seconds=30.0, rand_float=lambda: 0.5
        )
        for attempt in range(10)
    ]
    assert delays[:3] == [1.0, 2.0, 4.0]
    assert delays == sorted(delays)
    assert max(delays) == 30.0


def test_reconnect_backoff_jitter_bounds() -> None:
    low = calculate_reconnect_backoff(2, rand_float=lambda: 0.0)
    high = calculate_reconnect_backoff(2, rand_float=lambda: 1.0)
    assert low == pytest.approx(4.0 * 0.8)
    assert high == pytest.approx(4.0 * 1.2)


def test_gateway_close_code_reads_received_frame() -> None:
    exc = ConnectionClosed(Close(4004, "Authentication failed"), None)
    assert gateway_close_code(exc) == (4004, "Authentication failed")
    assert gateway_close_code(RuntimeError("boom")) == (None, "")


@pytest.mark.anyio
async def test_hello_schedules_one_randomized_heartbeat(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    socket = fake_socket_cls(heartbeat_interval_ms=40_000)
    factory = socket_factory_cls(socket)
    sleep = fake_sleep_cls(instant=lambda index, _seconds: index == 0)
    conn = _connection(factory, sleep)

    await conn.connect()
    try:
        await wait_until(
            lambda: len(sleep.calls) == 2 and conn.state is ConnectionState.CONNECTED
        )
        assert conn.heartbeat_interval == 40.0
        first_delay = sleep.calls[0]
        assert 0.0 <= first_delay < 40.0
        assert first_delay == 20.0
        assert len(socket.sent_with_op(Opcode.HEARTBEAT)) == 1
        assert socket.close_codes == []
    finally:
        await conn.disconnect()

    identify = socket.sent[0]
    assert identify["op"] == Opcode.IDENTIFY
    assert identify["d"]["token"] == "token-abc"
    assert factory.calls == [
        (DISCORD_GATEWAY_URL, "https://discord.com", DEFAULT_DISGUISE.user_agent)
    ]


@pytest.mark.anyio
async def test_missed_ack_closes_once_and_resumes(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until, drain
) -> None:
    first = fake_socket_cls(auto_ack=False)
    second = fake_socket_cls()
    factory = socket_factory_cls(first, second)
    sleep = fake_sleep_cls(instant=lambda index, _seconds: index < 4)
    conn = _connection(factory, sleep, rand_float=lambda: 0.0)
    states = conn.connection_state.subscribe()

    await conn.connect()
    try:
        await wait_until(
            lambda: bool(second.sent_with_op(Opcode.RESUME))
            and conn.state is ConnectionState.CONNECTED
        )
    finally:
        await conn.disconnect()

    assert first.close_codes == [4000]
    assert len(factory.calls) == 2
    assert factory.calls[1][0] == "wss://resume.test/?encoding=json&v=9"
    resume = second.sent[0]
    assert resume == {
        "op": Opcode.RESUME,
        "d": {"token": "token-abc", "session_id": "session-1", "seq": 1},
    }
    observed = await drain(states)
    assert observed.count(ConnectionState.RECONNECTING) == 1
    assert ConnectionState.FAILED not in observed


@pytest.mark.anyio
async def test_resume_uses_highest_sequence(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    first = fake_socket_cls()
    second = fake_socket_cls()
    factory = socket_factory_cls(first, second)
    sleep = fake_sleep_cls(instant=lambda _index, seconds: seconds < 10)
    conn = _connection(factory, sleep)

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        first.push_dispatch("MESSAGE_ACK", {})
        first.push_dispatch("MESSAGE_ACK", {})
        first.push_dispatch("MESSAGE_ACK", {}, seq=2)
        first.push_close(1006)
        await wait_until(lambda: bool(second.sent_with_op(Opcode.RESUME)))
    finally:
        await conn.disconnect()

    assert second.sent_with_op(Opcode.RESUME)[0]["d"]["seq"] == 3
    assert first.close_codes == []


@pytest.mark.anyio
async def test_backoff_grows_between_failed_attempts_and_resets(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    first = fake_socket_cls()
    second = fake_socket_cls()
    factory = socket_factory_cls(first, OSError("boom"), OSError("boom"), second)
    sleep = fake_sleep_cls(instant=lambda _index, seconds: seconds < 10)
    conn = _connection(factory, sleep)

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        first.push_close(1006)
        await wait_until(
            lambda: bool(second.sent_with_op(Opcode.RESUME))
            and conn.state is ConnectionState.CONNECTED
        )
        assert conn.reconnect_attempt == 0
    finally:
        await conn.disconnect()

    backoff = [seconds for seconds in sleep.calls if seconds < 10]
    assert backoff == [1.0, 2.0, 4.0]
    assert len(factory.calls) == 4


@pytest.mark.anyio
async def test_auth_close_fails_without_reconnecting(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, drain
) -> None:
    socket = fake_socket_cls(
        on_identify=lambda sock, _payload: sock.push_close(4004, "Authentication failed")
    )
    factory = socket_factory_cls(socket, fake_socket_cls())
    sleep = fake_sleep_cls(instant=lambda _index, _seconds: False)
    conn = _connection(factory, sleep)
    states = conn.connection_state.subscribe()

    await conn.connect()
    with pytest.raises(GatewayAuthenticationError) as excinfo:
        await conn.wait_closed()

    assert excinfo.value.code == 4004
    assert conn.state is ConnectionState.FAILED
    observed = await drain(states)
    assert ConnectionState.RECONNECTING not in observed
    assert observed[-1] is ConnectionState.FAILED
    assert len(factory.calls) == 1
    assert conn.session.session_id is None


@pytest.mark.anyio
async def test_auth_close_during_handshake_fails_connect(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, drain
) -> None:
    socket = fake_socket_cls(hello=False)
    socket.push_close(4004, "Authentication failed")
    factory = socket_factory_cls(socket)
    conn = _connection(factory, fake_sleep_cls())
    states = conn.connection_state.subscribe()

    with pytest.raises(GatewayAuthenticationError):
        await conn.connect()

    assert await drain(states) == [
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTING,
        ConnectionState.FAILED,
    ]
    assert socket.sent == []


@pytest.mark.anyio
async def test_connect_fails_when_hello_never_arrives(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls
) -> None:
    factory = socket_factory_cls(fake_socket_cls(hello=False))
    conn = _connection(factory, fake_sleep_cls(), hello_timeout=0.05)

    with pytest.raises(GatewayConnectError):
        await conn.connect()

    assert conn.state is ConnectionState.FAILED
    assert isinstance(conn.failure, GatewayConnectError)


@pytest.mark.anyio
async def test_connect_fails_when_socket_cannot_open(
    socket_factory_cls, fake_sleep_cls
) -> None:
    conn = _connection(socket_factory_cls(OSError("refused")), fake_sleep_cls())

    with pytest.raises(GatewayConnectError):
        await conn.connect()

    assert conn.state is ConnectionState.FAILED


@pytest.mark.anyio
async def test_invalid_session_without_resume_identifies_on_same_socket(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    socket = fake_socket_cls()
    factory = socket_factory_cls(socket)
    sleep = fake_sleep_cls(instant=lambda _index, seconds: seconds == 2.5)
    conn = _connection(factory, sleep)

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        socket.push({"op": 9, "d": False})
        await wait_until(lambda: len(socket.sent_with_op(Opcode.IDENTIFY)) == 2)
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
    finally:
        await conn.disconnect()

    assert 2.5 in sleep.calls
    assert socket.sent_with_op(Opcode.RESUME) == []
    assert socket.close_codes == [1000]
    assert len(factory.calls) == 1


@pytest.mark.anyio
@pytest.mark.parametrize(
    "frame", [{"op": 7, "d": None}, {"op": 9, "d": True}], ids=["reconnect", "resumable"]
)
async def test_server_requested_reconnect_resumes(
    frame: dict[str, Any],
    fake_socket_cls,
    socket_factory_cls,
    fake_sleep_cls,
    wait_until,
) -> None:
    first = fake_socket_cls()
    second = fake_socket_cls()
    factory = socket_factory_cls(first, second)
    sleep = fake_sleep_cls(instant=lambda _index, seconds: seconds < 10)
    conn = _connection(factory, sleep)

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        first.push(frame)
        await wait_until(lambda: bool(second.sent))
    finally:
        await conn.disconnect()

    assert first.close_codes == [4000]
    assert second.ops_sent()[0] == Opcode.RESUME


@pytest.mark.anyio
async def test_server_heartbeat_request_is_answered_immediately(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    socket = fake_socket_cls()
    conn = _connection(
        socket_factory_cls(socket),
        fake_sleep_cls(instant=lambda _index, _seconds: False),
    )

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        socket.push({"op": 1, "d": None})
        await wait_until(lambda: bool(socket.sent_with_op(Opcode.HEARTBEAT)))
    finally:
        await conn.disconnect()

    assert socket.sent_with_op(Opcode.HEARTBEAT)[0]["d"] == 1


@pytest.mark.anyio
async def test_outstanding_ack_marks_connection_unviable(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    socket = fake_socket_cls(auto_ack=False)
    release = asyncio.Event()
    sleep = fake_sleep_cls(
        instant=lambda index, _seconds: index == 1, gates={0: release}
    )
    conn = _connection(socket_factory_cls(socket), sleep)

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        release.set()
        await wait_until(lambda: conn.state is ConnectionState.UNVIABLE)
        socket.push({"op": 11})
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
    finally:
        await conn.disconnect()

    assert socket.close_codes == [1000]


@pytest.mark.anyio
async def test_disconnect_is_idempotent(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    socket = fake_socket_cls()
    conn = _connection(
        socket_factory_cls(socket),
        fake_sleep_cls(instant=lambda _index, _seconds: False),
    )

    await conn.connect()
    await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
    await conn.disconnect()
    await conn.disconnect()

    assert socket.close_codes == [1000]
    assert conn.state is ConnectionState.DISCONNECTED
    assert not conn.running
    assert not conn.packets.closed


@pytest.mark.anyio
async def test_disconnect_before_connect_is_noop() -> None:
    conn = GatewayConnection(token="token-abc")
    await conn.disconnect()
    assert conn.state is ConnectionState.DISCONNECTED


@pytest.mark.anyio
async def test_connect_while_running_is_rejected(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls
) -> None:
    conn = _connection(
        socket_factory_cls(fake_socket_cls()),
        fake_sleep_cls(instant=lambda _index, _seconds: False),
    )
    await conn.connect()
    try:
        with pytest.raises(GatewayStateError):
            await conn.connect()
    finally:
        await conn.disconnect()


@pytest.mark.anyio
async def test_packets_are_published_in_order_and_bad_frames_dropped(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until, drain
) -> None:
    socket = fake_socket_cls()
    conn = _connection(
        socket_factory_cls(socket),
        fake_sleep_cls(instant=lambda _index, _seconds: False),
    )
    packets = conn.packets.subscribe()
    sent = conn.sent_packets.subscribe()

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        socket.inbox.put_nowait("{not json")
        socket.push_dispatch("TYPING_START", {"channel_id": "1"})
        await wait_until(lambda: conn.session.sequence == 2)
    finally:
        await conn.disconnect()

    received = await drain(packets)
    assert [(packet.op, packet.t) for packet in received] == [
        (Opcode.HELLO, None),
        (Opcode.DISPATCH, "READY"),
        (Opcode.DISPATCH, "TYPING_START"),
    ]
    outbound = await drain(sent)
    assert outbound[0]["op"] == Opcode.IDENTIFY
    assert outbound[0]["d"]["token"] == "<redacted>"


@pytest.mark.anyio
async def test_resume_send_failure_schedules_another_reconnect(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    first = fake_socket_cls()
    broken = fake_socket_cls()
    broken.closed = True
    third = fake_socket_cls()
    factory = socket_factory_cls(first, broken, third)
    sleep = fake_sleep_cls(instant=lambda _index, seconds: seconds < 10)
    conn = _connection(factory, sleep)

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        first.push_close(1006)
        await wait_until(
            lambda: bool(third.sent_with_op(Opcode.RESUME))
            and conn.state is ConnectionState.CONNECTED
        )
        assert conn.running
    finally:
        await conn.disconnect()

    assert len(factory.calls) == 3
    assert broken.sent == []
    assert broken.close_codes == [4000]
    assert third.sent_with_op(Opcode.RESUME)[0]["d"]["session_id"] == "session-1"
    assert [seconds for seconds in sleep.calls if seconds < 10] == [1.0, 2.0]


@pytest.mark.anyio
async def test_identify_send_failure_fails_connect_and_allows_retry(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    broken = fake_socket_cls()
    broken.closed = True
    healthy = fake_socket_cls()
    factory = socket_factory_cls(broken, healthy)
    conn = _connection(factory, fake_sleep_cls(instant=lambda _index, _seconds: False))

    with pytest.raises(GatewayConnectError):
        await conn.connect()
    assert conn.state is ConnectionState.FAILED
    assert not conn.running

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
    finally:
        await conn.disconnect()

    assert broken.close_codes == [4000]
    assert healthy.ops_sent()[0] == Opcode.IDENTIFY


@pytest.mark.anyio
async def test_invalid_session_delay_keeps_receive_loop_running(
    fake_socket_cls, socket_factory_cls, fake_sleep_cls, wait_until
) -> None:
    socket = fake_socket_cls()
    factory = socket_factory_cls(socket)
    sleep = fake_sleep_cls(instant=lambda _index, _seconds: False)
    conn = _connection(factory, sleep)

    await conn.connect()
    try:
        await wait_until(lambda: conn.state is ConnectionState.CONNECTED)
        socket.push({"op": 9, "d": False})
        await wait_until(lambda: 2.5 in sleep.calls)
        socket.push({"op": 1, "d": None})
        await wait_until(lambda: bool(socket.sent_with_op(Opcode.HEARTBEAT)))
    finally:
        await conn.disconnect()

    assert len(socket.sent_with_op(Opcode.IDENTIFY)) == 1
    assert socket.close_codes == [1000]
