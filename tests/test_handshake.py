import asyncio

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from core.openclaw_gateway import (
    AuthenticationError,
    AuthenticationTimeoutError,
    ConnectionManager,
    ConnectionStatus,
    DeviceIdentity,
    HANDSHAKE_REQUEST_ID,
    PROTOCOL_VERSION,
    TransportError,
)
from core.openclaw_gateway import dispatcher as names
from core.openclaw_gateway.auth import AuthState

CHALLENGE = {"type": "event", "event": "connect.challenge", "payload": {"nonce": "abc123", "ts": 1700000000000}}


async def _start(gateway, config):
    task = asyncio.create_task(gateway.manager.connect(config))
    transport = await gateway.wait_for_open()
    return task, transport


@pytest.mark.asyncio
async def test_challenge_is_answered_with_token_and_result_connects(gateway, config, events):
    seen = events(names.CONNECTION_CONNECTING, names.CONNECTION_CONNECTED, names.STATUS_RECEIVED)
    task, transport = await _start(gateway, config)
    assert transport.url == "ws://127.0.0.1:18789?token=s3cret"
    assert transport.sent == []

    await transport.deliver(CHALLENGE)
    (request,) = transport.frames()
    assert request["type"] == "req"
    assert request["id"] == HANDSHAKE_REQUEST_ID
    assert request["method"] == "connect"
    params = request["params"]
    assert params["auth"] == {"token": "s3cret"}
    assert params["minProtocol"] == params["maxProtocol"] == PROTOCOL_VERSION
    assert params["client"]["id"] == "cli"
    assert params["client"]["mode"] == "ui"
    assert params["role"] == "operator"
    assert params["scopes"] == ["operator.read", "operator.write", "operator.admin"]

    await transport.deliver({
        "type": "res", "id": HANDSHAKE_REQUEST_ID, "ok": True,
        "payload": {"features": {"methods": ["chat.history", "sessions.list"]}},
    })
    connection = await task

    assert connection.status is ConnectionStatus.CONNECTED
    assert connection.connected_at is not None
    assert connection.last_error is None
    assert seen[names.CONNECTION_CONNECTING] == [connection]
    assert seen[names.CONNECTION_CONNECTED] == [connection]
    assert seen[names.STATUS_RECEIVED][-1]["event"] == "connect.ready"
    memory = gateway.manager.get_memory(connection.id)
    assert memory.supports_method("chat.history")
    assert not memory.supports_method("sessions.delete")


@pytest.mark.asyncio
async def test_connect_ready_event_also_completes_handshake(gateway, config):
    task, transport = await _start(gateway, config)
    await transport.deliver(CHALLENGE)
    await transport.deliver({"type": "event", "event": "connect.ready", "payload": {"server": "gw"}})
    connection = await task
    assert connection.status is ConnectionStatus.CONNECTED
    assert gateway.manager.get_memory(connection.id).get_hello() == {"server": "gw"}


@pytest.mark.asyncio
async def test_second_success_signal_is_ignored(gateway, config, events):
    seen = events(names.CONNECTION_CONNECTED)
    task, transport = await _start(gateway, config)
    await transport.deliver(CHALLENGE)
    await transport.deliver({"type": "event", "event": "connect.ready", "payload": {"first": True}})
    await transport.deliver({"type": "res", "id": HANDSHAKE_REQUEST_ID, "ok": True, "payload": {"second": True}})
    connection = await task
    client = gateway.manager._clients[connection.id]
    assert client.authenticator.state is AuthState.AUTHENTICATED
    assert client.authenticator.hello_payload == {"first": True}
    assert len(seen[names.CONNECTION_CONNECTED]) == 1


@pytest.mark.asyncio
async def test_duplicate_challenge_sends_connect_once(gateway, config):
    task, transport = await _start(gateway, config)
    await transport.deliver(CHALLENGE)
    await transport.deliver(CHALLENGE)
    assert len(transport.frames()) == 1
    await transport.deliver({"type": "res", "id": HANDSHAKE_REQUEST_ID, "ok": True})
    await task


@pytest.mark.asyncio
async def test_rejected_connect_fails_with_server_message(gateway, config, events):
    seen = events(names.CONNECTION_ERROR)
    task, transport = await _start(gateway, config)
    await transport.deliver(CHALLENGE)
    await transport.deliver({
        "type": "res", "id": HANDSHAKE_REQUEST_ID, "ok": False,
        "error": {"code": "INVALID_TOKEN", "message": "token mismatch"},
    })
    with pytest.raises(AuthenticationError, match="token mismatch"):
        await task
    connection = gateway.manager.list_connections()[0]
    assert connection.status is ConnectionStatus.ERROR
    assert connection.last_error == "token mismatch"
    assert seen[names.CONNECTION_ERROR] == [connection]
    assert not transport.is_open


@pytest.mark.asyncio
async def test_connect_error_event_fails_handshake(gateway, config):
    task, transport = await _start(gateway, config)
    await transport.deliver(CHALLENGE)
    await transport.deliver({"type": "event", "event": "connect.error", "payload": {"message": "origin not allowed"}})
    with pytest.raises(AuthenticationError, match="origin not allowed"):
        await task


@pytest.mark.asyncio
async def test_policy_violation_close_during_handshake_is_authentication_failure(gateway, config):
    task, transport = await _start(gateway, config)
    await transport.deliver(CHALLENGE)
    await transport.remote_close(1008, "invalid request frame")
    with pytest.raises(AuthenticationError, match="invalid request frame"):
        await task
    assert gateway.manager.list_connections()[0].status is ConnectionStatus.ERROR


@pytest.mark.asyncio
async def test_other_close_during_handshake_is_transport_failure(gateway, config):
    task, transport = await _start(gateway, config)
    await transport.remote_close(1006, "")
    with pytest.raises(TransportError):
        await task
    assert gateway.manager.list_connections()[0].status is ConnectionStatus.ERROR


@pytest.mark.asyncio
async def test_missing_challenge_times_out(transport_factory, config):
    manager = ConnectionManager(transport_factory=transport_factory, auth_timeout=0.05)
    with pytest.raises(AuthenticationTimeoutError, match="timeout"):
        await manager.connect(config)
    connection = manager.list_connections()[0]
    assert connection.status is ConnectionStatus.ERROR
    assert "timeout" in connection.last_error
    assert transport_factory.last.closed_with is not None


@pytest.mark.asyncio
async def test_unreachable_endpoint_fails_with_transport_error(gateway, transport_factory, config):
    transport_factory.fail_open = "连接被拒绝"
    with pytest.raises(TransportError, match="连接被拒绝"):
        await gateway.manager.connect(config)
    connection = gateway.manager.list_connections()[0]
    assert connection.status is ConnectionStatus.ERROR
    assert ConnectionManager.describe_failure(config.name, TransportError("连接被拒绝")) == "home: 连接被拒绝"


@pytest.mark.asyncio
async def test_failed_connection_can_be_reconnected(gateway, transport_factory, config):
    transport_factory.fail_open = "down"
    with pytest.raises(TransportError):
        await gateway.manager.connect(config)
    transport_factory.fail_open = None

    connection_id = config.connection_id()
    task = asyncio.create_task(gateway.manager.reconnect(connection_id))
    transport = await gateway.wait_for_open(2)
    await transport.deliver(CHALLENGE)
    await transport.deliver({"type": "res", "id": HANDSHAKE_REQUEST_ID, "ok": True})
    connection = await task
    assert connection is gateway.manager.get_connection(connection_id)
    assert connection.status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_device_signature_is_attached_when_enabled(transport_factory, config):
    device = DeviceIdentity.generate()
    manager = ConnectionManager(transport_factory=transport_factory, auth_timeout=0.5, device=device)
    task = asyncio.create_task(manager.connect(config.model_copy(update={"device_auth": True})))
    for _ in range(100):
        if transport_factory.instances and transport_factory.last.is_open:
            break
        await asyncio.sleep(0.01)
    transport = transport_factory.last
    await transport.deliver(CHALLENGE)
    block = transport.frames()[0]["params"]["auth"]["device"]
    assert block["nonce"] == "abc123"
    assert block["publicKey"] == device.public_key_hex
    Ed25519PublicKey.from_public_bytes(bytes.fromhex(block["publicKey"])).verify(
        bytes.fromhex(block["signature"]), b"abc123"
    )
    await transport.deliver({"type": "res", "id": HANDSHAKE_REQUEST_ID, "ok": True})
    await task


@pytest.mark.asyncio
async def test_device_signature_is_not_sent_for_token_only_connections(transport_factory, config):
    manager = ConnectionManager(transport_factory=transport_factory, auth_timeout=0.5, device=DeviceIdentity.generate())
    task = asyncio.create_task(manager.connect(config))
    for _ in range(100):
        if transport_factory.instances and transport_factory.last.is_open:
            break
        await asyncio.sleep(0.01)
    transport = transport_factory.last
    await transport.deliver(CHALLENGE)
    assert "device" not in transport.frames()[0]["params"]["auth"]
    await transport.deliver({"type": "res", "id": HANDSHAKE_REQUEST_ID, "ok": True})
    await task
