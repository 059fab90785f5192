"""Shared fixtures: an in-memory transport and a helper that drives the gateway side of the handshake."""

import asyncio
import json

import pytest

from core.openclaw_gateway import ConnectionConfig, ConnectionManager, HANDSHAKE_REQUEST_ID
from core.openclaw_gateway.errors import NotOpenError, TransportError


class FakeTransport:
    """Stands in for WebSocketTransport; frames are delivered by the test, writes are recorded."""

    def __init__(self, factory, *, on_message, on_close):
        self._factory = factory
        self._on_message = on_message
        self._on_close = on_close
        self._open = False
        self.url = None
        self.sent: list[str] = []
        self.closed_with = None

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, url: str) -> None:
        if self._factory.fail_open is not None:
            raise TransportError(self._factory.fail_open)
        self.url = url
        self._open = True

    async def send(self, text: str) -> None:
        if not self._open:
            raise NotOpenError("WebSocket not connected")
        self.sent.append(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self._open:
            return
        self._open = False
        self.closed_with = (code, reason)
        await self._on_close(code, reason)

    async def deliver(self, frame) -> None:
        text = frame if isinstance(frame, str) else json.dumps(frame)
        await self._on_message(text)

    async def remote_close(self, code: int = 1006, reason: str = "") -> None:
        self._open = False
        self.closed_with = (code, reason)
        await self._on_close(code, reason)

    def frames(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]


class FakeTransportFactory:
    def __init__(self):
        self.instances: list[FakeTransport] = []
        self.fail_open = None

    def __call__(self, **kwargs) -> FakeTransport:
        transport = FakeTransport(self, **kwargs)
        self.instances.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.instances[-1]


class GatewayHarness:
    """Plays the gateway: waits for the transport to open, sends the challenge and accepts the token."""

    def __init__(self, manager: ConnectionManager, factory: FakeTransportFactory):
        self.manager = manager
        self.factory = factory
        self._answered: set[str] = set()

    async def wait_for_open(self, count: int = 1) -> FakeTransport:
        for _ in range(300):
            if len(self.factory.instances) >= count and self.factory.instances[count - 1].is_open:
                return self.factory.instances[count - 1]
            await asyncio.sleep(0.01)
        raise AssertionError("transport was never opened")

    @staticmethod
    async def wait_until(predicate, attempts: int = 300) -> None:
        for _ in range(attempts):
            if predicate():
                return
            await asyncio.sleep(0.01)
        raise AssertionError("condition not reached")

    async def connect(self, config: ConnectionConfig, hello=None):
        task = asyncio.create_task(self.manager.connect(config))
        transport = await self.wait_for_open(len(self.factory.instances) + 1)
        await transport.deliver({"type": "event", "event": "connect.challenge", "payload": {"nonce": "abc123"}})
        await transport.deliver({"type": "res", "id": HANDSHAKE_REQUEST_ID, "ok": True, "payload": hello or {}})
        connection = await task
        return connection, transport

    async def respond(self, transport: FakeTransport, method: str, payload=None, ok=True, error=None):
        """Answer the oldest not-yet-answered request for ``method``."""
        for _ in range(200):
            requests = [
                f for f in transport.frames()
                if f.get("type") == "req" and f.get("method") == method and f["id"] not in self._answered
            ]
            if requests:
                request = requests[0]
                self._answered.add(request["id"])
                frame = {"type": "res", "id": request["id"], "ok": ok}
                if payload is not None:
                    frame["payload"] = payload
                if error is not None:
                    frame["error"] = error
                await transport.deliver(frame)
                return request
            await asyncio.sleep(0)
        raise AssertionError(f"no {method} request was sent")


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def manager(transport_factory):
    return ConnectionManager(transport_factory=transport_factory, auth_timeout=0.5)


@pytest.fixture
def gateway(manager, transport_factory):
    return GatewayHarness(manager, transport_factory)


@pytest.fixture
def config():
    return ConnectionConfig(name="home", endpoint="127.0.0.1:18789", token="s3cret", created_at=1700000000000)


@pytest.fixture
def events(manager):
    """Record every publication of the listed dispatcher names."""
    seen: dict[str, list] = {}

    def watch(*names):
        for name in names:
            seen.setdefault(name, [])
            manager.on(name, lambda data, n=name: seen[n].append(data))
        return seen

    return watch


@pytest.fixture
def make_gateway(transport_factory):
    """Harness around a manager built with extra keyword arguments."""

    def build(**manager_kwargs) -> GatewayHarness:
        manager_kwargs.setdefault("auth_timeout", 0.5)
        return GatewayHarness(ConnectionManager(transport_factory=transport_factory, **manager_kwargs), transport_factory)

    return build
