import asyncio
import json

import pytest

from core.openclaw_gateway.correlator import RequestCorrelator
from core.openclaw_gateway.errors import (
    ConnectionClosedError,
    NotOpenError,
    RequestTimeoutError,
    ServerError,
)
from core.openclaw_gateway.frames import ResponseFrame


class Wire:
    def __init__(self):
        self.frames = []
        self.broken = False

    async def send(self, text):
        if self.broken:
            raise NotOpenError("WebSocket not connected")
        self.frames.append(json.loads(text))


@pytest.fixture
def wire():
    return Wire()


@pytest.fixture
def correlator(wire):
    return RequestCorrelator(wire.send, name="test")


@pytest.mark.asyncio
async def test_matching_response_resolves_exactly_once(wire, correlator):
    task = asyncio.create_task(correlator.call("sessions.list", {"limit": 5}, timeout=1))
    await asyncio.sleep(0)
    request = wire.frames[0]
    assert request["type"] == "req"
    assert request["method"] == "sessions.list"
    assert request["params"] == {"limit": 5}
    assert request["id"].startswith("req-sessions.list-")
    assert correlator.is_pending(request["id"])

    assert correlator.resolve(ResponseFrame(id=request["id"], ok=True, payload={"items": []})) is True
    assert await task == {"items": []}
    assert correlator.pending_count == 0
    assert correlator.resolve(ResponseFrame(id=request["id"], ok=True, payload={"late": True})) is False


@pytest.mark.asyncio
async def test_request_ids_are_unique(wire, correlator):
    tasks = [asyncio.create_task(correlator.call("health", timeout=1)) for _ in range(3)]
    await asyncio.sleep(0)
    ids = [f["id"] for f in wire.frames]
    assert len(set(ids)) == 3
    for req_id in ids:
        correlator.resolve(ResponseFrame(id=req_id, ok=True))
    await asyncio.gather(*tasks)


@pytest.mark.asyncio
async def test_error_response_raises_server_error(wire, correlator):
    task = asyncio.create_task(correlator.call("sessions.delete", {"key": "agent:main:main"}, timeout=1))
    await asyncio.sleep(0)
    correlator.resolve(ResponseFrame(
        id=wire.frames[0]["id"], ok=False, error={"code": "INVALID_REQUEST", "message": "cannot delete main"},
    ))
    with pytest.raises(ServerError, match="cannot delete main") as info:
        await task
    assert info.value.code == "INVALID_REQUEST"
    assert info.value.details["message"] == "cannot delete main"


@pytest.mark.asyncio
async def test_missing_response_times_out(wire, correlator):
    with pytest.raises(RequestTimeoutError) as info:
        await correlator.call("chat.history", {"sessionKey": "k"}, timeout=0.02)
    assert info.value.method == "chat.history"
    assert correlator.pending_count == 0
    assert correlator.resolve(ResponseFrame(id=wire.frames[0]["id"], ok=True)) is False


@pytest.mark.asyncio
async def test_unknown_response_is_dropped(correlator):
    assert correlator.resolve(ResponseFrame(id="req-nothing-99", ok=True)) is False


@pytest.mark.asyncio
async def test_teardown_rejects_everything_pending(wire, correlator):
    tasks = [asyncio.create_task(correlator.call("sessions.list", timeout=5)) for _ in range(2)]
    await asyncio.sleep(0)
    assert correlator.reject_all(ConnectionClosedError("gone")) == 2
    for task in tasks:
        with pytest.raises(ConnectionClosedError):
            await task
    assert correlator.resolve(ResponseFrame(id=wire.frames[0]["id"], ok=True)) is False

    with pytest.raises(ConnectionClosedError):
        await correlator.call("sessions.list", timeout=1)
    correlator.reopen()
    task = asyncio.create_task(correlator.call("sessions.list", timeout=1))
    await asyncio.sleep(0)
    correlator.resolve(ResponseFrame(id=wire.frames[-1]["id"], ok=True, payload=1))
    assert await task == 1


@pytest.mark.asyncio
async def test_send_failure_leaves_nothing_pending(wire, correlator):
    wire.broken = True
    with pytest.raises(NotOpenError):
        await correlator.call("sessions.list", timeout=1)
    assert correlator.pending_count == 0
