"""
服务端 -> 本地：入站事件分类与路由。

事件按名称归入带标签的变体（ChallengeEvent、ReadyEvent ...），未知事件归入 UnknownEvent 并保留原始 payload。
route_event 给出每个变体要派发的内部通知名与数据；握手类事件由连接交给认证器处理。
tick 为网关心跳（约 30s 一次），health 为健康检查，均不记日志以免刷屏。
"""
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from utils.logger import gateway_logger
from . import dispatcher as names
from .frames import EventFrame
from .protocol import EVENT_CONNECT_CHALLENGE, EVENT_CONNECT_ERROR, EVENT_CONNECT_READY

_QUIET_EVENTS = ("tick", "health", "agent")


class ChallengeEvent(BaseModel):
    kind: Literal["challenge"] = "challenge"
    nonce: str = ""
    ts: Optional[int] = None


class ReadyEvent(BaseModel):
    kind: Literal["ready"] = "ready"
    payload: dict = Field(default_factory=dict)


class ErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    event: str
    message: str
    payload: dict = Field(default_factory=dict)


class StatusEvent(BaseModel):
    kind: Literal["status"] = "status"
    event: str
    payload: dict = Field(default_factory=dict)


class SessionsEvent(BaseModel):
    kind: Literal["sessions"] = "sessions"
    sessions: list = Field(default_factory=list)


class MessagesEvent(BaseModel):
    kind: Literal["messages"] = "messages"
    messages: list = Field(default_factory=list)


class MessageReceivedEvent(BaseModel):
    kind: Literal["message"] = "message"
    payload: dict = Field(default_factory=dict)


class ShutdownEvent(BaseModel):
    kind: Literal["shutdown"] = "shutdown"
    payload: dict = Field(default_factory=dict)


class TickEvent(BaseModel):
    kind: Literal["tick"] = "tick"
    payload: dict = Field(default_factory=dict)


class UnknownEvent(BaseModel):
    kind: Literal["unknown"] = "unknown"
    event: str
    payload: Any = None


GatewayEvent = Union[
    ChallengeEvent, ReadyEvent, ErrorEvent, StatusEvent, SessionsEvent, MessagesEvent,
    MessageReceivedEvent, ShutdownEvent, TickEvent, UnknownEvent,
]


def _error_text(payload: Any) -> str:
    if isinstance(payload, dict):
        text = payload.get("message") or payload.get("error")
        if text:
            return str(text)
    if isinstance(payload, str) and payload:
        return payload
    return str(payload) if payload else ""


def classify_event(frame: EventFrame) -> GatewayEvent:
    name = frame.event
    payload = frame.payload_dict()
    if name == EVENT_CONNECT_CHALLENGE:
        ts = payload.get("ts")
        return ChallengeEvent(nonce=str(payload.get("nonce") or ""), ts=ts if isinstance(ts, int) else None)
    if name == EVENT_CONNECT_READY:
        return ReadyEvent(payload=payload)
    if name in (EVENT_CONNECT_ERROR, "error"):
        return ErrorEvent(event=name, message=_error_text(frame.payload), payload=payload)
    if name in ("status", "status.response", "health"):
        return StatusEvent(event=name, payload=payload)
    if name in ("sessions", "session.list"):
        sessions = payload.get("sessions", frame.payload)
        return SessionsEvent(sessions=sessions if isinstance(sessions, list) else [])
    if name in ("messages", "message.list"):
        messages = payload.get("messages", frame.payload)
        return MessagesEvent(messages=messages if isinstance(messages, list) else [])
    if name in ("message", "message.received"):
        return MessageReceivedEvent(payload=payload)
    if name == "shutdown":
        return ShutdownEvent(payload=payload)
    if name == "tick":
        return TickEvent(payload=payload)
    return UnknownEvent(event=name, payload=frame.payload)


def route_event(event: GatewayEvent, connection_id: str) -> list[tuple[str, Any]]:
    """
    变体 -> [(通知名, 数据)]。数据为 dict 时附带 connectionId，便于多连接的订阅方区分来源。
    """
    if isinstance(event, ReadyEvent):
        return [(names.STATUS_RECEIVED, {
            "event": EVENT_CONNECT_READY, **event.payload,
            "_summary": "认证成功，连接就绪", "connectionId": connection_id,
        })]
    if isinstance(event, ErrorEvent):
        return [
            (names.ERROR, {**event.payload, "connectionId": connection_id}),
            (names.STATUS_RECEIVED, {
                "event": event.event, "error": event.message,
                "_summary": "连接错误", "connectionId": connection_id,
            }),
        ]
    if isinstance(event, StatusEvent):
        return [(names.STATUS_RECEIVED, {"event": event.event, **event.payload, "connectionId": connection_id})]
    if isinstance(event, SessionsEvent):
        return [(names.SESSIONS_RECEIVED, event.sessions)]
    if isinstance(event, MessagesEvent):
        return [(names.MESSAGES_RECEIVED, event.messages)]
    if isinstance(event, MessageReceivedEvent):
        return [(names.MESSAGE_RECEIVED, {**event.payload, "connectionId": connection_id})]
    if isinstance(event, ShutdownEvent):
        return [
            (names.SHUTDOWN, {**event.payload, "connectionId": connection_id}),
            (names.STATUS_RECEIVED, {"event": "shutdown", **event.payload, "connectionId": connection_id}),
        ]
    if isinstance(event, TickEvent):
        return []
    if isinstance(event, UnknownEvent):
        data = event.payload if isinstance(event.payload, dict) else {"payload": event.payload}
        return [(names.STATUS_RECEIVED, {"event": event.event, **data, "connectionId": connection_id})]
    return []


def log_event(frame: EventFrame) -> None:
    if frame.event in _QUIET_EVENTS:
        return
    gateway_logger.debug(f"server_to_local: 事件 event={frame.event}")


def raw_status(raw: str, reason: str, connection_id: str) -> dict:
    """非 JSON / 无法识别的数据仍通知观察者（诊断用）。"""
    return {"raw": raw, "reason": reason, "connectionId": connection_id}


def close_status(code: Optional[int], reason: str, connection_id: str) -> Optional[dict]:
    """关闭码通知：1000 视为服务端接受 token 后关闭；1008 为认证失败。"""
    if code == 1000:
        return {
            "_summary": "Token 验证通过",
            "status": "已认证",
            "info": "服务器已接受Token并关闭连接。",
            "closeCode": code,
            "connectionId": connection_id,
        }
    if code == 1008:
        return {
            "_summary": "认证失败",
            "error": reason or "invalid request frame",
            "closeCode": code,
            "connectionId": connection_id,
        }
    return None
