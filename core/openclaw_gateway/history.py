"""
服务端会话列表 / 聊天历史 -> 本地模型的映射。
history：跳过 toolResult 与空内容消息，结果按时间从早到晚排序（服务端实际按新到旧返回）。
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from .models import BOT, ME, Message, MessageStatus, Session, SessionType

SKIPPED_ROLES = ("toolResult",)
_TEXT_BLOCK_TYPES = ("text", "thinking")


def extract_content(content: Any) -> str:
    """content 可能是字符串，也可能是 [{type:'text', text}, {type:'thinking', thinking}] 块数组。"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") not in _TEXT_BLOCK_TYPES:
                continue
            text = block.get("text") or block.get("thinking") or ""
            if text:
                parts.append(str(text))
        return "\n\n".join(parts)
    return ""


def parse_timestamp(value: Any) -> Optional[datetime]:
    """毫秒/秒时间戳或 ISO 字符串 -> aware datetime；无法解析返回 None。"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def history_items(payload: Any) -> list:
    if not isinstance(payload, dict):
        return list(payload) if isinstance(payload, list) else []
    items = payload.get("messages") or payload.get("items") or []
    return list(items) if isinstance(items, list) else []


def map_history_message(raw: dict, connection_id: str, session_key: str) -> Message:
    role = raw.get("role")
    timestamp = parse_timestamp(raw.get("timestamp") or raw.get("createdAt")) or datetime.now(timezone.utc)
    return Message(
        id=str(raw.get("id") or f"hist-{uuid.uuid4().hex}"),
        session_id=session_key,
        connection_id=connection_id,
        content=extract_content(raw.get("content")),
        sender=(ME if role == "user" else BOT).model_copy(),
        timestamp=timestamp,
        status=MessageStatus.SENT,
        metadata={"role": role} if role else {},
    )


def map_history(payload: Any, connection_id: str, session_key: str) -> list[Message]:
    """过滤并排序 chat.history 的结果。"""
    if isinstance(payload, dict) and payload.get("sessionKey"):
        session_key = str(payload["sessionKey"])
    messages = []
    for raw in history_items(payload):
        if not isinstance(raw, dict) or raw.get("role") in SKIPPED_ROLES:
            continue
        message = map_history_message(raw, connection_id, session_key)
        if not message.content.strip():
            continue
        messages.append(message)
    # 先反转（新到旧 -> 旧到新），再按时间稳定排序，时间相同的保持反转后的先后
    messages.reverse()
    messages.sort(key=lambda m: m.timestamp)
    return messages


def session_items(payload: Any) -> list:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    items = payload.get("items") or payload.get("sessions") or []
    return list(items) if isinstance(items, list) else []


def _session_type(raw: dict) -> SessionType:
    kind = str(raw.get("kind") or raw.get("type") or raw.get("chatType") or "").lower()
    if kind in ("group", "channel"):
        return SessionType(kind)
    return SessionType.INDIVIDUAL


def map_sessions(payload: Any, connection_id: str) -> list[Session]:
    """sessions.list 结果 -> Session 列表；没有 key 的条目丢弃。"""
    sessions = []
    for raw in session_items(payload):
        if not isinstance(raw, dict):
            continue
        key = raw.get("key") or raw.get("sessionKey") or raw.get("sessionId")
        if not key:
            continue
        updated = parse_timestamp(raw.get("updatedAt"))
        created = parse_timestamp(raw.get("createdAt")) or updated
        last = raw.get("lastMessage")
        if isinstance(last, dict):
            last = extract_content(last.get("content")) or None
        kwargs = {}
        if updated:
            kwargs["updated_at"] = updated
        if created:
            kwargs["created_at"] = created
        sessions.append(Session(
            connection_id=connection_id,
            key=str(key),
            name=str(raw.get("label") or raw.get("displayName") or raw.get("derivedTitle") or key),
            type=_session_type(raw),
            unread_count=int(raw.get("unreadCount") or 0),
            last_message=last if isinstance(last, str) else None,
            raw=raw,
            **kwargs,
        ))
    return sessions

