"""
数据模型：连接配置/连接、会话、消息、附件。
会话的服务端 key（如 agent:main:main）与本地 UI id 是两个字段，协议请求一律使用 key。
"""
import enum
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WAITING = "waiting"
    CONNECTED = "connected"
    ERROR = "error"


class ProtocolKind(str, enum.Enum):
    WEBSOCKET = "websocket"
    REVERSE = "reverse"
    CUSTOM = "custom"


class ConnectionConfig(BaseModel):
    """连接配置。endpoint 为 'reverse' 或 protocol 为 reverse 时走反向（等待）模式。"""

    name: str
    endpoint: str
    token: str = ""
    protocol: ProtocolKind = ProtocolKind.WEBSOCKET
    auto_reconnect: bool = False
    device_auth: bool = False
    custom_config: dict[str, Any] = Field(default_factory=dict)
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_reverse(self) -> bool:
        return self.protocol is ProtocolKind.REVERSE or self.endpoint.strip().lower() == "reverse"

    def connection_id(self) -> str:
        """由名称 + 创建时间派生的连接 id；同一份配置总是得到同一个 id。"""
        return f"{self.name}-{self.created_at}"


class Connection(BaseModel):
    id: str
    config: ConnectionConfig
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    connected_at: Optional[datetime] = None
    last_error: Optional[str] = None


class SessionType(str, enum.Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"
    CHANNEL = "channel"


class Session(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    connection_id: str
    key: str
    name: str
    type: SessionType = SessionType.INDIVIDUAL
    unread_count: int = 0
    last_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    raw: dict[str, Any] = Field(default_factory=dict)


class MessageStatus(str, enum.Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Sender(BaseModel):
    id: str
    name: str
    avatar: Optional[str] = None


class Attachment(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    type: str = "application/octet-stream"
    size: int = 0
    url: str = ""
    thumbnail: Optional[str] = None


class Message(BaseModel):
    id: str
    session_id: str
    connection_id: str = ""
    content: str
    type: str = "text"
    sender: Sender
    timestamp: datetime = Field(default_factory=_now)
    status: MessageStatus = MessageStatus.SENDING
    attachments: list[Attachment] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


# 发送方模板：构造消息时 model_copy()，各消息不共享同一实例
ME = Sender(id="me", name="我")
BOT = Sender(id="bot", name="OpenClaw AI")


def new_message_id() -> str:
    return f"msg-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
