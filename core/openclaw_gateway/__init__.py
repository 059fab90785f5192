"""
OpenClaw Gateway 客户端模块。
通过 WebSocket 对接 OpenClaw 服务端：challenge-response 握手、req/res 关联（带超时）、事件分发。
本地->服务端：local_to_server（会话列表、历史、重命名、删除、发送消息、上传文件）。
服务端->本地：server_to_local（事件分类与路由）。
"""
from .client import GatewayClient
from .device_auth import DeviceIdentity
from .dispatcher import EventDispatcher
from .errors import (
    AuthenticationError,
    AuthenticationTimeoutError,
    ConnectionClosedError,
    GatewayError,
    MalformedFrameError,
    NotConnectedError,
    NotOpenError,
    RequestTimeoutError,
    ServerError,
    TransportError,
)
from .manager import ConnectionManager
from .models import (
    Attachment,
    Connection,
    ConnectionConfig,
    ConnectionStatus,
    Message,
    MessageStatus,
    ProtocolKind,
    Session,
    SessionType,
)
from .protocol import HANDSHAKE_REQUEST_ID, PROTOCOL_VERSION, normalize_endpoint

__all__ = [
    "GatewayClient",
    "ConnectionManager",
    "EventDispatcher",
    "DeviceIdentity",
    "GatewayError",
    "TransportError",
    "ConnectionClosedError",
    "AuthenticationError",
    "AuthenticationTimeoutError",
    "NotConnectedError",
    "NotOpenError",
    "RequestTimeoutError",
    "ServerError",
    "MalformedFrameError",
    "Attachment",
    "Connection",
    "ConnectionConfig",
    "ConnectionStatus",
    "Message",
    "MessageStatus",
    "ProtocolKind",
    "Session",
    "SessionType",
    "HANDSHAKE_REQUEST_ID",
    "PROTOCOL_VERSION",
    "normalize_endpoint",
]
