"""
OpenClaw Gateway 协议常量与帧构建。
帧格式：req(id, method, params) / res(id, ok, payload, error) / event(event, payload)。
"""
import re
import sys
import uuid
from typing import Optional
from urllib.parse import quote

PROTOCOL_VERSION = 3

# 握手专用请求 id，其它请求 id 均带 "req-" 前缀，不会与之冲突
HANDSHAKE_REQUEST_ID = "conn-1"

METHOD_CONNECT = "connect"
METHOD_HEALTH = "health"
METHOD_STATUS = "status"
METHOD_CHAT_HISTORY = "chat.history"
METHOD_SESSIONS_LIST = "sessions.list"
METHOD_SESSIONS_PATCH = "sessions.patch"
METHOD_SESSIONS_DELETE = "sessions.delete"

# 客户端 -> 服务端的事件（不等待响应）
EVENT_MESSAGE_SEND = "message.send"
EVENT_FILE_UPLOAD = "file.upload"

# 服务端 -> 客户端的握手事件
EVENT_CONNECT_CHALLENGE = "connect.challenge"
EVENT_CONNECT_READY = "connect.ready"
EVENT_CONNECT_ERROR = "connect.error"

# 客户端标识：cli（非浏览器客户端），避免 Control UI 的 origin 校验；mode 用 ui
DEFAULT_CLIENT_ID = "cli"
DEFAULT_CLIENT_VERSION = "1.0.0"
DEFAULT_CLIENT_MODE = "ui"
DEFAULT_ROLE = "operator"
DEFAULT_SCOPES = ("operator.read", "operator.write", "operator.admin")

_PLATFORM_NAMES = {"win32": "windows", "darwin": "macos"}

# 超时（秒）：history 可能扫描较大的服务端日志，比 list 宽松
AUTH_TIMEOUT_SEC = 10.0
SESSIONS_LIST_TIMEOUT_SEC = 5.0
CHAT_HISTORY_TIMEOUT_SEC = 10.0
SESSION_MUTATION_TIMEOUT_SEC = 10.0

DEFAULT_SESSIONS_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 100

# 关闭码
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008

_SCHEME_RE = re.compile(r"^wss?://", re.IGNORECASE)


def normalize_endpoint(endpoint: str, token: str = "") -> str:
    """
    规范化连接地址：无 ws:// / wss:// 前缀时补 ws://；
    token 非空且 URL 中尚未带 token 参数时，以 token 查询参数附加。
    """
    url = (endpoint or "").strip()
    if not _SCHEME_RE.match(url):
        url = f"ws://{url}"
    if token and not re.search(r"[?&]token=", url):
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}token={quote(token, safe='')}"
    return url


def client_platform() -> str:
    """握手 client.platform：windows / macos / linux，其它平台原样返回 sys.platform。"""
    if sys.platform.startswith("linux"):
        return "linux"
    return _PLATFORM_NAMES.get(sys.platform, sys.platform)


def redact_endpoint(url: str) -> str:
    """日志用：隐藏 URL 中的 token 值。"""
    return re.sub(r"([?&]token=)[^&]*", r"\1***", url or "")


def build_connect_params(
    *,
    token: str,
    min_protocol: int = PROTOCOL_VERSION,
    max_protocol: int = PROTOCOL_VERSION,
    client_id: str = DEFAULT_CLIENT_ID,
    version: str = DEFAULT_CLIENT_VERSION,
    platform: str = "linux",
    mode: str = DEFAULT_CLIENT_MODE,
    role: str = DEFAULT_ROLE,
    scopes: Optional[list] = None,
    device: Optional[dict] = None,
) -> dict:
    """构建 connect 请求的 params；device 为设备签名块（实验性，可选）。"""
    auth = {"token": token}
    if device:
        auth["device"] = device
    return {
        "minProtocol": min_protocol,
        "maxProtocol": max_protocol,
        "client": {
            "id": client_id,
            "version": version,
            "platform": platform,
            "mode": mode,
        },
        "role": role,
        "scopes": list(scopes if scopes is not None else DEFAULT_SCOPES),
        "auth": auth,
    }


def build_request_frame(method: str, params: dict = None, req_id: Optional[str] = None) -> tuple[str, dict]:
    """构建请求帧 (type=req, id, method, params)。未指定 req_id 时生成 uuid。返回 (req_id, frame_dict)。"""
    req_id = req_id or str(uuid.uuid4())
    frame = {
        "type": "req",
        "id": req_id,
        "method": method,
        "params": params if params is not None else {},
    }
    return req_id, frame


def build_event_frame(event: str, payload: dict = None) -> dict:
    """构建事件帧 (type=event, event, payload)。"""
    return {
        "type": "event",
        "event": event,
        "payload": payload if payload is not None else {},
    }
