"""
Gateway 协议引擎异常。
握手与 RPC 失败一律抛给直接调用方（connect / call）；畸形帧只降级为诊断事件，不终止连接。
"""
from typing import Any, Optional


class GatewayError(Exception):
    """Gateway 相关异常基类。"""


class TransportError(GatewayError):
    """传输层错误：地址不可达、连接被拒绝/重置、握手阶段连接被关闭等。"""


class ConnectionClosedError(TransportError):
    """连接已关闭：连接拆除时所有挂起请求以此拒绝。"""


class AuthenticationError(GatewayError):
    """认证失败：challenge 被拒、token 无效、1008 关闭。"""


class AuthenticationTimeoutError(AuthenticationError):
    """认证超时：规定时间内未收到成功/失败信号。"""


class NotConnectedError(GatewayError):
    """连接不存在、未处于 connected 状态或传输未打开。"""


class NotOpenError(NotConnectedError):
    """向未打开的传输句柄写帧。"""


class RequestTimeoutError(GatewayError):
    """RPC 请求超过截止时间未收到响应。"""

    def __init__(self, method: str, req_id: str, timeout: float):
        super().__init__(f"请求超时: method={method} id={req_id}（{timeout:g}s）")
        self.method = method
        self.req_id = req_id
        self.timeout = timeout


class ServerError(GatewayError):
    """服务端返回 ok=false；message 为服务端原文。"""

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class MalformedFrameError(GatewayError):
    """入站帧不是合法 JSON 信封（严格解码时抛出，帧循环中降级为 raw 事件）。"""

    def __init__(self, raw: str, reason: str):
        super().__init__(reason)
        self.raw = raw
        self.reason = reason
