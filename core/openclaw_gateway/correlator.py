"""
请求关联：为出站 req 分配连接内唯一 id，登记挂起项，按 id 把入站 res 路由到等待方。
每个挂起项只会被结束一次：收到匹配 res、超时、或连接拆除，三者先到者生效。
"""
import asyncio
import itertools
import time
from typing import Any, Awaitable, Callable, Optional

from utils.logger import gateway_logger
from .errors import ConnectionClosedError, RequestTimeoutError, ServerError
from .frames import ResponseFrame, encode_frame
from .protocol import METHOD_HEALTH, build_request_frame

# 高频方法只记 debug，避免刷屏
_QUIET_METHODS = (METHOD_HEALTH,)


class PendingRequest:
    """挂起的请求：future + 截止时间 + 超时句柄。"""

    __slots__ = ("req_id", "method", "future", "created_at", "deadline", "timer")

    def __init__(self, req_id: str, method: str, future: asyncio.Future, timeout: float):
        self.req_id = req_id
        self.method = method
        self.future = future
        self.created_at = time.time()
        self.deadline = self.created_at + timeout
        self.timer: Optional[asyncio.TimerHandle] = None


class RequestCorrelator:
    """
    单连接的 req/res 关联器。
    send_text 为异步发送函数（通常是 transport.send），由连接注入。
    """

    def __init__(self, send_text: Callable[[str], Awaitable[None]], name: str = ""):
        self._send_text = send_text
        self._name = name
        self._pending: dict[str, PendingRequest] = {}
        self._counter = itertools.count(1)
        self._closed = False

    def next_request_id(self, method: str) -> str:
        """method 前缀 + 单调递增序号，连接内唯一。"""
        return f"req-{method}-{next(self._counter)}"

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, req_id: str) -> bool:
        return req_id in self._pending

    def reopen(self) -> None:
        """重连后允许再次发起请求。"""
        self._closed = False

    async def call(self, method: str, params: Optional[dict] = None, timeout: float = 10.0) -> Any:
        """
        发送 req 并挂起直到：匹配 res（ok 返回 payload，否则抛 ServerError），
        或超时（抛 RequestTimeoutError），或连接拆除（抛 ConnectionClosedError）。
        """
        if self._closed:
            raise ConnectionClosedError(f"连接已关闭，无法发送 {method}")
        req_id = self.next_request_id(method)
        while req_id in self._pending:
            req_id = self.next_request_id(method)
        _, frame = build_request_frame(method, params or {}, req_id=req_id)
        loop = asyncio.get_running_loop()
        entry = PendingRequest(req_id, method, loop.create_future(), timeout)
        self._pending[req_id] = entry
        entry.timer = loop.call_later(timeout, self._expire, req_id)
        if method in _QUIET_METHODS:
            gateway_logger.debug(f"Gateway 请求: {self._name} method={method} req_id={req_id}")
        else:
            gateway_logger.info(f"Gateway 请求: {self._name} method={method} req_id={req_id}")
        try:
            await self._send_text(encode_frame(frame))
        except Exception:
            self._discard(req_id)
            raise
        return await entry.future

    def resolve(self, frame: ResponseFrame) -> bool:
        """路由入站 res；无对应挂起项时记日志丢弃，返回 False。"""
        entry = self._pending.pop(frame.id, None)
        if entry is None:
            gateway_logger.debug(f"Gateway 响应无对应挂起请求: {self._name} req_id={frame.id} ok={frame.ok}")
            return False
        if entry.timer:
            entry.timer.cancel()
        if entry.future.done():
            return False
        if frame.ok:
            if entry.method in _QUIET_METHODS:
                gateway_logger.debug(f"Gateway 响应: req_id={frame.id} ok=True")
            else:
                gateway_logger.info(f"Gateway 响应: req_id={frame.id} ok=True")
            entry.future.set_result(frame.payload)
        else:
            message = frame.error_message()
            gateway_logger.info(f"Gateway 响应: req_id={frame.id} ok=False error={message[:80]}")
            entry.future.set_exception(ServerError(message, code=frame.error_code(), details=frame.error))
        return True

    def reject_all(self, exc: Optional[BaseException] = None) -> int:
        """连接拆除：立即拒绝全部挂起项，之后不再接受新请求直到 reopen。"""
        self._closed = True
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if entry.timer:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(exc or ConnectionClosedError("连接已关闭"))
        if entries:
            gateway_logger.info(f"Gateway 连接拆除，拒绝挂起请求 {len(entries)} 个: {self._name}")
        return len(entries)

    def _expire(self, req_id: str) -> None:
        entry = self._pending.pop(req_id, None)
        if entry is None or entry.future.done():
            return
        timeout = entry.deadline - entry.created_at
        gateway_logger.warning(f"Gateway 请求超时: {self._name} method={entry.method} req_id={req_id}")
        entry.future.set_exception(RequestTimeoutError(entry.method, req_id, timeout))

    def _discard(self, req_id: str) -> None:
        entry = self._pending.pop(req_id, None)
        if entry and entry.timer:
            entry.timer.cancel()
