"""
WebSocket 传输层：每个连接一个全双工 socket。
- open(url) 建立连接并启动接收任务；接收到的文本帧逐个 await on_message，处理完一帧再读下一帧。
- send(text) 直接写出，不做排队；传输卡住时发送方会在 await 上阻塞（无背压控制）。
- 连接结束时调用一次 on_close(code, reason)。
"""
import asyncio
from typing import Awaitable, Callable, Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidMessage, InvalidStatus, InvalidURI
from websockets.protocol import State

from utils.logger import gateway_logger
from .errors import NotOpenError, TransportError
from .protocol import redact_endpoint

MessageHandler = Callable[[Union[str, bytes]], Awaitable[None]]
CloseHandler = Callable[[Optional[int], str], Awaitable[None]]

# 与服务端保活：20s ping，10s 无 pong 视为断开
PING_INTERVAL_SEC = 20
PING_TIMEOUT_SEC = 10
OPEN_TIMEOUT_SEC = 10
ABNORMAL_CLOSURE = 1006


def connection_error_message(exc: BaseException, url: str = "") -> str:
    """将连接异常转为用户可读提示。"""
    where = redact_endpoint(url) or "Gateway"
    if isinstance(exc, ConnectionRefusedError):
        return f"连接被拒绝：请确认 OpenClaw Gateway 已启动且端口正确（{where}）。"
    if isinstance(exc, ConnectionResetError):
        return f"连接被重置：请确认 OpenClaw Gateway 已启动，且地址正确（{where}）。若为远程地址，请检查网络与防火墙。"
    if isinstance(exc, InvalidURI):
        return f"地址无效：{where}"
    if isinstance(exc, InvalidStatus):
        return f"服务端拒绝了 WebSocket 握手（HTTP {exc.response.status_code}）：{where}"
    if isinstance(exc, InvalidMessage):
        return f"未收到有效 HTTP 响应：目标地址可能不是 WebSocket 服务或服务未启动（{where}）。"
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return f"打开连接超时：{where}"
    if isinstance(exc, OSError) and getattr(exc, "winerror", None) == 64:
        return f"网络名不可用：请确认 Gateway 地址正确且服务已启动（{where}）。"
    return f"WebSocket连接失败：{where}（{exc}）"


class WebSocketTransport:
    """基于 websockets 的传输实现。回调均在所属事件循环上执行，同一句柄不会并发投递。"""

    def __init__(
        self,
        *,
        on_message: MessageHandler,
        on_close: CloseHandler,
        ping_interval: Optional[float] = PING_INTERVAL_SEC,
        ping_timeout: Optional[float] = PING_TIMEOUT_SEC,
        open_timeout: Optional[float] = OPEN_TIMEOUT_SEC,
    ):
        self._on_message = on_message
        self._on_close = on_close
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._open_timeout = open_timeout
        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self.close_code: Optional[int] = None
        self.close_reason: str = ""

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def open(self, url: str) -> None:
        try:
            self._ws = await connect(
                url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
                open_timeout=self._open_timeout,
            )
        except Exception as e:
            gateway_logger.warning(f"Gateway 传输打开失败: {redact_endpoint(url)}: {e!r}")
            raise TransportError(connection_error_message(e, url)) from e
        gateway_logger.info(f"Gateway 传输已连接: {redact_endpoint(url)}")
        self._reader = asyncio.create_task(self._read_loop())

    async def send(self, text: str) -> None:
        if not self.is_open:
            raise NotOpenError("WebSocket not connected")
        try:
            await self._ws.send(text)
        except ConnectionClosed as e:
            raise NotOpenError(f"WebSocket 已关闭: {e}") from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ws = self._ws
        if ws is None:
            return
        await ws.close(code=code, reason=reason)
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            await asyncio.gather(reader, return_exceptions=True)

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                await self._on_message(raw)
        except ConnectionClosed as e:
            gateway_logger.debug(f"Gateway recv 结束: {e}")
        finally:
            self.close_code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSURE
            self.close_reason = ws.close_reason or ""
            await self._on_close(self.close_code, self.close_reason)
