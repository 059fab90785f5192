"""
OpenClaw Gateway 单连接客户端。
持有一个连接的 Transport + Authenticator + RequestCorrelator + GatewayMemory，
负责握手、入站帧路由、连接关闭后的清理与（可选的）退避重连。
所有回调都在同一个 asyncio 事件循环上执行，一次只处理一帧。
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from utils.logger import gateway_logger
from . import dispatcher as names
from . import server_to_local as stl
from .auth import Authenticator
from .correlator import RequestCorrelator
from .device_auth import DeviceIdentity
from .dispatcher import EventDispatcher
from .errors import ConnectionClosedError, GatewayError, NotConnectedError
from .frames import EventFrame, RawFrame, ResponseFrame, decode_frame, encode_frame
from .gateway_memory import GatewayMemory
from .models import Connection, ConnectionStatus
from .protocol import (
    AUTH_TIMEOUT_SEC,
    CLOSE_POLICY_VIOLATION,
    EVENT_CONNECT_ERROR,
    EVENT_CONNECT_READY,
    HANDSHAKE_REQUEST_ID,
    build_event_frame,
    client_platform,
    normalize_endpoint,
    redact_endpoint,
)
from .transport import WebSocketTransport

TransportFactory = Callable[..., Any]


class GatewayClient:
    """
    单个逻辑连接的运行时。
    - open() 打开传输并完成握手；成功后 connection.status = connected。
    - call(method, params, timeout) 发 req 并等待 res。
    - send_event(event, payload) 发 event，不等待。
    - close() 主动断开：停止重连、关闭传输、拒绝全部挂起请求。
    """

    RECONNECT_INITIAL_DELAY_SEC = 3.0
    RECONNECT_STEP_SEC = 3.0

    def __init__(
        self,
        connection: Connection,
        dispatcher: EventDispatcher,
        *,
        transport_factory: TransportFactory = WebSocketTransport,
        auth_timeout: float = AUTH_TIMEOUT_SEC,
        client_info: Optional[dict] = None,
        device: Optional[DeviceIdentity] = None,
    ):
        self.connection = connection
        self.memory = GatewayMemory(connection.id)
        self._dispatcher = dispatcher
        self._transport_factory = transport_factory
        self._auth_timeout = auth_timeout
        self._client_info = {"platform": client_platform(), **(client_info or {})}
        self._device = device if connection.config.device_auth else None
        self._transport = None
        self._auth: Optional[Authenticator] = None
        self._correlator = RequestCorrelator(self._send_text, name=connection.id)
        self._user_requested_close = False
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def id(self) -> str:
        return self.connection.id

    @property
    def transport(self):
        return self._transport

    @property
    def correlator(self) -> RequestCorrelator:
        return self._correlator

    @property
    def authenticator(self) -> Optional[Authenticator]:
        return self._auth

    def is_connected(self) -> bool:
        return (
            self.connection.status is ConnectionStatus.CONNECTED
            and self._transport is not None
            and self._transport.is_open
        )

    def _set_status(self, status: ConnectionStatus, error: Optional[str] = None) -> None:
        self.connection.status = status
        if error is not None:
            self.connection.last_error = error

    async def open(self) -> Connection:
        """打开传输并握手；失败时 status=error、last_error 记录原因并抛出。"""
        config = self.connection.config
        self._user_requested_close = False
        url = normalize_endpoint(config.endpoint, config.token)
        self._set_status(ConnectionStatus.CONNECTING)
        self._dispatcher.publish(names.CONNECTION_CONNECTING, self.connection)
        gateway_logger.info(f"Gateway 开始连接: {self.id} {redact_endpoint(url)}")

        transport = self._transport_factory(on_message=self._on_raw, on_close=self._on_close)
        self._transport = transport
        self._correlator.reopen()
        self._auth = Authenticator(
            config.token,
            self._send_text,
            client_info=self._client_info,
            device=self._device,
            timeout=self._auth_timeout,
            name=self.id,
        )
        try:
            await transport.open(url)
            self._auth.on_open()
            hello = await self._auth.wait()
        except GatewayError as e:
            await self._fail(transport, e)
            raise
        if not transport.is_open:
            # 认证信号之后、恢复执行之前服务端已关闭连接
            exc = ConnectionClosedError(f"认证成功后连接已被关闭: {self.id}")
            await self._fail(transport, exc)
            raise exc
        self.memory.set_hello(hello)
        self.connection.connected_at = datetime.now(timezone.utc)
        self.connection.last_error = None
        self._set_status(ConnectionStatus.CONNECTED)
        gateway_logger.info(f"Gateway 握手成功，收发循环已启动: {self.id}")
        self._dispatcher.publish(names.CONNECTION_CONNECTED, self.connection)
        recent = self.memory.get_recent_sessions()
        if recent:
            self._dispatcher.publish(names.SESSIONS_RECEIVED, recent)
        return self.connection

    async def _fail(self, transport, exc: Exception) -> None:
        self._set_status(ConnectionStatus.ERROR, str(exc))
        gateway_logger.warning(f"Gateway 连接失败: {self.id}: {exc}")
        if transport.is_open:
            await transport.close(code=1000, reason="authentication failed")
        self._correlator.reject_all(ConnectionClosedError(str(exc)))
        self._dispatcher.publish(names.CONNECTION_ERROR, self.connection)

    async def call(self, method: str, params: Optional[dict] = None, timeout: float = 10.0) -> Any:
        if not self.is_connected():
            raise NotConnectedError(f"连接未建立: {self.id}（status={self.connection.status.value}）")
        return await self._correlator.call(method, params, timeout=timeout)

    async def send_event(self, event: str, payload: Optional[dict] = None) -> None:
        if not self.is_connected():
            raise NotConnectedError(f"连接未建立: {self.id}（status={self.connection.status.value}）")
        await self._send_text(encode_frame(build_event_frame(event, payload)))

    async def _send_text(self, text: str) -> None:
        if self._transport is None:
            raise NotConnectedError(f"WebSocket not connected: {self.id}")
        await self._transport.send(text)

    async def close(self) -> None:
        """主动断开；不触发自动重连。"""
        self._user_requested_close = True
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        transport = self._transport
        if transport is not None and transport.is_open:
            await transport.close(code=1000, reason="client disconnect")
        self._correlator.reject_all(ConnectionClosedError(f"连接已关闭: {self.id}"))
        self.memory.clear()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _on_raw(self, raw) -> None:
        try:
            await self._handle_frame(decode_frame(raw))
        except Exception as e:
            # 单帧处理异常不终止连接
            gateway_logger.exception(f"Gateway 处理入站帧异常: {self.id}: {e}")

    async def _handle_frame(self, frame) -> None:
        if isinstance(frame, RawFrame):
            gateway_logger.debug(f"Gateway 非 JSON 数据: {self.id} {frame.raw[:120]!r}")
            self._dispatcher.publish(names.STATUS_RECEIVED, stl.raw_status(frame.raw, frame.reason, self.id))
            return
        if isinstance(frame, ResponseFrame):
            if frame.id == HANDSHAKE_REQUEST_ID:
                self._handle_handshake_response(frame)
            else:
                self._correlator.resolve(frame)
            return
        if isinstance(frame, EventFrame):
            await self._handle_event(frame)
            return
        gateway_logger.debug(f"Gateway 未处理帧: type={frame.type} {self.id}")

    def _handle_handshake_response(self, frame: ResponseFrame) -> None:
        auth = self._auth
        if auth is None or auth.done:
            gateway_logger.debug(f"Gateway 握手已结束，忽略 connect 响应: {self.id}")
            return
        auth.on_response(frame)
        if frame.ok:
            payload = frame.payload if isinstance(frame.payload, dict) else {}
            status = {"event": EVENT_CONNECT_READY, **payload, "_summary": "认证成功，连接就绪"}
        else:
            status = {"event": EVENT_CONNECT_ERROR, "error": frame.error_message(), "_summary": "连接错误"}
        self._dispatcher.publish(names.STATUS_RECEIVED, {**status, "connectionId": self.id})

    async def _handle_event(self, frame: EventFrame) -> None:
        stl.log_event(frame)
        event = stl.classify_event(frame)
        auth = self._auth
        pending_auth = auth is not None and not auth.done
        if isinstance(event, stl.ChallengeEvent):
            if pending_auth:
                await auth.on_challenge(frame.payload_dict())
            else:
                gateway_logger.debug(f"Gateway 非握手阶段收到 challenge，忽略: {self.id}")
            return
        if isinstance(event, stl.ReadyEvent) and pending_auth:
            auth.on_ready(event.payload)
        elif isinstance(event, stl.ErrorEvent) and pending_auth:
            auth.on_error(event.message)
        elif isinstance(event, stl.StatusEvent) and event.event == "health":
            self.memory.set_health(True, event.payload, None)
        for name, data in stl.route_event(event, self.id):
            self._dispatcher.publish(name, data)

    async def _on_close(self, code: Optional[int], reason: str) -> None:
        gateway_logger.info(f"Gateway WebSocket closed: {self.id} code={code} reason={reason}")
        auth = self._auth
        if auth is not None and not auth.done:
            auth.on_close(code, reason)
            return
        was_connected = self.connection.status is ConnectionStatus.CONNECTED
        self._correlator.reject_all(ConnectionClosedError(f"连接已关闭: code={code} reason={reason}"))
        self.memory.clear()
        if not was_connected or self._user_requested_close:
            return
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._dispatcher.publish(names.CONNECTION_DISCONNECTED, self.connection)
        status = stl.close_status(code, reason, self.id)
        if status:
            self._dispatcher.publish(names.STATUS_RECEIVED, status)
        if self.connection.config.auto_reconnect and code != CLOSE_POLICY_VIOLATION:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """退避重连：首次 3 秒后重试，每次失败再加 3 秒。"""
        delay = self.RECONNECT_INITIAL_DELAY_SEC
        while not self._user_requested_close:
            gateway_logger.info(f"Gateway 退避重连：{delay} 秒后重试 {self.id}")
            await asyncio.sleep(delay)
            if self._user_requested_close:
                break
            try:
                await self.open()
            except GatewayError as e:
                delay += self.RECONNECT_STEP_SEC
                gateway_logger.warning(f"Gateway 重连失败: {e}，{delay} 秒后重试")
                continue
            gateway_logger.info(f"Gateway 退避重连成功: {self.id}")
            break
        self._reconnect_task = None
