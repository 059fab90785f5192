"""
连接管理器：顶层编排。
按连接 id 持有 GatewayClient，对外提供 connect / disconnect / send_message / list_sessions /
fetch_history / rename_session / delete_session / upload_file，并维护每个连接的会话缓存。
实例由调用方创建并注入到需要它的组件（不使用模块级单例）。
"""
import asyncio
import os
from typing import Any, Callable, Optional

from utils.logger import gateway_logger
from . import dispatcher as names
from . import local_to_server as lts
from .client import GatewayClient, TransportFactory
from .device_auth import DeviceIdentity
from .dispatcher import EventDispatcher
from .errors import NotConnectedError
from .gateway_memory import GatewayMemory
from .history import map_history, map_sessions
from .models import (
    ME,
    Attachment,
    Connection,
    ConnectionConfig,
    ConnectionStatus,
    Message,
    MessageStatus,
    Session,
    new_message_id,
)
from .protocol import (
    AUTH_TIMEOUT_SEC,
    CHAT_HISTORY_TIMEOUT_SEC,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_SESSIONS_LIMIT,
    SESSION_MUTATION_TIMEOUT_SEC,
    SESSIONS_LIST_TIMEOUT_SEC,
)
from .transport import WebSocketTransport


class ConnectionManager:
    """
    多连接管理。
    - dispatcher：所有连接共享的事件注册表，订阅跨重连保留。
    - transport_factory：创建传输的工厂（测试可注入内存实现）。
    - auth_timeout：握手认证超时秒数。
    - client_info：connect 握手的 client 描述覆盖项（id / version / platform / mode）。
    - history_limit / sessions_limit：chat.history 与 sessions.list 的默认条数。
    - device：实验性设备签名身份，仅对 config.device_auth=True 的连接生效。
    """

    def __init__(
        self,
        dispatcher: Optional[EventDispatcher] = None,
        *,
        transport_factory: TransportFactory = WebSocketTransport,
        auth_timeout: float = AUTH_TIMEOUT_SEC,
        client_info: Optional[dict] = None,
        device: Optional[DeviceIdentity] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        sessions_limit: int = DEFAULT_SESSIONS_LIMIT,
    ):
        self.dispatcher = dispatcher or EventDispatcher()
        self._transport_factory = transport_factory
        self._auth_timeout = auth_timeout
        self._client_info = dict(client_info or {})
        self._device = device
        self._history_limit = history_limit
        self._sessions_limit = sessions_limit
        self._clients: dict[str, GatewayClient] = {}
        self._sessions: dict[str, dict[str, Session]] = {}

    # ── 订阅 ──

    def on(self, event: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        return self.dispatcher.subscribe(event, handler)

    def off(self, event: str, handler: Callable[[Any], None]) -> None:
        self.dispatcher.unsubscribe(event, handler)

    # ── 连接生命周期 ──

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        client = self._clients.get(connection_id)
        return client.connection if client else None

    def list_connections(self) -> list[Connection]:
        return [c.connection for c in self._clients.values()]

    def get_memory(self, connection_id: str) -> GatewayMemory:
        return self._client(connection_id).memory

    async def connect(self, config: ConnectionConfig) -> Connection:
        """
        建立连接。同 id 的连接已存在时原样返回（不会再开第二个传输）。
        反向模式只登记连接、status=waiting，不打开传输。
        直连模式在认证成功后返回，失败时抛出（连接保留在注册表中，status=error，可 reconnect）。
        """
        connection_id = config.connection_id()
        existing = self._clients.get(connection_id)
        if existing is not None:
            return existing.connection

        connection = Connection(id=connection_id, config=config, status=ConnectionStatus.CONNECTING)
        client = GatewayClient(
            connection,
            self.dispatcher,
            transport_factory=self._transport_factory,
            auth_timeout=self._auth_timeout,
            client_info=self._client_info,
            device=self._device,
        )
        self._clients[connection_id] = client

        if config.is_reverse:
            self.dispatcher.publish(names.CONNECTION_CONNECTING, connection)
            connection.status = ConnectionStatus.WAITING
            gateway_logger.info(f"Gateway 反向连接模式，等待服务端回连: {connection_id}")
            self.dispatcher.publish(names.CONNECTION_WAITING, connection)
            return connection

        await client.open()
        return connection

    async def reconnect(self, connection_id: str) -> Connection:
        """对已登记的连接重新握手（同一个 Connection 对象）。"""
        client = self._client(connection_id)
        if client.is_connected():
            return client.connection
        if client.connection.config.is_reverse:
            raise NotConnectedError(f"反向连接无法主动重连: {connection_id}")
        await client.open()
        return client.connection

    async def disconnect(self, connection_id: str) -> None:
        """关闭传输、移除连接并通知；未知 id 直接返回。"""
        client = self._clients.pop(connection_id, None)
        if client is None:
            return
        self._sessions.pop(connection_id, None)
        await client.close()
        gateway_logger.info(f"Gateway 已断开: {connection_id}")
        self.dispatcher.publish(names.CONNECTION_DISCONNECTED, client.connection)

    async def close_all(self) -> None:
        for connection_id in list(self._clients):
            await self.disconnect(connection_id)

    @staticmethod
    def describe_failure(name: str, exc: BaseException) -> str:
        """用户可见的失败提示：连接名 + 原因。"""
        return f"{name}: {exc}"

    # ── 消息 ──

    async def send_message(
        self,
        connection_id: str,
        session_key: str,
        content: str,
        attachments: Optional[list[Attachment]] = None,
    ) -> Message:
        """
        发送 message.send 事件。未连接时抛 NotConnectedError 且不发送任何帧。
        不等待服务端确认：写出成功即标记 sent。
        """
        client = self._connected_client(connection_id)
        attachments = list(attachments or [])
        message = Message(
            id=new_message_id(),
            session_id=session_key,
            connection_id=connection_id,
            content=content,
            type="file" if attachments else "text",
            sender=ME.model_copy(),
            status=MessageStatus.SENDING,
            attachments=attachments,
        )
        try:
            await lts.send_message_event(
                client,
                session_key,
                content,
                message.id,
                attachments=[a.model_dump(exclude_none=True) for a in attachments],
            )
        except Exception:
            message.status = MessageStatus.FAILED
            self.dispatcher.publish(names.MESSAGE_FAILED, message)
            raise
        message.status = MessageStatus.SENT
        self.dispatcher.publish(names.MESSAGE_SENT, message)
        return message

    async def upload_file(self, connection_id: str, session_key: str, path: str) -> Attachment:
        """以 file.upload 事件上传文件（base64），返回本地附件描述。"""
        client = self._connected_client(connection_id)
        upload = await asyncio.to_thread(lts.read_upload, path)
        await lts.send_file_upload(client, session_key, upload)
        return Attachment(
            name=upload["fileName"],
            type=upload["fileType"],
            size=upload["fileSize"],
            url=os.path.abspath(path),
        )

    # ── 会话 ──

    async def list_sessions(
        self,
        connection_id: str,
        limit: Optional[int] = None,
        timeout: float = SESSIONS_LIST_TIMEOUT_SEC,
    ) -> list[Session]:
        client = self._connected_client(connection_id)
        payload = await lts.send_sessions_list(client, limit=limit or self._sessions_limit, timeout=timeout)
        sessions = map_sessions(payload, connection_id)
        self._sessions[connection_id] = {s.key: s for s in sessions}
        self.dispatcher.publish(names.SESSIONS_RECEIVED, sessions)
        return sessions

    def cached_sessions(self, connection_id: str) -> list[Session]:
        return list((self._sessions.get(connection_id) or {}).values())

    async def fetch_history(
        self,
        connection_id: str,
        session_key: str,
        limit: Optional[int] = None,
        timeout: float = CHAT_HISTORY_TIMEOUT_SEC,
    ) -> list[Message]:
        """chat.history：过滤 toolResult / 空内容，按时间从早到晚返回。"""
        client = self._connected_client(connection_id)
        payload = await lts.send_chat_history(
            client, session_key, limit=limit or self._history_limit, timeout=timeout
        )
        messages = map_history(payload, connection_id, session_key)
        gateway_logger.info(f"Gateway 历史消息: sessionKey={session_key} 共 {len(messages)} 条")
        return messages

    async def rename_session(
        self,
        connection_id: str,
        session_key: str,
        label: str,
        timeout: float = SESSION_MUTATION_TIMEOUT_SEC,
    ) -> bool:
        """sessions.patch；服务端失败时抛 ServerError，本地缓存不变。"""
        client = self._connected_client(connection_id)
        await lts.send_sessions_patch(client, session_key, label, timeout=timeout)
        cached = (self._sessions.get(connection_id) or {}).get(session_key)
        if cached is not None:
            cached.name = label
        return True

    async def delete_session(
        self,
        connection_id: str,
        session_key: str,
        delete_transcript: bool = True,
        timeout: float = SESSION_MUTATION_TIMEOUT_SEC,
    ) -> bool:
        """sessions.delete；服务端失败时抛 ServerError，本地缓存不变。"""
        client = self._connected_client(connection_id)
        await lts.send_sessions_delete(client, session_key, delete_transcript, timeout=timeout)
        (self._sessions.get(connection_id) or {}).pop(session_key, None)
        return True

    # ── 内部 ──

    def _client(self, connection_id: str) -> GatewayClient:
        client = self._clients.get(connection_id)
        if client is None:
            raise NotConnectedError(f"Connection not established: {connection_id}")
        return client

    def _connected_client(self, connection_id: str) -> GatewayClient:
        client = self._client(connection_id)
        if not client.is_connected():
            raise NotConnectedError(
                f"Connection not established: {connection_id}（status={client.connection.status.value}）"
            )
        return client
