"""
本地 -> 服务端：统一封装与 Gateway 的请求发送。
- 会话列表、聊天历史、重命名、删除走 req/res（经 RequestCorrelator 关联、带超时）。
- 发送消息、上传文件走 event，不等待服务端确认。
参数校验失败抛 ValueError；会话一律用服务端 key，而不是本地 UI id。
"""
import base64
import mimetypes
import os
from typing import Any, Optional

from utils.logger import gateway_logger
from .protocol import (
    CHAT_HISTORY_TIMEOUT_SEC,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_SESSIONS_LIMIT,
    EVENT_FILE_UPLOAD,
    EVENT_MESSAGE_SEND,
    METHOD_CHAT_HISTORY,
    METHOD_SESSIONS_DELETE,
    METHOD_SESSIONS_LIST,
    METHOD_SESSIONS_PATCH,
    SESSION_MUTATION_TIMEOUT_SEC,
    SESSIONS_LIST_TIMEOUT_SEC,
)


def _require_key(method: str, session_key: str) -> str:
    key = (session_key or "").strip()
    if not key:
        raise ValueError(f"{method} 需要非空 session key")
    return key


async def send_sessions_list(client, limit: int = DEFAULT_SESSIONS_LIMIT, timeout: float = SESSIONS_LIST_TIMEOUT_SEC) -> Any:
    """sessions.list：payload 含 items 或 sessions。"""
    params = {"limit": max(1, int(limit))}
    payload = await client.call(METHOD_SESSIONS_LIST, params, timeout=timeout)
    gateway_logger.debug(f"local_to_server: sessions.list 完成 limit={params['limit']}")
    return payload


async def send_chat_history(
    client,
    session_key: str,
    limit: int = DEFAULT_HISTORY_LIMIT,
    timeout: float = CHAT_HISTORY_TIMEOUT_SEC,
) -> Any:
    """chat.history：拉取该会话最近 limit 条消息（服务端按新到旧返回）。"""
    params = {
        "sessionKey": _require_key(METHOD_CHAT_HISTORY, session_key),
        "limit": max(1, min(1000, int(limit))),
    }
    gateway_logger.info(
        f"local_to_server: 发送 chat.history sessionKey={params['sessionKey']} limit={params['limit']}"
    )
    return await client.call(METHOD_CHAT_HISTORY, params, timeout=timeout)


async def send_sessions_patch(
    client,
    session_key: str,
    label: str,
    timeout: float = SESSION_MUTATION_TIMEOUT_SEC,
) -> Any:
    """sessions.patch：修改会话标签（重命名）。"""
    key = _require_key(METHOD_SESSIONS_PATCH, session_key)
    params = {"key": key, "label": (label or "").strip()}
    gateway_logger.info(f"local_to_server: 发送 sessions.patch key={key} label={params['label']!r}")
    return await client.call(METHOD_SESSIONS_PATCH, params, timeout=timeout)


async def send_sessions_delete(
    client,
    session_key: str,
    delete_transcript: bool = True,
    timeout: float = SESSION_MUTATION_TIMEOUT_SEC,
) -> Any:
    """sessions.delete：删除会话，可同时删除聊天记录文件。服务端禁止删除 main 会话时返回 ok=false。"""
    key = _require_key(METHOD_SESSIONS_DELETE, session_key)
    params = {"key": key, "deleteTranscript": bool(delete_transcript)}
    gateway_logger.info(f"local_to_server: 发送 sessions.delete key={key}")
    return await client.call(METHOD_SESSIONS_DELETE, params, timeout=timeout)


async def send_message_event(
    client,
    session_key: str,
    content: str,
    message_id: str,
    attachments: Optional[list] = None,
) -> None:
    """message.send 事件：sessionId 与 sessionKey 都填服务端 key。"""
    key = _require_key(EVENT_MESSAGE_SEND, session_key)
    payload = {
        "sessionId": key,
        "sessionKey": key,
        "content": content,
        "messageId": message_id,
    }
    if attachments:
        payload["attachments"] = attachments
    await client.send_event(EVENT_MESSAGE_SEND, payload)
    gateway_logger.info(f"local_to_server: 已发送 message.send sessionKey={key} messageId={message_id}")


def read_upload(path: str) -> dict:
    """读取文件并编码为 file.upload 所需字段。"""
    with open(path, "rb") as f:
        data = f.read()
    name = os.path.basename(path)
    return {
        "fileName": name,
        "fileSize": len(data),
        "fileType": mimetypes.guess_type(name)[0] or "application/octet-stream",
        "fileData": base64.b64encode(data).decode("ascii"),
    }


async def send_file_upload(client, session_key: str, upload: dict) -> None:
    key = _require_key(EVENT_FILE_UPLOAD, session_key)
    await client.send_event(EVENT_FILE_UPLOAD, {"sessionId": key, **upload})
    gateway_logger.info(
        f"local_to_server: 已发送 file.upload sessionKey={key} file={upload.get('fileName')} size={upload.get('fileSize')}"
    )
