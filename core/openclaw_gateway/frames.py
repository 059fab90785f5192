"""
帧编解码：每个入站文本帧解析为 req / res / event 三类信封之一。
解析失败不抛异常，返回 RawFrame（保留原文），由上层作为诊断事件派发。
"""
import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import MalformedFrameError

_ENVELOPE_TYPES = ("req", "res", "event")


class RequestFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["req"] = "req"
    id: str
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


class ResponseFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["res"] = "res"
    id: str
    ok: bool = False
    payload: Any = None
    error: Any = None

    def error_message(self, default: str = "未知错误") -> str:
        """服务端错误文本：error 可能是 {message}、字符串或其它结构。"""
        err = self.error
        if isinstance(err, dict):
            msg = err.get("message")
            if msg:
                return str(msg)
            return json.dumps(err, ensure_ascii=False) if err else default
        if err:
            return str(err)
        return default

    def error_code(self) -> Optional[str]:
        if isinstance(self.error, dict) and self.error.get("code") is not None:
            return str(self.error["code"])
        return None


class EventFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["event"] = "event"
    event: str
    payload: Any = None

    def payload_dict(self) -> dict:
        return self.payload if isinstance(self.payload, dict) else {}


class RawFrame(BaseModel):
    """无法识别的入站数据，原样保留供诊断。"""

    type: Literal["raw"] = "raw"
    raw: str
    reason: str = ""


Frame = Annotated[Union[RequestFrame, ResponseFrame, EventFrame], Field(discriminator="type")]
_FRAME_ADAPTER = TypeAdapter(Frame)


def parse_frame(raw: str) -> Union[RequestFrame, ResponseFrame, EventFrame]:
    """严格解析；非 JSON 或结构不合法时抛 MalformedFrameError。"""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedFrameError(raw, f"非 JSON 数据: {e}") from e
    if not isinstance(data, dict):
        raise MalformedFrameError(raw, f"帧不是 JSON 对象: {type(data).__name__}")
    frame_type = data.get("type")
    if frame_type not in _ENVELOPE_TYPES:
        # 旧协议：{type: "<事件名>", ...} 或缺少 type 的 {event, payload}
        name = data.get("event") or frame_type
        if not isinstance(name, str) or not name:
            raise MalformedFrameError(raw, "帧缺少 type/event 字段")
        return EventFrame(event=name, payload=data.get("payload", data))
    try:
        return _FRAME_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise MalformedFrameError(raw, f"{frame_type} 帧字段不合法: {e.error_count()} 处错误") from e


def decode_frame(raw: Union[str, bytes]) -> Union[RequestFrame, ResponseFrame, EventFrame, RawFrame]:
    """容错解析：任何解析失败都降级为 RawFrame，绝不抛异常。"""
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    try:
        return parse_frame(raw)
    except MalformedFrameError as e:
        return RawFrame(raw=raw, reason=e.reason)


def encode_frame(frame: Union[RequestFrame, ResponseFrame, EventFrame, dict]) -> str:
    """序列化为发送文本；dict 原样 dumps。"""
    if isinstance(frame, BaseModel):
        frame = frame.model_dump(exclude_none=True)
    return json.dumps(frame, ensure_ascii=False)
