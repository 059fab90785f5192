"""
握手认证状态机：Idle -> AwaitingChallenge -> AwaitingAuthResult -> Authenticated | Failed。
- 收到 connect.challenge 后立即以保留 id 发送 connect 请求（params.auth.token）。
- res(ok=true) 与 connect.ready 事件都视为认证成功，先到者生效，之后的信号忽略。
- res(ok=false)、connect.error、1008 关闭、超时都转 Failed。
"""
import asyncio
import enum
from typing import Any, Awaitable, Callable, Optional

from utils.logger import gateway_logger
from .device_auth import DeviceIdentity
from .errors import AuthenticationError, AuthenticationTimeoutError, TransportError
from .frames import ResponseFrame, encode_frame
from .protocol import (
    AUTH_TIMEOUT_SEC,
    CLOSE_POLICY_VIOLATION,
    HANDSHAKE_REQUEST_ID,
    METHOD_CONNECT,
    build_connect_params,
    build_request_frame,
)

GENERIC_AUTH_FAILURE = "authentication failed"


class AuthState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AWAITING_AUTH_RESULT = "awaiting_auth_result"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class Authenticator:
    """单次握手的认证器；每次（重）连接新建一个。"""

    def __init__(
        self,
        token: str,
        send_text: Callable[[str], Awaitable[None]],
        *,
        client_info: Optional[dict] = None,
        device: Optional[DeviceIdentity] = None,
        timeout: float = AUTH_TIMEOUT_SEC,
        name: str = "",
    ):
        self._token = token
        self._send_text = send_text
        self._client_info = client_info or {}
        self._device = device
        self._timeout = timeout
        self._name = name
        self.state = AuthState.IDLE
        self.nonce: str = ""
        self.hello_payload: Any = None
        self._result: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self.state in (AuthState.AUTHENTICATED, AuthState.FAILED)

    def on_open(self) -> None:
        if self.state is AuthState.IDLE:
            self.state = AuthState.AWAITING_CHALLENGE
            gateway_logger.info(f"Gateway 传输已打开，等待服务端 challenge: {self._name}")

    async def on_challenge(self, payload: dict) -> None:
        if self.state not in (AuthState.IDLE, AuthState.AWAITING_CHALLENGE):
            gateway_logger.debug(f"Gateway 忽略重复 challenge: state={self.state.value}")
            return
        self.nonce = str(payload.get("nonce") or "")
        gateway_logger.info(f"Gateway 收到 challenge: nonce={self.nonce} ts={payload.get('ts')}")
        device_block = None
        if self._device is not None:
            if self.nonce:
                gateway_logger.warning("Gateway 使用实验性设备签名认证（未经服务端确认）")
                device_block = self._device.sign_challenge(self.nonce)
            else:
                gateway_logger.warning("Gateway challenge 无 nonce，跳过设备签名")
        params = build_connect_params(token=self._token, device=device_block, **self._client_info)
        _, frame = build_request_frame(METHOD_CONNECT, params, req_id=HANDSHAKE_REQUEST_ID)
        self.state = AuthState.AWAITING_AUTH_RESULT
        try:
            await self._send_text(encode_frame(frame))
        except Exception as e:
            self._fail(TransportError(f"发送 connect 请求失败: {e}"))
            return
        gateway_logger.info(f"Gateway 已发送 connect 请求: id={HANDSHAKE_REQUEST_ID}")

    def on_response(self, frame: ResponseFrame) -> None:
        """握手 id 的 res。"""
        if frame.ok:
            self._succeed(frame.payload)
        else:
            self._fail(AuthenticationError(frame.error_message(GENERIC_AUTH_FAILURE)))

    def on_ready(self, payload: Any) -> None:
        self._succeed(payload)

    def on_error(self, message: str) -> None:
        self._fail(AuthenticationError(message or GENERIC_AUTH_FAILURE))

    def on_close(self, code: Optional[int], reason: str = "") -> None:
        if self.done:
            return
        if code == CLOSE_POLICY_VIOLATION:
            self._fail(AuthenticationError(reason or GENERIC_AUTH_FAILURE))
        else:
            self._fail(TransportError(f"握手完成前连接已关闭: code={code} reason={reason}"))

    async def wait(self) -> Any:
        """等待认证结果；成功返回 hello payload，失败/超时抛异常。"""
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=self._timeout)
        except asyncio.TimeoutError:
            if self.state is AuthState.AUTHENTICATED:
                return self.hello_payload
            exc = AuthenticationTimeoutError(f"Connection or Authentication timeout ({self._timeout:g}s)")
            self._fail(exc)
            # 取出异常，避免 "exception was never retrieved"
            self._result.exception()
            raise exc from None

    def _succeed(self, payload: Any) -> None:
        if self.done:
            gateway_logger.debug(f"Gateway 认证信号重复，忽略: state={self.state.value}")
            return
        self.state = AuthState.AUTHENTICATED
        self.hello_payload = payload
        gateway_logger.info(f"Gateway 认证成功，连接就绪: {self._name}")
        self._result.set_result(payload)

    def _fail(self, exc: Exception) -> None:
        if self.done:
            return
        self.state = AuthState.FAILED
        gateway_logger.warning(f"Gateway 认证失败: {self._name}: {exc}")
        self._result.set_exception(exc)
