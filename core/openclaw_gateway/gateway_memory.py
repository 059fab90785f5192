"""
单连接的 Gateway 内存：握手 hello payload、health 快照。
由连接在握手成功 / 收到 health 事件时写入，UI 与调用方从此读取；连接拆除时清空。
dispatcher 可能把回调投递到 UI 线程读取，故读写加锁。
"""
import threading
import time
from typing import Any, Optional

from utils.logger import gateway_logger


class GatewayMemory:
    """hello 与 health 缓存，每个连接一份（不做全局单例）。"""

    def __init__(self, name: str = ""):
        self._name = name
        self._lock = threading.Lock()
        self._hello: dict = {}
        self._health: dict = {"ok": None, "payload": None, "error": None, "updated_at": 0}

    def set_hello(self, payload: Any) -> None:
        """写入 connect 成功的 payload；含 snapshot.health 时一并写入 health。"""
        hello = payload if isinstance(payload, dict) else {}
        with self._lock:
            self._hello = hello
        snapshot = hello.get("snapshot")
        if isinstance(snapshot, dict) and snapshot.get("health") is not None:
            self.set_health(True, snapshot.get("health"), None)
            gateway_logger.info(f"Gateway 已写入 connect snapshot.health 到内存: {self._name}")

    def get_hello(self) -> dict:
        with self._lock:
            return dict(self._hello)

    def _features(self) -> dict:
        features = self.get_hello().get("features")
        return features if isinstance(features, dict) else {}

    def get_supported_methods(self) -> list:
        """根据 hello 的 features.methods 返回支持的方法；未握手返回 []。"""
        methods = self._features().get("methods")
        return list(methods) if isinstance(methods, list) else []

    def supports_method(self, method: str) -> bool:
        return method in self.get_supported_methods()

    def get_recent_sessions(self) -> list:
        """hello payload 中的 sessions.recent（服务端可能不提供）。"""
        sessions = self.get_hello().get("sessions")
        recent = sessions.get("recent") if isinstance(sessions, dict) else None
        return list(recent) if isinstance(recent, list) else []

    def set_health(self, ok: bool, payload: Any, error: Optional[dict]) -> None:
        with self._lock:
            self._health = {"ok": ok, "payload": payload, "error": error, "updated_at": time.time()}
        gateway_logger.debug(f"gateway_memory: set_health ok={ok} {self._name}")

    def get_health(self) -> tuple[Optional[bool], Any, Optional[dict]]:
        """读取最新 health；返回 (ok, payload, error)，未写过则 (None, None, None)。"""
        with self._lock:
            h = self._health
            return (h.get("ok"), h.get("payload"), h.get("error"))

    def clear(self) -> None:
        with self._lock:
            self._hello = {}
            self._health = {"ok": None, "payload": None, "error": None, "updated_at": 0}
