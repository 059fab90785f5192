"""
事件分发：事件名 -> 订阅回调集合。
服务端推送事件与内部合成通知（status:received、connection:connected 等）都经此派发。
"""
from typing import Any, Callable, Optional

from utils.logger import gateway_logger

Handler = Callable[[Any], None]

# 内部通知名
CONNECTION_CONNECTING = "connection:connecting"
CONNECTION_WAITING = "connection:waiting"
CONNECTION_CONNECTED = "connection:connected"
CONNECTION_DISCONNECTED = "connection:disconnected"
CONNECTION_ERROR = "connection:error"
STATUS_RECEIVED = "status:received"
SESSIONS_RECEIVED = "sessions:received"
MESSAGES_RECEIVED = "messages:received"
MESSAGE_RECEIVED = "message:received"
MESSAGE_SENT = "message:sent"
MESSAGE_FAILED = "message:failed"
ERROR = "error"
SHUTDOWN = "shutdown"


class EventDispatcher:
    """
    观察者注册表。
    - subscribe / unsubscribe 修改某事件名下的回调集合（同一回调重复订阅只保留一份）。
    - publish 按注册顺序逐个调用，单个回调抛异常只记日志，不影响其它回调。
    - set_main_thread_runner(runner) 注入主线程执行器，runner(callable) 在 UI 线程执行回调；
      未注入时在事件循环内同步调用。
    订阅跨重连保留，直到调用方显式取消。
    """

    def __init__(self):
        # dict 保持插入顺序，兼作有序集合
        self._handlers: dict[str, dict[Handler, None]] = {}
        self._main_thread_runner: Optional[Callable[[Callable[[], None]], None]] = None

    def set_main_thread_runner(self, runner: Optional[Callable[[Callable[[], None]], None]]) -> None:
        self._main_thread_runner = runner

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """订阅事件；返回取消订阅的函数。"""
        self._handlers.setdefault(event, {})[handler] = None
        return lambda: self.unsubscribe(event, handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers is None:
            return
        handlers.pop(handler, None)
        if not handlers:
            self._handlers.pop(event, None)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event) or ())

    def publish(self, event: str, data: Any = None) -> None:
        # 复制一份：回调内订阅/取消不影响本轮派发
        handlers = list((self._handlers.get(event) or {}).keys())
        for handler in handlers:
            if self._main_thread_runner:
                self._main_thread_runner(lambda h=handler: self._invoke(event, h, data))
            else:
                self._invoke(event, handler, data)

    @staticmethod
    def _invoke(event: str, handler: Handler, data: Any) -> None:
        try:
            handler(data)
        except Exception as e:
            gateway_logger.exception(f"事件回调异常: event={event} handler={handler!r}: {e}")
