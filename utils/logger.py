"""
日志工具模块
- logger：客户端主日志，写 logs/client_YYYYMMDD.log
- gateway_logger：协议收发、握手、超时，写 logs/gateway.YYYYMMDD.log，不向主日志传播
控制台输出走 stderr，stdout 留给命令行结果。URL 中的 token 查询参数在写出前打码。

注意：Logger 仅接受单参数字符串，请统一使用 f-string，例如 logger.info(f"msg: {x}")。
"""
import logging
import re
import sys
from datetime import datetime
from pathlib import Path

LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
ROOT_LOGGER_NAME = "OpenClawChat"
GATEWAY_LOGGER_NAME = "OpenClawChat.Gateway"

_FORMAT = "[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class TokenRedactFilter(logging.Filter):
    """把日志里的 token=xxx 替换为 token=***。"""

    _TOKEN_RE = re.compile(r"([?&]token=)[^&\s]+")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._TOKEN_RE.sub(r"\1***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    handler.addFilter(TokenRedactFilter())
    return handler


class Logger:
    """主日志单例；首次构造时同时配置 Gateway 子 logger。"""

    _instance = None
    _logger = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Logger, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if self._logger is None:
            self._setup_logger()

    def _setup_logger(self):
        self._logger = logging.getLogger(ROOT_LOGGER_NAME)
        self._logger.setLevel(logging.DEBUG)
        gateway = logging.getLogger(GATEWAY_LOGGER_NAME)
        gateway.setLevel(logging.DEBUG)
        gateway.propagate = False
        # 已配置过（如被重复导入）则不再加处理器
        if self._logger.handlers:
            return

        formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        day = datetime.now().strftime("%Y%m%d")
        console = _handler(logging.StreamHandler(sys.stderr), formatter)

        self._logger.addHandler(console)
        self._logger.addHandler(
            _handler(logging.FileHandler(LOG_DIR / f"client_{day}.log", encoding="utf-8"), formatter)
        )
        if not gateway.handlers:
            gateway.addHandler(console)
            gateway.addHandler(
                _handler(logging.FileHandler(LOG_DIR / f"gateway.{day}.log", encoding="utf-8"), formatter)
            )

    def set_level(self, level_name: str):
        """按 system_settings 的 log_level（DEBUG/INFO/WARNING/ERROR）同步设置主 logger、Gateway logger 及其处理器；未知值按 INFO。"""
        level = _LEVELS.get((level_name or "").strip().upper(), logging.INFO)
        for target in (self._logger, logging.getLogger(GATEWAY_LOGGER_NAME)):
            target.setLevel(level)
            for h in target.handlers:
                h.setLevel(level)

    def debug(self, message):
        self._logger.debug(message)

    def info(self, message):
        self._logger.info(message)

    def warning(self, message):
        self._logger.warning(message)

    def error(self, message):
        self._logger.error(message)

    def exception(self, message):
        """带堆栈，只在 except 块内调用。"""
        self._logger.exception(message)


logger = Logger()
gateway_logger = logging.getLogger(GATEWAY_LOGGER_NAME)
