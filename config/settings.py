"""
全局配置管理：
- 已保存的连接存于 config/connections.json（token 加密存储）
- 系统级设置存于 config/system_settings.json（日志等级、client 描述、超时、重连等）
get(key) / set(key, value) 也供模板等其它本地持久化使用，未知键原样保存。
"""
import json
import os

from pydantic import ValidationError

from utils.logger import logger
from config.secret_cipher import decrypt_if_encrypted, encrypt
from core.openclaw_gateway.models import ConnectionConfig

# 连接配置中需加密存储的字段
CONNECTION_SENSITIVE_KEYS = ("token",)


class Settings:
    """全局配置：config/connections.json + config/system_settings.json。"""

    def __init__(self, config_dir=None):
        if config_dir is None:
            _root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
            config_dir = os.path.join(_root, "config")
        self._config_dir = os.path.normpath(os.path.abspath(config_dir))
        self.connections_file = os.path.join(self._config_dir, "connections.json")
        self.system_settings_file = os.path.join(self._config_dir, "system_settings.json")
        self.config = self._load_default()
        self.connections: list[ConnectionConfig] = []
        self.load()

    @property
    def config_dir(self) -> str:
        return self._config_dir

    def _load_default(self):
        return {
            "log_level": "INFO",
            "client_id": "cli",
            "client_version": "1.0.0",
            "client_mode": "ui",
            "history_limit": 100,
            "sessions_limit": 100,
            "auth_timeout_sec": 10.0,
            "auto_reconnect": False,
            "device_auth": False,
            "device_key_file": ".device_key.pem",
        }

    def load(self):
        """加载：默认 -> system_settings.json -> connections.json。"""
        self.config = self._load_default()
        if os.path.isfile(self.system_settings_file):
            try:
                with open(self.system_settings_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    self.config.update(data)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"加载 system_settings.json 失败: {e}")
        self.connections = []
        if os.path.isfile(self.connections_file):
            try:
                with open(self.connections_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"加载 connections.json 失败: {e}")
                data = []
            for item in data if isinstance(data, list) else []:
                if not isinstance(item, dict):
                    continue
                item = dict(item)
                for k in CONNECTION_SENSITIVE_KEYS:
                    if isinstance(item.get(k), str):
                        item[k] = decrypt_if_encrypted(item[k], self._config_dir)
                try:
                    self.connections.append(ConnectionConfig.model_validate(item))
                except ValidationError as e:
                    logger.warning(f"跳过无效连接配置 {item.get('name')!r}: {e.error_count()} 处错误")

    def save(self):
        """保存 system_settings.json 与 connections.json（token 加密）。"""
        os.makedirs(self._config_dir, exist_ok=True)
        system_settings = dict(self.config)
        connections = []
        for cfg in self.connections:
            item = cfg.model_dump(mode="json")
            for k in CONNECTION_SENSITIVE_KEYS:
                if item.get(k):
                    item[k] = encrypt(item[k], self._config_dir)
            connections.append(item)
        try:
            with open(self.system_settings_file, "w", encoding="utf-8") as f:
                json.dump(system_settings, f, indent=2, ensure_ascii=False)
            with open(self.connections_file, "w", encoding="utf-8") as f:
                json.dump(connections, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"保存配置失败: {e}")
            raise

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value

    def list_connections(self) -> list[ConnectionConfig]:
        return list(self.connections)

    def get_connection(self, name: str):
        for cfg in self.connections:
            if cfg.name == name:
                return cfg
        return None

    def upsert_connection(self, config: ConnectionConfig) -> None:
        """按名称新增或替换（替换时保留原 created_at，以便派生的连接 id 不变）。"""
        for i, cfg in enumerate(self.connections):
            if cfg.name == config.name:
                self.connections[i] = config.model_copy(update={"created_at": cfg.created_at})
                return
        self.connections.append(config)

    def remove_connection(self, name: str) -> bool:
        before = len(self.connections)
        self.connections = [c for c in self.connections if c.name != name]
        return len(self.connections) != before

    def client_info(self) -> dict:
        """connect 握手 client 描述覆盖项。"""
        return {
            "client_id": self.get("client_id", "cli"),
            "version": self.get("client_version", "1.0.0"),
            "mode": self.get("client_mode", "ui"),
        }
