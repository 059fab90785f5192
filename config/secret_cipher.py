"""
连接 token 的本地加密存储。
密钥存于 config/.token_key，加密后写入 connections.json 时带前缀 enc:，读取时解密。
"""
import os

from cryptography.fernet import Fernet, InvalidToken

from utils.logger import logger

# 加密值前缀，用于区分明文（手工编辑的配置）与密文
_ENCRYPTED_PREFIX = "enc:"


def _key_file_path(config_dir: str) -> str:
    """密钥文件路径：config_dir/.token_key"""
    return os.path.join(config_dir, ".token_key")


def _get_fernet(config_dir: str) -> Fernet:
    """获取或创建密钥文件，返回 Fernet 实例。"""
    path = _key_file_path(config_dir)
    if os.path.isfile(path):
        with open(path, "rb") as f:
            return Fernet(f.read().strip())
    key = Fernet.generate_key()
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(key)
    logger.info(f"已创建 token 密钥文件: {path}")
    return Fernet(key)


def is_encrypted(value: str) -> bool:
    return isinstance(value, str) and value.startswith(_ENCRYPTED_PREFIX)


def encrypt(plain: str, config_dir: str) -> str:
    """加密后返回 enc: + token；空字符串直接返回空字符串。"""
    if not plain:
        return ""
    token = _get_fernet(config_dir).encrypt(plain.encode("utf-8"))
    return _ENCRYPTED_PREFIX + token.decode("ascii")


def decrypt_if_encrypted(value: str, config_dir: str) -> str:
    """
    若为 enc: 开头的密文则解密后返回；否则返回原文。
    密钥不匹配（如密钥文件被删除重建）时记警告并返回空字符串，需重新填写 token。
    """
    if not value or not isinstance(value, str):
        return value or ""
    if not is_encrypted(value):
        return value
    try:
        token = value[len(_ENCRYPTED_PREFIX):].encode("ascii")
        return _get_fernet(config_dir).decrypt(token).decode("utf-8")
    except InvalidToken:
        logger.warning(f"token 解密失败（密钥不匹配），请重新填写: {config_dir}")
        return ""
