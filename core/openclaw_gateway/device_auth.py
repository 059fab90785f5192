"""
设备签名认证（实验性）。
Ed25519 密钥：id / publicKey 为原始公钥 32 字节的 hex，signature 为对 nonce 字节签名的 hex。
该方案未经 Gateway 确认可用，默认不启用；token 认证是受支持的路径。
"""
import os
import time
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from utils.logger import gateway_logger


class DeviceIdentity:
    """设备身份：持有 Ed25519 私钥，对 challenge nonce 签名。"""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "DeviceIdentity":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def load_or_create(cls, path: str) -> "DeviceIdentity":
        """从 PEM 文件加载私钥；不存在则生成并写入。"""
        if os.path.isfile(path):
            with open(path, "rb") as f:
                key = serialization.load_pem_private_key(f.read(), password=None)
            if not isinstance(key, Ed25519PrivateKey):
                raise ValueError(f"设备密钥不是 Ed25519: {path}")
            return cls(key)
        identity = cls.generate()
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        pem = identity._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        with open(path, "wb") as f:
            f.write(pem)
        gateway_logger.info(f"已生成设备密钥: {path}")
        return identity

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._private_key.public_key()

    @property
    def public_key_hex(self) -> str:
        raw = self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return raw.hex()

    @property
    def device_id(self) -> str:
        return self.public_key_hex

    def sign_challenge(self, nonce: str, signed_at: Optional[int] = None) -> dict:
        """对 nonce 签名，返回 connect params.auth.device 块。"""
        signature = self._private_key.sign(nonce.encode("utf-8"))
        return {
            "id": self.device_id,
            "publicKey": self.public_key_hex,
            "signature": signature.hex(),
            "signedAt": signed_at if signed_at is not None else int(time.time() * 1000),
            "nonce": nonce,
        }
