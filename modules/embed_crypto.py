"""嵌入 ID 加解密

对外暴露的播放地址中不能出现广告的内部 ID，这里用 AES-256-CBC
把内部 ID 加密成不透明的 token。

token 格式::

    base64( hex(iv) + ":" + hex(ciphertext) )

每次加密都会生成新的 16 字节随机 IV，同一个 ID 两次加密得到的 token
不同，但都能解密回原 ID。
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from typing import Mapping, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import ConfigurationError, DecodeError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================


IV_SIZE = 16
_BLOCK_BITS = algorithms.AES.block_size
_BLOCK_SIZE = _BLOCK_BITS // 8
_SEPARATOR = ":"

SECRET_ENV_VAR = "EMBED_ENCRYPTION_KEY"
INSECURE_DEV_SECRET = "insecure-dev-embed-secret-do-not-deploy"
_PRODUCTION_ENVS = {"production", "prod"}


# =============================================================================
# Utility helpers
# =============================================================================


def derive_key(secret: str) -> bytes:
    """把任意长度的密钥字符串哈希成 32 字节的 AES-256 密钥"""
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _b64decode_token(token: str) -> bytes:
    # 兼容 URL 安全字母表以及被去掉的 "=" 填充
    normalized = token.strip().replace("-", "+").replace("_", "/")
    missing = len(normalized) % 4
    if missing:
        normalized += "=" * (4 - missing)
    return base64.b64decode(normalized, validate=True)


def to_url_token(token: str) -> str:
    """把标准 base64 token 转成可以直接放进 URL 路径的形式"""
    return token.replace("+", "-").replace("/", "_").rstrip("=")


def is_production(environ: Optional[Mapping[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    env = (environ.get("APP_ENV") or environ.get("FLASK_ENV") or "").strip().lower()
    return env in _PRODUCTION_ENVS


def resolve_embed_secret(
    app_config: Optional[dict] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    """解析嵌入 ID 的共享密钥

    优先级：环境变量 EMBED_ENCRYPTION_KEY > 配置 embed.secret。
    两者都没有时，生产环境直接报错，其它环境回退到明确标记为不安全的默认值。

    Args:
        app_config: 全局配置字典
        environ: 环境变量（默认 os.environ）

    Returns:
        密钥字符串

    Raises:
        ConfigurationError: 生产环境未配置密钥
    """
    environ = os.environ if environ is None else environ

    secret = (environ.get(SECRET_ENV_VAR) or "").strip()
    if not secret and isinstance(app_config, dict):
        embed_section = app_config.get("embed", {}) or {}
        secret = str(embed_section.get("secret") or "").strip()

    if secret:
        return secret

    if is_production(environ):
        raise ConfigurationError(
            f"{SECRET_ENV_VAR} must be set in production; refusing to use the development default"
        )

    logger.warning(
        "No embed secret configured, using INSECURE development default. "
        "Set %s before deploying.", SECRET_ENV_VAR
    )
    return INSECURE_DEV_SECRET


# =============================================================================
# Public API
# =============================================================================


class EmbedCodec:
    """嵌入 ID 编解码器

    无状态（除了派生出的密钥），可以在多个请求线程间共享。
    """

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("Embed secret must not be empty")
        self._key = derive_key(secret)

    def encode(self, resource_id: str) -> str:
        """加密内部 ID

        Args:
            resource_id: 内部资源 ID

        Returns:
            对外使用的 token
        """
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(resource_id.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        payload = f"{iv.hex()}{_SEPARATOR}{ciphertext.hex()}"
        return base64.b64encode(payload.encode("ascii")).decode("ascii")

    def decode(self, token: Optional[str]) -> Optional[str]:
        """解密 token，任何失败都返回 None，不抛异常

        Args:
            token: 对外 token

        Returns:
            内部 ID，token 非法时返回 None
        """
        try:
            return self.decode_or_raise(token)
        except DecodeError as e:
            # 不记录原始 token
            logger.debug("Embed token rejected: %s", e)
            return None

    def decode_or_raise(self, token: Optional[str]) -> str:
        """解密 token

        Raises:
            DecodeError: token 格式错误、被篡改或密钥不匹配
        """
        if not token:
            raise DecodeError("empty token")

        try:
            payload = _b64decode_token(token).decode("ascii")
        except (binascii.Error, ValueError):
            raise DecodeError("token is not valid base64") from None

        iv_hex, sep, ct_hex = payload.partition(_SEPARATOR)
        if not sep:
            raise DecodeError("token payload lacks separator")

        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ct_hex)
        except ValueError:
            raise DecodeError("token contains malformed hex") from None

        if len(iv) != IV_SIZE:
            raise DecodeError("invalid IV length")
        if not ciphertext or len(ciphertext) % _BLOCK_SIZE:
            raise DecodeError("invalid ciphertext length")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
        try:
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError:
            # 填充校验失败或解出的不是 UTF-8
            raise DecodeError("token failed integrity checks") from None


def get_embed_codec(app_config: Optional[dict] = None) -> EmbedCodec:
    """根据配置创建编解码器的便捷函数"""
    return EmbedCodec(resolve_embed_secret(app_config))


__all__ = [
    "EmbedCodec",
    "derive_key",
    "to_url_token",
    "get_embed_codec",
    "resolve_embed_secret",
    "is_production",
    "INSECURE_DEV_SECRET",
    "SECRET_ENV_VAR",
]
