"""
凭据保险库

对主机密码 / 私钥做对称加解密。密文格式 "<iv hex>:<密文 hex>"，自带 IV；
使用 AES-256-GCM，密文被篡改或换了密钥时解密必然失败（DecryptionError）。
保险库本身不做鉴权。
"""

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.exceptions import DecryptionError
from core.logger import get_logger

_logger = get_logger("services.vault")

IV_LENGTH = 12

# security.encryption_key 为空时使用，仅供开发环境
_DEV_KEY = "ControlHubDevelopmentKey"


class CredentialVault:
    """主机凭据加解密"""

    def __init__(self, secret: str = ""):
        if not secret:
            _logger.warning("未配置 security.encryption_key，使用开发用内置密钥，请勿用于生产环境")
            secret = _DEV_KEY
        # 任意长度的配置密钥统一派生为 32 字节
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        """
        Raises:
            DecryptionError: 密文格式错误或不是用当前密钥加密的
        """
        iv_hex, sep, body_hex = (ciphertext or "").partition(":")
        if not sep or not iv_hex or not body_hex:
            raise DecryptionError("凭据密文格式错误")
        try:
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
        except ValueError as e:
            raise DecryptionError(f"凭据密文不是合法的十六进制: {e}") from e
        if len(iv) != IV_LENGTH:
            raise DecryptionError(f"IV 长度错误: {len(iv)}")

        try:
            plaintext = self._aead.decrypt(iv, body, None)
        except InvalidTag as e:
            raise DecryptionError("凭据解密失败（密钥不匹配或密文已损坏）") from e
        return plaintext.decode("utf-8")
