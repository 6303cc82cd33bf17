"""
Field-level encryption for secrets at rest (app secrets, third-party tokens).
"""

from functools import lru_cache
from typing import Optional, Tuple
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator
from authbridge.config import settings


@lru_cache(maxsize=8)
def _cipher(keys: Tuple[str, ...]) -> MultiFernet:
    if not keys:
        raise RuntimeError("AUTHBRIDGE_FIELD_ENCRYPTION_KEYS is not configured")
    return MultiFernet([Fernet(key.encode()) for key in keys])


def get_cipher() -> MultiFernet:
    return _cipher(tuple(settings.encryption_keys))


def encrypt_value(value: str) -> str:
    return get_cipher().encrypt(value.encode()).decode()


def decrypt_value(value: str) -> str:
    try:
        return get_cipher().decrypt(value.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Unable to decrypt field, wrong key or tampered ciphertext") from exc


def rotate_value(value: str) -> str:
    """
    Re-encrypt a ciphertext under the current primary key.
    """
    return get_cipher().rotate(value.encode()).decode()


class EncryptedString(TypeDecorator):
    """
    Text column transparently encrypted with Fernet (AES-CBC + HMAC).
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return encrypt_value(value)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return decrypt_value(value)
