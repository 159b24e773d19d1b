"""Encrypt-at-rest for secret columns.

``EncryptedString`` is a SQLAlchemy type: values are Fernet-encrypted on the
way into the database and decrypted on the way out, so stores and services
only ever see plaintext and never repeat the crypto at call sites.
"""
from __future__ import annotations
import base64
import hashlib
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.types import Text, TypeDecorator

from . import config


@lru_cache(maxsize=1)
def _fernet() -> Fernet:
    key = config.ENCRYPTION_KEY
    if not key:
        digest = hashlib.sha256(config.SECRET_KEY.encode()).digest()
        key = base64.urlsafe_b64encode(digest).decode()
    return Fernet(key.encode())


def encrypt(value: str) -> str:
    return _fernet().encrypt(value.encode()).decode()


def decrypt(token: str) -> str:
    try:
        return _fernet().decrypt(token.encode()).decode()
    except InvalidToken:
        raise ValueError("secret cannot be decrypted with the configured key")


def mask(value: Optional[str], visible: int = 4) -> Optional[str]:
    if value is None:
        return None
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


class EncryptedString(TypeDecorator):
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return encrypt(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return decrypt(value)
