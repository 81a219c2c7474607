# app/utils/encryption.py
"""Fernet encryption for calendar credentials at rest (OAuth tokens, Apple app passwords)"""
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from app.config.settings import get_settings


# Generate once with Fernet.generate_key() and put it in .env as CALENDAR_ENCRYPTION_KEY


def get_cipher() -> Fernet:
    key = get_settings().CALENDAR_ENCRYPTION_KEY
    if not key:
        raise ValueError("CALENDAR_ENCRYPTION_KEY is not set")
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_token(token: Optional[str]) -> Optional[bytes]:
    """Encrypt a credential for storage; empty values are stored as NULL"""
    if not token:
        return None
    return get_cipher().encrypt(token.encode("utf-8"))


def decrypt_token(encrypted_token: Optional[bytes]) -> Optional[str]:
    if not encrypted_token:
        return None
    try:
        return get_cipher().decrypt(bytes(encrypted_token)).decode("utf-8")
    except InvalidToken:
        raise ValueError("Stored calendar token cannot be decrypted with the configured key")
