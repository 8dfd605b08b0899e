import base64
import hashlib
import os
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "enc:"
_PLACEHOLDER_SECRET = "change-me"


def _key_from_passphrase(passphrase: str) -> bytes:
    digest = hashlib.sha256(passphrase.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def build_fernet(raw_key: str) -> Fernet:
    """
    Accepts either a ready Fernet key or an arbitrary passphrase.
    Passphrases are stretched with SHA-256 into a urlsafe 32-byte key.
    """
    s = str(raw_key or "").strip()
    if not s:
        raise ValueError("credential encryption key is empty")
    try:
        return Fernet(s.encode("utf-8"))
    except ValueError:
        return Fernet(_key_from_passphrase(s))


@lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    raw_key = (os.getenv("FIELD_ENCRYPTION_KEY") or "").strip()
    if raw_key:
        return build_fernet(raw_key)

    secret_key = (os.getenv("SECRET_KEY") or "").strip()
    if not secret_key or secret_key == _PLACEHOLDER_SECRET:
        raise RuntimeError("SECRET_KEY or FIELD_ENCRYPTION_KEY must be set to store device credentials")

    if (os.getenv("APP_ENV") or "").strip().lower() in {"prod", "production"}:
        logger.warning("FIELD_ENCRYPTION_KEY is not set; device passwords are encrypted with a key derived from SECRET_KEY")
    return build_fernet(secret_key)


def encrypt_secret(plain: str) -> str:
    token = get_fernet().encrypt(plain.encode("utf-8")).decode("utf-8")
    return f"{TOKEN_PREFIX}{token}"


def decrypt_secret(stored: str) -> str | None:
    if not stored.startswith(TOKEN_PREFIX):
        return stored
    try:
        return get_fernet().decrypt(stored[len(TOKEN_PREFIX):].encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.warning("Stored device credential could not be decrypted with the configured key")
        return None
