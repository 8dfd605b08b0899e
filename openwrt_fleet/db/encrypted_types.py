from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from openwrt_fleet.core.field_encryption import TOKEN_PREFIX, decrypt_secret, encrypt_secret


class EncryptedString(TypeDecorator):
    """String column stored as a Fernet token; plaintext rows are read back as-is."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        s = str(value)
        if s == "" or s.startswith(TOKEN_PREFIX):
            return s
        return encrypt_secret(s)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return decrypt_secret(str(value))
