from sqlalchemy import text

from openwrt_fleet.core import field_encryption
from openwrt_fleet.db.encrypted_types import EncryptedString
from openwrt_fleet.models.device import Device


def _reset_fernet(monkeypatch, **env):
    monkeypatch.delenv("FIELD_ENCRYPTION_KEY", raising=False)
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    field_encryption.get_fernet.cache_clear()


def test_password_is_stored_as_token(monkeypatch, session_factory):
    _reset_fernet(monkeypatch, SECRET_KEY="test-secret-key")
    db = session_factory()
    try:
        db.add(Device(id="r1", name="edge", host="10.0.0.1", password="hunter2"))
        db.commit()
        raw = db.execute(text("SELECT password FROM devices WHERE id = 'r1'")).scalar()
    finally:
        db.close()

    assert raw.startswith(field_encryption.TOKEN_PREFIX)
    assert "hunter2" not in raw

    db = session_factory()
    try:
        assert db.get(Device, "r1").password == "hunter2"
    finally:
        db.close()


def test_bind_leaves_empty_and_existing_tokens_alone(monkeypatch):
    _reset_fernet(monkeypatch, SECRET_KEY="test-secret-key")
    col = EncryptedString()
    assert col.process_bind_param(None, None) is None
    assert col.process_bind_param("", None) == ""
    token = field_encryption.encrypt_secret("pw")
    assert col.process_bind_param(token, None) == token


def test_plaintext_rows_read_back_as_is(monkeypatch):
    _reset_fernet(monkeypatch, SECRET_KEY="test-secret-key")
    assert EncryptedString().process_result_value("legacy-plain", None) == "legacy-plain"


def test_wrong_key_reads_as_none(monkeypatch):
    _reset_fernet(monkeypatch, SECRET_KEY="first-key")
    token = field_encryption.encrypt_secret("pw")
    _reset_fernet(monkeypatch, SECRET_KEY="second-key")
    assert field_encryption.decrypt_secret(token) is None


def test_explicit_fernet_key_wins(monkeypatch):
    from cryptography.fernet import Fernet

    key = Fernet.generate_key().decode()
    _reset_fernet(monkeypatch, SECRET_KEY="test-secret-key", FIELD_ENCRYPTION_KEY=key)
    token = field_encryption.encrypt_secret("pw")
    assert Fernet(key.encode()).decrypt(token[len(field_encryption.TOKEN_PREFIX):].encode()) == b"pw"
    field_encryption.get_fernet.cache_clear()
