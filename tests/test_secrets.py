import pytest

from autopress.security.secrets import (
    MASTER_KEY_ENV,
    SecretBox,
    SecretError,
    decrypt_secret,
    encrypt_secret,
    load_secret_box,
)


def test_encrypt_decrypt_roundtrip():
    key_id, blob = encrypt_secret("supersecret", b"provider:openai")
    assert key_id == "v1"
    assert "supersecret" not in blob
    assert decrypt_secret(blob, b"provider:openai") == "supersecret"


def test_each_encryption_is_unique():
    _, first = encrypt_secret("supersecret", b"provider:openai")
    _, second = encrypt_secret("supersecret", b"provider:openai")
    assert first != second


def test_aad_mismatch_is_rejected():
    _, blob = encrypt_secret("supersecret", b"provider:openai")
    with pytest.raises(SecretError):
        decrypt_secret(blob, b"provider:anthropic")


def test_other_master_key_is_rejected():
    _, blob = encrypt_secret("supersecret", b"provider:openai")
    other = SecretBox(key_id="v1", master=b"another-master-key-000")
    with pytest.raises(SecretError):
        decrypt_secret(blob, b"provider:openai", other)


def test_master_key_must_be_present_and_long(monkeypatch):
    monkeypatch.setenv(MASTER_KEY_ENV, "short")
    with pytest.raises(SecretError):
        load_secret_box()
    monkeypatch.delenv(MASTER_KEY_ENV)
    with pytest.raises(SecretError):
        load_secret_box()


def test_garbage_blob_is_rejected():
    with pytest.raises(SecretError):
        decrypt_secret("c2hvcnQ", b"provider:openai")
