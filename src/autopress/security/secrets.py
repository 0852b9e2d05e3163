from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

MASTER_KEY_ENV = "AUTOPRESS_MASTER_KEY"
KEY_ID_ENV = "AUTOPRESS_KEY_ID"

DEFAULT_KEY_ID = "v1"
PBKDF2_ITERATIONS = 100_000
SALT_BYTES = 16
NONCE_BYTES = 12
MIN_MASTER_KEY_LENGTH = 16


class SecretError(ValueError):
    pass


@dataclass(frozen=True)
class SecretBox:
    key_id: str
    master: bytes
    iterations: int = PBKDF2_ITERATIONS

    def derive(self, salt: bytes) -> AESGCM:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        return AESGCM(kdf.derive(self.master))


def load_secret_box() -> SecretBox:
    master = os.environ.get(MASTER_KEY_ENV, "")
    if not master:
        raise SecretError(f"Master key is not set. Set {MASTER_KEY_ENV}.")
    if len(master) < MIN_MASTER_KEY_LENGTH:
        raise SecretError(f"{MASTER_KEY_ENV} must be at least {MIN_MASTER_KEY_LENGTH} characters")
    key_id = os.environ.get(KEY_ID_ENV) or DEFAULT_KEY_ID
    return SecretBox(key_id=key_id, master=master.encode("utf-8"))


def encrypt_secret(plaintext: str, aad: bytes, box: SecretBox | None = None) -> tuple[str, str]:
    """Encrypt ``plaintext`` and return ``(key_id, blob)``.

    Every value gets its own PBKDF2 salt and AES-GCM nonce; the blob is
    ``base64url(salt | nonce | ciphertext)``.
    """
    if not plaintext:
        raise SecretError("empty_secret")
    box = box or load_secret_box()
    salt = os.urandom(SALT_BYTES)
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = box.derive(salt).encrypt(nonce, plaintext.encode("utf-8"), aad)
    blob = base64.urlsafe_b64encode(salt + nonce + ciphertext).decode("utf-8")
    return box.key_id, blob


def decrypt_secret(blob_b64: str, aad: bytes, box: SecretBox | None = None) -> str:
    box = box or load_secret_box()
    try:
        data = base64.urlsafe_b64decode(_pad_b64(blob_b64))
    except (binascii.Error, ValueError) as exc:
        raise SecretError("secret blob is not valid base64url") from exc
    if len(data) <= SALT_BYTES + NONCE_BYTES:
        raise SecretError("secret blob is truncated")
    salt = data[:SALT_BYTES]
    nonce = data[SALT_BYTES : SALT_BYTES + NONCE_BYTES]
    ciphertext = data[SALT_BYTES + NONCE_BYTES :]
    try:
        plaintext = box.derive(salt).decrypt(nonce, ciphertext, aad)
    except InvalidTag as exc:
        raise SecretError("secret could not be decrypted with the current master key") from exc
    return plaintext.decode("utf-8")


def _pad_b64(value: str) -> str:
    padding = "=" * (-len(value) % 4)
    return value + padding
