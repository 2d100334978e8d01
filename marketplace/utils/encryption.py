"""Symmetric encryption for provider secrets stored at rest."""
import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from marketplace.errors import InternalError

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16


class EncryptionService:
    """AES-256-GCM with a key given as 64 hex characters.

    Ciphertext layout (base64): IV (16 bytes) + auth tag (16 bytes) + data.
    """

    def __init__(self, key_hex: Optional[str]):
        self._key_hex = key_hex

    def _cipher(self) -> AESGCM:
        if not self._key_hex:
            raise InternalError("ENCRYPTION_KEY is not configured")
        if len(self._key_hex) != 64:
            raise InternalError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
        try:
            key = bytes.fromhex(self._key_hex)
        except ValueError:
            raise InternalError("ENCRYPTION_KEY must be hex encoded")
        return AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        cipher = self._cipher()
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        data, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return base64.b64encode(iv + tag + data).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        cipher = self._cipher()
        try:
            combined = base64.b64decode(ciphertext)
        except ValueError:
            raise InternalError("Stored secret is not valid base64")
        if len(combined) < IV_LENGTH + AUTH_TAG_LENGTH:
            raise InternalError("Stored secret is truncated")
        iv = combined[:IV_LENGTH]
        tag = combined[IV_LENGTH:IV_LENGTH + AUTH_TAG_LENGTH]
        data = combined[IV_LENGTH + AUTH_TAG_LENGTH:]
        try:
            return cipher.decrypt(iv, data + tag, None).decode("utf-8")
        except InvalidTag:
            raise InternalError("Failed to decrypt stored secret")


def mask_secret(value: str, visible: int = 4) -> str:
    """Keep the first and last `visible` characters of a secret."""
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"
