from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from api_pulse.errors import DecryptionError


# Envelope: iv:authTag:ciphertext, each hex encoded.
AAD = b"api-pulse"
IV_BYTES = 16
TAG_BYTES = 16
KEY_BYTES = 32


class CredentialVault:
    """AES-256-GCM encrypt/decrypt for connection secrets at rest."""

    def __init__(self, key: str | bytes) -> None:
        raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
        if len(raw) != KEY_BYTES:
            raise ValueError("Encryption key must be exactly 32 bytes long")
        self._aead = AESGCM(raw)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), AAD)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, envelope: str) -> str:
        parts = str(envelope or "").split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted text format")
        try:
            iv = bytes.fromhex(parts[0])
            tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError as e:
            raise DecryptionError("Invalid encrypted text encoding") from e
        if len(tag) != TAG_BYTES or not iv:
            raise DecryptionError("Invalid encrypted text format")
        try:
            plain = self._aead.decrypt(iv, ciphertext + tag, AAD)
        except (InvalidTag, ValueError) as e:
            raise DecryptionError("Credential authentication failed") from e
        return plain.decode("utf-8")

    def decrypt_optional(self, envelope: str | None) -> str | None:
        if not envelope:
            return None
        return self.decrypt(envelope)
