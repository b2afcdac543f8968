"""Authenticated encryption for stored credentials.

AES-256-GCM with a key derived once from the application secret by
SHA-256. Every encryption draws a fresh 96-bit nonce which is stored
alongside the ciphertext. The GCM tag makes any modification of the
nonce, ciphertext or associated data fail decryption.
"""

from __future__ import annotations

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class IntegrityError(Exception):
    """Raised when a ciphertext does not verify under the store key."""


class CredentialCipher:
    """Encrypts and decrypts credential payloads with AES-256-GCM."""

    def __init__(self, app_secret: str) -> None:
        if not app_secret:
            raise ValueError("app_secret must not be empty")
        key = hashlib.sha256(app_secret.encode()).digest()
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: bytes, associated_data: bytes = b"") -> tuple[bytes, bytes]:
        """Return ``(nonce, ciphertext)``; the ciphertext includes the GCM tag."""
        nonce = os.urandom(NONCE_SIZE)
        return nonce, self._aead.encrypt(nonce, plaintext, associated_data or None)

    def decrypt(
        self, nonce: bytes, ciphertext: bytes, associated_data: bytes = b"",
    ) -> bytes:
        """Decrypt and verify.

        Raises:
            IntegrityError: If the tag does not verify or the nonce is malformed.
        """
        if len(nonce) != NONCE_SIZE:
            raise IntegrityError(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
        try:
            return self._aead.decrypt(nonce, ciphertext, associated_data or None)
        except InvalidTag as e:
            raise IntegrityError("credential ciphertext failed verification") from e
