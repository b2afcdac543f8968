"""Tests for AES-GCM credential encryption."""

from __future__ import annotations

import pytest

from agent_gateway.credentials.cipher import NONCE_SIZE, CredentialCipher, IntegrityError


def _flip_bit(data: bytes, bit: int) -> bytes:
    buf = bytearray(data)
    buf[bit // 8] ^= 1 << (bit % 8)
    return bytes(buf)


class TestCredentialCipher:
    def test_round_trip(self) -> None:
        cipher = CredentialCipher("a" * 32)
        nonce, ciphertext = cipher.encrypt(b'{"token": "x"}', b"project/1")
        assert cipher.decrypt(nonce, ciphertext, b"project/1") == b'{"token": "x"}'

    def test_fresh_nonce_per_encryption(self) -> None:
        cipher = CredentialCipher("a" * 32)
        first = cipher.encrypt(b"same")
        second = cipher.encrypt(b"same")
        assert len(first[0]) == NONCE_SIZE
        assert first[0] != second[0]
        assert first[1] != second[1]

    def test_ciphertext_does_not_contain_plaintext(self) -> None:
        cipher = CredentialCipher("a" * 32)
        _, ciphertext = cipher.encrypt(b"glpat-super-secret")
        assert b"glpat-super-secret" not in ciphertext

    def test_every_single_bit_flip_is_rejected(self) -> None:
        cipher = CredentialCipher("a" * 32)
        nonce, ciphertext = cipher.encrypt(b"payload", b"ad")
        for bit in range(len(ciphertext) * 8):
            with pytest.raises(IntegrityError):
                cipher.decrypt(nonce, _flip_bit(ciphertext, bit), b"ad")

    def test_nonce_bit_flip_is_rejected(self) -> None:
        cipher = CredentialCipher("a" * 32)
        nonce, ciphertext = cipher.encrypt(b"payload")
        with pytest.raises(IntegrityError):
            cipher.decrypt(_flip_bit(nonce, 3), ciphertext)

    def test_wrong_associated_data_is_rejected(self) -> None:
        cipher = CredentialCipher("a" * 32)
        nonce, ciphertext = cipher.encrypt(b"payload", b"project/1")
        with pytest.raises(IntegrityError):
            cipher.decrypt(nonce, ciphertext, b"project/2")

    def test_different_secret_cannot_decrypt(self) -> None:
        nonce, ciphertext = CredentialCipher("a" * 32).encrypt(b"payload")
        with pytest.raises(IntegrityError):
            CredentialCipher("b" * 32).decrypt(nonce, ciphertext)

    def test_malformed_nonce_is_rejected(self) -> None:
        cipher = CredentialCipher("a" * 32)
        _, ciphertext = cipher.encrypt(b"payload")
        with pytest.raises(IntegrityError):
            cipher.decrypt(b"short", ciphertext)

    def test_empty_secret_rejected(self) -> None:
        with pytest.raises(ValueError):
            CredentialCipher("")
