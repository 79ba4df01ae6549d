"""Outer cipher and HMAC primitives for KDBX payloads.

Supported outer ciphers:
- AES-256-CBC (PKCS#7 padding applied by the payload layer)
- ChaCha20 (RFC 7539, 96-bit nonce)

Twofish-CBC is recognized by UUID but not implemented; pycryptodomex does
not ship it.
"""

from __future__ import annotations

import hashlib
import hmac
import os
from enum import Enum

from Cryptodome.Cipher import AES, ChaCha20

from kdbxcore.exceptions import HeaderError, UnsupportedError


class Cipher(Enum):
    """Outer encryption algorithms identified by their KDBX UUID."""

    AES256_CBC = bytes.fromhex("31c1f2e6bf714350be5805216afc5aff")
    CHACHA20 = bytes.fromhex("d6038a2b8b6f4cb5a524339a31dbb59a")
    TWOFISH256_CBC = bytes.fromhex("ad68f29f576f4bb9a36ad47af965346c")

    @property
    def display_name(self) -> str:
        """Human-readable cipher name."""
        names = {
            Cipher.AES256_CBC: "AES-256-CBC",
            Cipher.CHACHA20: "ChaCha20",
            Cipher.TWOFISH256_CBC: "Twofish-256-CBC",
        }
        return names[self]

    @property
    def iv_size(self) -> int:
        """IV / nonce length in bytes as stored in the header."""
        return 12 if self is Cipher.CHACHA20 else 16

    @property
    def key_size(self) -> int:
        return 32

    @property
    def is_block_cipher(self) -> bool:
        """Whether the payload must be PKCS#7 padded."""
        return self is not Cipher.CHACHA20

    @property
    def is_supported(self) -> bool:
        return self is not Cipher.TWOFISH256_CBC

    @classmethod
    def from_uuid(cls, uuid_bytes: bytes) -> Cipher:
        """Look up a cipher by its KDBX UUID.

        Raises:
            HeaderError: If the UUID doesn't match any known cipher
        """
        for cipher in cls:
            if cipher.value == uuid_bytes:
                return cipher
        raise HeaderError(f"Unknown cipher UUID: {uuid_bytes.hex()}")


class CipherContext:
    """Stateless-per-call encryptor/decryptor for one key and IV.

    A fresh cipher object is created for every call, so ``encrypt`` and
    ``decrypt`` each process one complete payload.
    """

    def __init__(self, cipher: Cipher, key: bytes, iv: bytes) -> None:
        if not cipher.is_supported:
            raise UnsupportedError(f"{cipher.display_name} is not supported")
        if len(key) != cipher.key_size:
            raise ValueError(f"{cipher.display_name} requires a {cipher.key_size}-byte key")
        if len(iv) != cipher.iv_size:
            raise HeaderError(
                f"{cipher.display_name} requires a {cipher.iv_size}-byte IV, got {len(iv)}"
            )
        self._cipher = cipher
        self._key = key
        self._iv = iv

    def _new(self):  # type: ignore[no-untyped-def]
        if self._cipher is Cipher.AES256_CBC:
            return AES.new(self._key, AES.MODE_CBC, iv=self._iv)
        return ChaCha20.new(key=self._key, nonce=self._iv)

    def encrypt(self, plaintext: bytes) -> bytes:
        if self._cipher.is_block_cipher and len(plaintext) % 16:
            raise ValueError("Block cipher input must be a multiple of 16 bytes")
        return self._new().encrypt(plaintext)

    def decrypt(self, ciphertext: bytes) -> bytes:
        if self._cipher.is_block_cipher and len(ciphertext) % 16:
            raise ValueError("Block cipher input must be a multiple of 16 bytes")
        return self._new().decrypt(ciphertext)


def compute_hmac_sha256(key: bytes, data: bytes) -> bytes:
    """Compute HMAC-SHA256 of ``data``."""
    return hmac.new(key, data, hashlib.sha256).digest()


def verify_hmac_sha256(key: bytes, data: bytes, expected: bytes) -> bool:
    """Constant-time check of an HMAC-SHA256 tag."""
    return constant_time_compare(compute_hmac_sha256(key, data), expected)


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """Compare two byte strings without leaking timing information."""
    return hmac.compare_digest(a, b)


def secure_random_bytes(n: int) -> bytes:
    """Return ``n`` bytes from the operating system CSPRNG."""
    return os.urandom(n)
