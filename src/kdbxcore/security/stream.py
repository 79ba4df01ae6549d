"""Inner stream cipher for protected values.

KDBX masks sensitive values (passwords, protected custom fields) inside the
already-encrypted XML with a second stream cipher. Each protected value is
XOR'd with the next ``len(value)`` bytes of one shared keystream, in the
order the values appear in the document.

The keystream is strictly sequential: decrypting values out of document
order, or skipping one, desynchronizes every value that follows. This class
only moves forward and exposes ``position`` so callers can record where each
value started. Random access is not supported.
"""

from __future__ import annotations

import hashlib
from enum import IntEnum
from typing import Protocol, TypeAlias

from Cryptodome.Cipher import ChaCha20, Salsa20

from kdbxcore.exceptions import HeaderError, UnsupportedError

# Fixed Salsa20 nonce defined by KeePass
SALSA20_NONCE = b"\xE8\x30\x09\x4B\x97\x20\x5D\x2A"

Buffer: TypeAlias = "bytes | bytearray | memoryview"


class InnerStreamId(IntEnum):
    """Inner random stream identifiers from the inner header."""

    NONE = 0
    ARC4_VARIANT = 1
    SALSA20 = 2
    CHACHA20 = 3


class _StreamCipher(Protocol):
    """Protocol for stream ciphers used for protected value encryption."""

    def encrypt(self, plaintext: Buffer, output: bytearray | None = None) -> bytes | None: ...


class ProtectedStreamCipher:
    """Sequential keystream over ChaCha20 or Salsa20.

    Masking and unmasking are the same XOR with the keystream, so one
    instance may mix ``encrypt()`` and ``decrypt()`` calls; every call
    consumes the next segment either way.

    Example:
        >>> cipher = ProtectedStreamCipher(InnerStreamId.CHACHA20, key)
        >>> first = cipher.decrypt(ciphertext_1)   # keystream [0, n1)
        >>> second = cipher.decrypt(ciphertext_2)  # keystream [n1, n1 + n2)
    """

    def __init__(self, stream_id: int, stream_key: bytes) -> None:
        """Initialize the stream cipher.

        Args:
            stream_id: Cipher type (2=Salsa20, 3=ChaCha20)
            stream_key: Key material from inner header (typically 64 bytes)

        Raises:
            UnsupportedError: For the legacy ArcFour variant
            HeaderError: For unknown stream ids or an empty key
        """
        if stream_id == InnerStreamId.ARC4_VARIANT:
            raise UnsupportedError("ArcFour inner stream cipher is not supported")
        if stream_id not in (InnerStreamId.SALSA20, InnerStreamId.CHACHA20):
            raise HeaderError(f"Unknown inner stream cipher ID: {stream_id}")
        if not stream_key:
            raise HeaderError("Missing inner stream key")
        self._stream_id = InnerStreamId(stream_id)
        self._cipher = self._create_cipher(stream_key)
        self._position = 0

    def _create_cipher(self, stream_key: bytes) -> _StreamCipher:
        if self._stream_id == InnerStreamId.CHACHA20:
            # ChaCha20: SHA-512 of key, first 32 bytes = key, bytes 32-44 = nonce
            key_hash = hashlib.sha512(stream_key).digest()
            return ChaCha20.new(key=key_hash[:32], nonce=key_hash[32:44])
        key = hashlib.sha256(stream_key).digest()
        return Salsa20.new(key=key, nonce=SALSA20_NONCE)

    @property
    def stream_id(self) -> InnerStreamId:
        return self._stream_id

    @property
    def position(self) -> int:
        """Number of keystream bytes consumed so far."""
        return self._position

    def decrypt(self, ciphertext: Buffer, output: bytearray | None = None) -> bytes | None:
        """Unmask the next protected value (XOR with stream).

        Args:
            ciphertext: Masked value
            output: Buffer of the same length to write the plaintext into;
                None is returned in that case

        Returns:
            The plaintext, unless ``output`` was given
        """
        return self._xor(ciphertext, output)

    def encrypt(self, plaintext: Buffer, output: bytearray | None = None) -> bytes | None:
        """Mask the next protected value (XOR with stream)."""
        return self._xor(plaintext, output)

    def _xor(self, data: Buffer, output: bytearray | None) -> bytes | None:
        self._position += len(data)
        # pycryptodome locks a cipher object to its first direction, so both
        # directions run through encrypt()
        return self._cipher.encrypt(data, output=output)
