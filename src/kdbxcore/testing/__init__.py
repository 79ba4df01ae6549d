"""Test utilities for kdbxcore.

WARNING: The helpers in this module are for TESTING ONLY. The fast KDF
configurations they produce offer no protection against brute force.

Provides:
- KDF configurations cheap enough to run hundreds of times per test run
- A KDBX 3.1 file builder (kdbxcore itself never writes KDBX3)
- Byte-level tampering helpers for integrity tests
"""

from __future__ import annotations

import hashlib
import os
import struct

from kdbxcore.parsing.compression import compress
from kdbxcore.parsing.header import (
    KDBX_MAGIC,
    CompressionType,
    HeaderFieldType,
    KdbxHeader,
    KdbxVersion,
)
from kdbxcore.parsing.kdbx3 import build_hashed_block_stream
from kdbxcore.parsing.kdbx4 import add_pkcs7_padding
from kdbxcore.security import (
    AesKdfConfig,
    Argon2Config,
    Cipher,
    CipherContext,
    InnerStreamId,
    KdfEngine,
    ProtectedStreamCipher,
)
from kdbxcore.security.kdf import derive_composite_key

# Rounds used by fast_kdf_config(); enough to exercise the code path
FAST_AES_KDF_ROUNDS = 16

# Fixed salt so derived keys are reproducible across tests
_FIXED_SALT = bytes(range(32))


def fast_kdf_config(deterministic: bool = False) -> AesKdfConfig:
    """AES-KDF parameters that derive in microseconds.

    Args:
        deterministic: Use a fixed salt instead of a random one
    """
    salt = _FIXED_SALT if deterministic else os.urandom(32)
    return AesKdfConfig(rounds=FAST_AES_KDF_ROUNDS, salt=salt)


def fast_argon2_config() -> Argon2Config:
    """Tiny Argon2 parameters (below the write minimums).

    Databases using these must be created with
    ``CodecPolicy(enforce_kdf_minimums=False)``.
    """
    return Argon2Config(memory_kib=8, iterations=1, parallelism=1, salt=os.urandom(32))


def legacy_stream_cipher(stream_key: bytes) -> ProtectedStreamCipher:
    """Salsa20 inner stream used to mask protected values in KDBX3 XML."""
    return ProtectedStreamCipher(InnerStreamId.SALSA20, stream_key)


def build_kdbx3(
    xml_data: bytes,
    password: str | None = None,
    keyfile_data: bytes | None = None,
    *,
    stream_key: bytes | None = None,
    rounds: int = FAST_AES_KDF_ROUNDS,
    compression: CompressionType = CompressionType.GZIP,
    block_size: int = 1024 * 1024,
    version_minor: int = 1,
) -> bytes:
    """Build a KDBX 3.1 file around an XML document.

    Protected values in ``xml_data`` must already be masked with
    ``legacy_stream_cipher(stream_key)``, in document order.

    Args:
        xml_data: KeePassFile XML document
        password: Database password
        keyfile_data: Keyfile contents
        stream_key: Inner stream key (32 bytes, random if None)
        rounds: AES-KDF rounds
        compression: Payload compression
        block_size: Hashed block size
        version_minor: Minor version written to the header

    Returns:
        Complete KDBX3 file contents
    """
    cipher = Cipher.AES256_CBC
    master_seed = os.urandom(32)
    transform_seed = os.urandom(32)
    encryption_iv = os.urandom(cipher.iv_size)
    stream_start_bytes = os.urandom(32)
    if stream_key is None:
        stream_key = os.urandom(32)

    parts = [KDBX_MAGIC, struct.pack("<HH", version_minor, KdbxVersion.KDBX3)]

    def add_field(field_id: int, value: bytes) -> None:
        parts.append(struct.pack("<BH", field_id, len(value)))
        parts.append(value)

    add_field(HeaderFieldType.CIPHER_ID, cipher.value)
    add_field(HeaderFieldType.COMPRESSION_FLAGS, struct.pack("<I", compression))
    add_field(HeaderFieldType.MASTER_SEED, master_seed)
    add_field(HeaderFieldType.TRANSFORM_SEED, transform_seed)
    add_field(HeaderFieldType.TRANSFORM_ROUNDS, struct.pack("<Q", rounds))
    add_field(HeaderFieldType.ENCRYPTION_IV, encryption_iv)
    add_field(HeaderFieldType.PROTECTED_STREAM_KEY, stream_key)
    add_field(HeaderFieldType.STREAM_START_BYTES, stream_start_bytes)
    add_field(HeaderFieldType.INNER_RANDOM_STREAM_ID, struct.pack("<I", InnerStreamId.SALSA20))
    add_field(HeaderFieldType.END, b"\r\n\r\n")
    header_bytes = b"".join(parts)

    composite_key = derive_composite_key(password, keyfile_data)
    with composite_key:
        transformed_key = KdfEngine().derive(
            composite_key.data, AesKdfConfig(rounds=rounds, salt=transform_seed)
        )
    with transformed_key:
        cipher_key = hashlib.sha256(master_seed + transformed_key.data).digest()

    payload = compress(xml_data, compression)
    plaintext = add_pkcs7_padding(
        stream_start_bytes + build_hashed_block_stream(payload, block_size)
    )
    ciphertext = CipherContext(cipher, cipher_key, encryption_iv).encrypt(plaintext)
    return header_bytes + ciphertext


def flip_byte(data: bytes, offset: int, mask: int = 0x01) -> bytes:
    """Return ``data`` with the byte at ``offset`` XORed with ``mask``."""
    if offset < 0:
        offset += len(data)
    tampered = bytearray(data)
    tampered[offset] ^= mask
    return bytes(tampered)


def payload_offset(data: bytes) -> int:
    """Offset of the first HMAC block in a KDBX4 file.

    The outer header is followed by its SHA-256 hash and HMAC (32 bytes each).
    """
    _, header_end = KdbxHeader.parse(data)
    return header_end + 64


__all__ = [
    "FAST_AES_KDF_ROUNDS",
    "build_kdbx3",
    "fast_argon2_config",
    "fast_kdf_config",
    "flip_byte",
    "legacy_stream_cipher",
    "payload_offset",
]
