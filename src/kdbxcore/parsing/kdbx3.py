"""KDBX 3.1 payload decryption (read only).

KDBX3 differs from KDBX4 in how the payload is protected:
- The key is always derived with AES-KDF (transform seed and rounds live in
  the outer header)
- There is no header HMAC; the first 32 decrypted bytes must equal the
  header's stream start bytes
- The payload is a SHA-256 hashed block stream inside the ciphertext
- The inner stream settings are outer header fields, and attachments live
  in the XML ``Meta/Binaries`` pool instead of an inner header

Databases opened through this module are always written back as KDBX4.
"""

from __future__ import annotations

import hashlib
import logging
import struct
import threading

from kdbxcore.exceptions import HeaderError, IntegrityError
from kdbxcore.policy import DEFAULT_POLICY, CodecPolicy
from kdbxcore.security import CipherContext, KdfEngine, SecureBytes, constant_time_compare

from .compression import decompress
from .header import KdbxHeader, KdbxVersion
from .kdbx4 import DecryptedPayload, InnerHeader, remove_pkcs7_padding

logger = logging.getLogger(__name__)


class Kdbx3Reader:
    """Reader for KDBX 3.1 database files."""

    def __init__(self, data: bytes, policy: CodecPolicy = DEFAULT_POLICY) -> None:
        self._data = data
        self._policy = policy

    def decrypt(
        self,
        composite_key: SecureBytes | None = None,
        *,
        transformed_key: SecureBytes | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DecryptedPayload:
        """Decrypt the KDBX3 file.

        Raises:
            IntegrityError: Wrong credentials or a corrupted block
            PayloadError: Corrupt compressed stream
            HeaderError: Malformed header
            OperationCancelledError: If cancel_event was set
        """
        header, header_end = KdbxHeader.parse(self._data)
        if header.version != KdbxVersion.KDBX3:
            raise HeaderError(f"Expected KDBX3, got version {header.version}")

        if transformed_key is None:
            if composite_key is None:
                raise ValueError("composite_key or transformed_key is required")
            engine = KdfEngine(enforce_minimums=False)
            transformed_key = engine.derive(
                composite_key.data, header.kdf_config, cancel_event=cancel_event
            )

        cipher_key = SecureBytes(
            hashlib.sha256(header.master_seed + transformed_key.data).digest()
        )
        try:
            ctx = CipherContext(header.cipher, cipher_key.data, header.encryption_iv)
            ciphertext = self._data[header_end:]
            if header.cipher.is_block_cipher and len(ciphertext) % 16:
                raise IntegrityError("Truncated payload")
            decrypted = ctx.decrypt(ciphertext)
        finally:
            cipher_key.zeroize()

        # Without a header HMAC, the start bytes are the only key check.
        # Compare before touching padding so a wrong key is reported as such.
        start_bytes = header.stream_start_bytes or b""
        if len(decrypted) < len(start_bytes) or not constant_time_compare(
            decrypted[: len(start_bytes)], start_bytes
        ):
            raise IntegrityError("Wrong key or corrupted header")

        if header.cipher.is_block_cipher:
            decrypted = remove_pkcs7_padding(decrypted)

        payload = read_hashed_block_stream(decrypted[len(start_bytes) :])
        xml_data = decompress(payload, header.compression)
        logger.debug("Decrypted KDBX3 payload: %d bytes XML", len(xml_data))

        if header.inner_random_stream_id is None or header.protected_stream_key is None:
            raise HeaderError("Missing inner random stream settings")

        return DecryptedPayload(
            header=header,
            inner_header=InnerHeader(
                random_stream_id=header.inner_random_stream_id,
                random_stream_key=header.protected_stream_key,
            ),
            xml_data=xml_data,
            transformed_key=transformed_key,
        )


def read_hashed_block_stream(data: bytes) -> bytes:
    """Verify and concatenate a KDBX3 hashed block stream.

    Each block is ``index (u32) | sha256 (32) | size (u32) | data``. The
    stream ends with a zero-size block whose hash is all zeros.

    Raises:
        IntegrityError: On an out-of-sequence block, hash mismatch or
            truncation
    """
    blocks = []
    offset = 0
    expected_index = 0
    while True:
        if offset + 40 > len(data):
            raise IntegrityError("Truncated hashed block stream")
        index, block_hash, size = struct.unpack_from("<I32sI", data, offset)
        offset += 40
        if index != expected_index:
            raise IntegrityError(f"Hashed block {expected_index} out of sequence")
        if size == 0:
            if block_hash != b"\x00" * 32:
                raise IntegrityError("Invalid final hashed block")
            break
        if offset + size > len(data):
            raise IntegrityError("Truncated hashed block stream")
        block = data[offset : offset + size]
        offset += size
        if not constant_time_compare(hashlib.sha256(block).digest(), block_hash):
            raise IntegrityError(f"Hash verification failed for block {index}")
        blocks.append(block)
        expected_index += 1

    logger.debug("Verified %d hashed blocks", expected_index)
    return b"".join(blocks)


def build_hashed_block_stream(data: bytes, block_size: int = 1024 * 1024) -> bytes:
    """Build a KDBX3 hashed block stream.

    Only used to produce KDBX3 fixtures; kdbxcore never writes KDBX3 files.
    """
    if block_size < 1:
        raise ValueError("block_size must be positive")
    parts = []
    index = 0
    for offset in range(0, len(data), block_size):
        block = data[offset : offset + block_size]
        parts.append(struct.pack("<I32sI", index, hashlib.sha256(block).digest(), len(block)))
        parts.append(block)
        index += 1
    parts.append(struct.pack("<I32sI", index, b"\x00" * 32, 0))
    return b"".join(parts)


def read_kdbx3(
    data: bytes,
    composite_key: SecureBytes | None = None,
    *,
    transformed_key: SecureBytes | None = None,
    policy: CodecPolicy = DEFAULT_POLICY,
    cancel_event: threading.Event | None = None,
) -> DecryptedPayload:
    """Convenience function to read a KDBX3 file."""
    reader = Kdbx3Reader(data, policy)
    return reader.decrypt(
        composite_key, transformed_key=transformed_key, cancel_event=cancel_event
    )
