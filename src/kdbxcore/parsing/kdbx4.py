"""KDBX4 payload encryption and decryption.

This module handles the cryptographic operations for KDBX4 files:
- Master key derivation from credentials
- Header integrity verification (SHA-256 + HMAC-SHA256)
- Block-based HMAC verification (HmacBlockStream)
- Payload decryption and encryption
- Inner header parsing

KDBX4 structure:
1. Outer header (plaintext)
2. SHA-256 hash of header
3. HMAC-SHA256 of header
4. Encrypted payload (HmacBlockStream format)
   - Inner header
   - XML database content

Stage order on read is strict: header hash, header HMAC, every block HMAC,
then decryption, decompression and inner header parsing. No byte of the
payload is decrypted or decompressed before all of it is authenticated.
"""

from __future__ import annotations

import hashlib
import logging
import struct
import threading
import warnings
from dataclasses import dataclass, field

from kdbxcore.exceptions import HeaderError, IntegrityError, PayloadError
from kdbxcore.policy import DEFAULT_POLICY, CodecPolicy
from kdbxcore.security import (
    Argon2Config,
    CipherContext,
    KdfEngine,
    SecureBytes,
    compute_hmac_sha256,
    constant_time_compare,
    verify_hmac_sha256,
)

from .compression import compress, decompress
from .header import InnerHeaderFieldType, KdbxHeader, KdbxVersion

logger = logging.getLogger(__name__)

# Block index used for the header HMAC key
HEADER_BLOCK_INDEX = 0xFFFFFFFFFFFFFFFF

# Inner header binary flag: memory protection requested
BINARY_FLAG_PROTECTED = 0x01


@dataclass(slots=True)
class InnerHeader:
    """KDBX4 inner header data.

    The inner header appears after decryption, before the XML payload.
    It contains the protected stream cipher settings and binary attachments.
    """

    # Random stream for protected values (e.g., passwords in XML)
    random_stream_id: int
    random_stream_key: bytes

    # Binary attachments in pool order: (protected flag, data)
    binaries: list[tuple[bool, bytes]] = field(default_factory=list)


@dataclass(slots=True)
class DecryptedPayload:
    """Result of decrypting a KDBX file.

    Attributes:
        header: Parsed outer header
        inner_header: Inner stream settings and binary pool
        xml_data: Decrypted, decompressed XML document
        transformed_key: KDF output for this header's parameters; lets the
            database save again without re-running the KDF
    """

    header: KdbxHeader
    inner_header: InnerHeader
    xml_data: bytes
    transformed_key: SecureBytes


def derive_payload_keys(transformed_key: bytes, master_seed: bytes) -> tuple[SecureBytes, SecureBytes]:
    """Derive HMAC key and cipher key from transformed key.

    KDBX4 key derivation:
    - cipher_key = SHA256(master_seed || transformed_key)
    - hmac_key = SHA512(master_seed || transformed_key || 0x01)

    Returns:
        Tuple of (hmac_key, cipher_key)
    """
    cipher_key = SecureBytes(hashlib.sha256(master_seed + transformed_key).digest())
    hmac_key = SecureBytes(hashlib.sha512(master_seed + transformed_key + b"\x01").digest())
    return hmac_key, cipher_key


def compute_block_hmac_key(hmac_key: bytes, block_index: int) -> bytes:
    """Compute HMAC key for a specific block.

    Each block uses a different key derived from the master HMAC key.
    key = SHA512(block_index_le64 || hmac_key)
    """
    return hashlib.sha512(struct.pack("<Q", block_index) + hmac_key).digest()


def compute_block_hmac(hmac_key: bytes, block_index: int, block_data: bytes) -> bytes:
    """HMAC of (block_index || length || data) under the block's key."""
    block_key = compute_block_hmac_key(hmac_key, block_index)
    return compute_hmac_sha256(
        block_key,
        struct.pack("<QI", block_index, len(block_data)) + block_data,
    )


def derive_transformed_key(
    header: KdbxHeader,
    composite_key: SecureBytes,
    *,
    policy: CodecPolicy = DEFAULT_POLICY,
    cancel_event: threading.Event | None = None,
) -> SecureBytes:
    """Run the KDF named in a header that was just read from a file."""
    config = header.kdf_config
    if isinstance(config, Argon2Config) and policy.warn_weak_kdf:
        try:
            config.validate_security()
        except ValueError as e:
            warnings.warn(
                f"Database has weak KDF parameters: {e}. "
                "Consider re-saving with stronger settings.",
                UserWarning,
                stacklevel=4,
            )
    # Don't enforce minimums when reading - accept what the file has
    engine = KdfEngine(enforce_minimums=False)
    return engine.derive(composite_key.data, config, cancel_event=cancel_event)


class Kdbx4Reader:
    """Reader for KDBX4 database files."""

    def __init__(self, data: bytes, policy: CodecPolicy = DEFAULT_POLICY) -> None:
        """Initialize reader with file data.

        Args:
            data: Complete KDBX4 file contents
            policy: Codec limits (maximum binary size)
        """
        self._data = data
        self._offset = 0
        self._policy = policy

    def decrypt(
        self,
        composite_key: SecureBytes | None = None,
        *,
        transformed_key: SecureBytes | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DecryptedPayload:
        """Decrypt the KDBX4 file.

        Args:
            composite_key: Composite key from the user's credentials
            transformed_key: Previously derived KDF output for this file's
                KDF parameters; skips the KDF when given
            cancel_event: Cancels key derivation when set

        Returns:
            DecryptedPayload with header, inner header, and XML

        Raises:
            IntegrityError: Wrong credentials, corruption or tampering
            PayloadError: Corrupt compressed stream or invalid padding
            HeaderError: Malformed outer or inner header
            OperationCancelledError: If cancel_event was set
        """
        header, header_end = KdbxHeader.parse(self._data)
        if header.version != KdbxVersion.KDBX4:
            raise HeaderError(f"Expected KDBX4, got version {header.version}")

        self._offset = header_end

        header_hash = self._read_bytes(32)
        header_hmac = self._read_bytes(32)

        computed_hash = hashlib.sha256(header.raw_header).digest()
        if not constant_time_compare(computed_hash, header_hash):
            raise IntegrityError("Header hash mismatch - file may be corrupted")

        derived = transformed_key is None
        if derived:
            if composite_key is None:
                raise ValueError("composite_key or transformed_key is required")
            transformed_key = derive_transformed_key(
                header, composite_key, policy=self._policy, cancel_event=cancel_event
            )
        try:
            return self._decrypt_payload(header, header_hmac, transformed_key)
        except BaseException:
            # A key derived here is only handed out with a successful result
            if derived:
                transformed_key.zeroize()
            raise

    def _decrypt_payload(
        self, header: KdbxHeader, header_hmac: bytes, transformed_key: SecureBytes
    ) -> DecryptedPayload:
        hmac_key, cipher_key = derive_payload_keys(transformed_key.data, header.master_seed)
        try:
            header_key = compute_block_hmac_key(hmac_key.data, HEADER_BLOCK_INDEX)
            if not verify_hmac_sha256(header_key, header.raw_header, header_hmac):
                raise IntegrityError("Wrong key or corrupted header")

            encrypted_payload = self._read_hmac_block_stream(hmac_key.data)

            ctx = CipherContext(header.cipher, cipher_key.data, header.encryption_iv)
            try:
                decrypted = ctx.decrypt(encrypted_payload)
            except ValueError as e:
                raise PayloadError("Decryption failed - invalid payload length") from e
        finally:
            hmac_key.zeroize()
            cipher_key.zeroize()

        if header.cipher.is_block_cipher:
            decrypted = remove_pkcs7_padding(decrypted)

        decrypted = decompress(decrypted, header.compression)

        inner_header, xml_start = self._parse_inner_header(decrypted)
        logger.debug(
            "Decrypted KDBX4 payload: %d bytes XML, %d binaries",
            len(decrypted) - xml_start,
            len(inner_header.binaries),
        )

        return DecryptedPayload(
            header=header,
            inner_header=inner_header,
            xml_data=decrypted[xml_start:],
            transformed_key=transformed_key,
        )

    def _read_bytes(self, n: int) -> bytes:
        """Read n bytes from current position."""
        if self._offset + n > len(self._data):
            raise IntegrityError(f"Unexpected end of file at offset {self._offset}")
        result = self._data[self._offset : self._offset + n]
        self._offset += n
        return result

    def _read_hmac_block_stream(self, hmac_key: bytes) -> bytes:
        """Read and verify HMAC block stream.

        KDBX4 uses a block-based format with per-block HMAC:
        - 32 bytes: HMAC of (block_index || length || data)
        - 4 bytes: block length (little-endian)
        - N bytes: block data

        Last block has length 0. Nothing is returned unless every block,
        including the terminator, verifies.
        """
        blocks = []
        block_index = 0

        while True:
            block_hmac = self._read_bytes(32)
            block_len = struct.unpack("<I", self._read_bytes(4))[0]
            block_data = self._read_bytes(block_len) if block_len else b""

            expected = compute_block_hmac(hmac_key, block_index, block_data)
            if not constant_time_compare(expected, block_hmac):
                raise IntegrityError(f"HMAC verification failed for block {block_index}")

            if block_len == 0:
                break
            blocks.append(block_data)
            block_index += 1

        logger.debug("Verified %d HMAC blocks", block_index)
        return b"".join(blocks)

    def _parse_inner_header(self, data: bytes) -> tuple[InnerHeader, int]:
        """Parse KDBX4 inner header.

        Returns inner header and offset where XML starts.
        """
        offset = 0
        random_stream_id: int | None = None
        random_stream_key: bytes | None = None
        binaries: list[tuple[bool, bytes]] = []

        while True:
            if offset + 5 > len(data):
                raise HeaderError("Truncated inner header")

            field_type = data[offset]
            field_len = struct.unpack_from("<I", data, offset + 1)[0]
            offset += 5

            if offset + field_len > len(data):
                raise HeaderError("Truncated inner header field")

            field_data = data[offset : offset + field_len]
            offset += field_len

            if field_type == InnerHeaderFieldType.END:
                break
            elif field_type == InnerHeaderFieldType.INNER_RANDOM_STREAM_ID:
                if field_len != 4:
                    raise HeaderError("Invalid inner random stream ID length")
                random_stream_id = struct.unpack("<I", field_data)[0]
            elif field_type == InnerHeaderFieldType.INNER_RANDOM_STREAM_KEY:
                random_stream_key = field_data
            elif field_type == InnerHeaderFieldType.BINARY:
                if field_len < 1:
                    raise HeaderError("Binary field missing flags byte")
                binary_data = field_data[1:]
                if len(binary_data) > self._policy.max_binary_size:
                    raise PayloadError(
                        f"Binary attachment too large: {len(binary_data)} bytes "
                        f"(max {self._policy.max_binary_size} bytes)"
                    )
                protected = bool(field_data[0] & BINARY_FLAG_PROTECTED)
                binaries.append((protected, binary_data))
            else:
                raise HeaderError(f"Unknown inner header field: {field_type}")

        if random_stream_id is None or random_stream_key is None:
            raise HeaderError("Inner header missing random stream settings")

        return (
            InnerHeader(
                random_stream_id=random_stream_id,
                random_stream_key=random_stream_key,
                binaries=binaries,
            ),
            offset,
        )


class Kdbx4Writer:
    """Writer for KDBX4 database files."""

    def __init__(self, policy: CodecPolicy = DEFAULT_POLICY) -> None:
        self._policy = policy

    def encrypt(
        self,
        header: KdbxHeader,
        inner_header: InnerHeader,
        xml_data: bytes,
        transformed_key: SecureBytes,
    ) -> bytes:
        """Encrypt database to KDBX4 format.

        Args:
            header: Outer header (fresh seed and IV)
            inner_header: Inner header with stream cipher and binaries
            xml_data: XML database content (protected values already masked)
            transformed_key: KDF output for ``header``'s KDF parameters

        Returns:
            Complete KDBX4 file as bytes
        """
        if header.version != KdbxVersion.KDBX4:
            raise ValueError("Only KDBX4 writing is supported")

        payload = self._build_inner_header(inner_header) + xml_data
        payload = compress(payload, header.compression, self._policy.compression_level)
        if header.cipher.is_block_cipher:
            payload = add_pkcs7_padding(payload)

        hmac_key, cipher_key = derive_payload_keys(transformed_key.data, header.master_seed)
        try:
            ctx = CipherContext(header.cipher, cipher_key.data, header.encryption_iv)
            encrypted_payload = ctx.encrypt(payload)

            hmac_blocks = self._build_hmac_block_stream(encrypted_payload, hmac_key.data)

            header_bytes = header.to_bytes()
            header_hash = hashlib.sha256(header_bytes).digest()
            header_hmac = compute_hmac_sha256(
                compute_block_hmac_key(hmac_key.data, HEADER_BLOCK_INDEX), header_bytes
            )
        finally:
            hmac_key.zeroize()
            cipher_key.zeroize()

        return header_bytes + header_hash + header_hmac + hmac_blocks

    def _build_inner_header(self, inner: InnerHeader) -> bytes:
        """Build inner header bytes."""
        parts = []

        def add_field(field_type: int, data: bytes) -> None:
            parts.append(struct.pack("<BI", field_type, len(data)))
            parts.append(data)

        add_field(
            InnerHeaderFieldType.INNER_RANDOM_STREAM_ID,
            struct.pack("<I", inner.random_stream_id),
        )
        add_field(InnerHeaderFieldType.INNER_RANDOM_STREAM_KEY, inner.random_stream_key)
        for protected, data in inner.binaries:
            flags = BINARY_FLAG_PROTECTED if protected else 0
            add_field(InnerHeaderFieldType.BINARY, bytes([flags]) + data)
        add_field(InnerHeaderFieldType.END, b"")

        return b"".join(parts)

    def _build_hmac_block_stream(self, data: bytes, hmac_key: bytes) -> bytes:
        """Build HMAC block stream from data."""
        parts = []
        block_size = self._policy.block_size
        block_index = 0

        for offset in range(0, len(data), block_size):
            block_data = data[offset : offset + block_size]
            parts.append(compute_block_hmac(hmac_key, block_index, block_data))
            parts.append(struct.pack("<I", len(block_data)))
            parts.append(block_data)
            block_index += 1

        # Final empty block
        parts.append(compute_block_hmac(hmac_key, block_index, b""))
        parts.append(struct.pack("<I", 0))

        logger.debug("Wrote %d HMAC blocks", block_index)
        return b"".join(parts)


def remove_pkcs7_padding(data: bytes) -> bytes:
    """Remove PKCS7 padding from decrypted data.

    Padding oracle attacks are not possible here because HMAC verification
    on the ciphertext occurs before decryption.
    """
    if not data:
        raise PayloadError("Decryption failed - invalid payload")
    padding_len = data[-1]
    if padding_len == 0 or padding_len > 16 or padding_len > len(data):
        raise PayloadError("Decryption failed - invalid payload")
    if data[-padding_len:] != bytes([padding_len]) * padding_len:
        raise PayloadError("Decryption failed - invalid payload")
    return data[:-padding_len]


def add_pkcs7_padding(data: bytes) -> bytes:
    """Add PKCS7 padding to make data a multiple of 16 bytes."""
    padding_len = 16 - (len(data) % 16)
    return data + bytes([padding_len]) * padding_len


def read_kdbx4(
    data: bytes,
    composite_key: SecureBytes | None = None,
    *,
    transformed_key: SecureBytes | None = None,
    policy: CodecPolicy = DEFAULT_POLICY,
    cancel_event: threading.Event | None = None,
) -> DecryptedPayload:
    """Convenience function to read a KDBX4 file."""
    reader = Kdbx4Reader(data, policy)
    return reader.decrypt(
        composite_key, transformed_key=transformed_key, cancel_event=cancel_event
    )


def write_kdbx4(
    header: KdbxHeader,
    inner_header: InnerHeader,
    xml_data: bytes,
    transformed_key: SecureBytes,
    *,
    policy: CodecPolicy = DEFAULT_POLICY,
) -> bytes:
    """Convenience function to write a KDBX4 file."""
    writer = Kdbx4Writer(policy)
    return writer.encrypt(
        header=header,
        inner_header=inner_header,
        xml_data=xml_data,
        transformed_key=transformed_key,
    )
