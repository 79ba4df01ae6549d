"""Payload compression.

KDBX compresses the inner payload (inner header + XML) with GZip before
encryption. Decompression must only ever run on authenticated bytes: the
readers call ``decompress`` after every HMAC block (or hashed block) has
been verified.
"""

from __future__ import annotations

import gzip
import zlib

from kdbxcore.exceptions import PayloadError

from .header import CompressionType

DEFAULT_COMPRESSION_LEVEL = 6


def decompress(data: bytes, compression: CompressionType) -> bytes:
    """Undo payload compression.

    Raises:
        PayloadError: If the compressed stream is corrupt or truncated
    """
    if compression == CompressionType.NONE:
        return data
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise PayloadError("Corrupt compressed payload") from e


def compress(
    data: bytes,
    compression: CompressionType,
    level: int = DEFAULT_COMPRESSION_LEVEL,
) -> bytes:
    """Apply payload compression."""
    if compression == CompressionType.NONE:
        return data
    return gzip.compress(data, compresslevel=level, mtime=0)
