"""KDBX binary format parsing and building.

This module handles low-level binary format operations:
- Header and variant dictionary parsing and validation
- KDBX4 payload encryption/decryption (and KDBX3 decryption)
- XML payload mapping to the object model

All parsing uses Python's struct module for binary operations.
"""

from .compression import compress, decompress
from .header import (
    KDBX_MAGIC,
    CompressionType,
    HeaderFieldType,
    InnerHeaderFieldType,
    KdbxHeader,
    KdbxVersion,
)
from .kdbx3 import Kdbx3Reader, read_kdbx3
from .kdbx4 import (
    DecryptedPayload,
    InnerHeader,
    Kdbx4Reader,
    Kdbx4Writer,
    read_kdbx4,
    write_kdbx4,
)
from .variant import Variant, VariantMap, VariantType

__all__ = [
    # Header
    "KDBX_MAGIC",
    "CompressionType",
    "HeaderFieldType",
    "InnerHeaderFieldType",
    "KdbxHeader",
    "KdbxVersion",
    # Variant dictionary
    "Variant",
    "VariantMap",
    "VariantType",
    # Compression
    "compress",
    "decompress",
    # KDBX3
    "Kdbx3Reader",
    "read_kdbx3",
    # KDBX4
    "DecryptedPayload",
    "InnerHeader",
    "Kdbx4Reader",
    "Kdbx4Writer",
    "read_kdbx4",
    "write_kdbx4",
]
