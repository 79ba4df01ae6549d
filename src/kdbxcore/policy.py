"""Codec policy: tunables for opening and saving databases."""

from __future__ import annotations

from dataclasses import dataclass

# Maximum size for a single binary attachment (512 MiB)
# Prevents memory exhaustion from malicious KDBX files
MAX_BINARY_SIZE = 512 * 1024 * 1024

# Default block size for HMAC block stream (1 MiB)
DEFAULT_BLOCK_SIZE = 1024 * 1024


@dataclass(frozen=True, slots=True)
class CodecPolicy:
    """Behaviour switches for the KDBX codec.

    Attributes:
        allow_legacy: Open KDBX 3.1 files. Such databases must be saved with
            ``allow_upgrade=True`` and are then written as KDBX 4.
        enforce_kdf_minimums: Reject Argon2 parameters below the security
            minimums when saving. Reading never enforces them.
        warn_weak_kdf: Emit a UserWarning when an opened file uses weak
            Argon2 parameters.
        block_size: HMAC block size used when writing
        compression_level: GZip level used when writing
        max_binary_size: Largest accepted attachment when reading
    """

    allow_legacy: bool = False
    enforce_kdf_minimums: bool = True
    warn_weak_kdf: bool = True
    block_size: int = DEFAULT_BLOCK_SIZE
    compression_level: int = 6
    max_binary_size: int = MAX_BINARY_SIZE

    def __post_init__(self) -> None:
        if self.block_size < 1:
            raise ValueError("block_size must be positive")
        if not 0 <= self.compression_level <= 9:
            raise ValueError("compression_level must be between 0 and 9")


DEFAULT_POLICY = CodecPolicy()
