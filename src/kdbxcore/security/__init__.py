"""Security-critical components for kdbxcore.

This module contains all security-sensitive code including:
- Secure memory handling (SecureBytes, ProtectedValue)
- Cryptographic operations (outer ciphers, HMAC)
- Key derivation functions and the cancellable KdfEngine
- The inner stream cipher for protected values

All code in this module should be audited carefully.
"""

from .crypto import (
    Cipher,
    CipherContext,
    compute_hmac_sha256,
    constant_time_compare,
    secure_random_bytes,
    verify_hmac_sha256,
)
from .kdf import (
    ARGON2_MIN_ITERATIONS,
    ARGON2_MIN_MEMORY_KIB,
    ARGON2_MIN_PARALLELISM,
    AesKdfConfig,
    Argon2Config,
    DerivationHandle,
    KdfEngine,
    KdfParameters,
    KdfType,
    derive_composite_key,
    derive_key_aes_kdf,
    derive_key_argon2,
)
from .memory import ProtectedValue, SecureBytes
from .stream import InnerStreamId, ProtectedStreamCipher

__all__ = [
    # Memory
    "ProtectedValue",
    "SecureBytes",
    # Crypto
    "Cipher",
    "CipherContext",
    "compute_hmac_sha256",
    "constant_time_compare",
    "secure_random_bytes",
    "verify_hmac_sha256",
    # KDF
    "ARGON2_MIN_ITERATIONS",
    "ARGON2_MIN_MEMORY_KIB",
    "ARGON2_MIN_PARALLELISM",
    "AesKdfConfig",
    "Argon2Config",
    "DerivationHandle",
    "KdfEngine",
    "KdfParameters",
    "KdfType",
    "derive_composite_key",
    "derive_key_aes_kdf",
    "derive_key_argon2",
    # Inner stream
    "InnerStreamId",
    "ProtectedStreamCipher",
]
