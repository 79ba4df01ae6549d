"""Key Derivation Functions for KDBX databases.

This module provides the KDF implementations used by KDBX4:
- Argon2id: Modern memory-hard KDF (recommended)
- Argon2d: Argon2 variant used by KeePass by default
- AES-KDF: Legacy iterated AES transform (KDBX 3, still valid in KDBX4)

Key derivation is intentionally slow. KdfEngine runs it synchronously or on
a worker thread, and supports cancellation: a cancelled derivation raises
OperationCancelledError and its result is discarded.

Security considerations:
- Argon2 minimum parameters are enforced when writing (configurable)
- All derived keys are returned as SecureBytes for zeroization
"""

from __future__ import annotations

import base64
import hashlib
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Union

from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret_raw
from Cryptodome.Cipher import AES
from defusedxml import ElementTree as DefusedET

from kdbxcore.exceptions import (
    InvalidKeyFileError,
    MissingCredentialsError,
    OperationCancelledError,
    UnsupportedError,
)

from .crypto import constant_time_compare, secure_random_bytes
from .memory import SecureBytes, wipe

logger = logging.getLogger(__name__)


class KdfType(Enum):
    """Supported Key Derivation Functions in KDBX.

    The UUID values are fixed by the KDBX file format.
    """

    ARGON2D = bytes.fromhex("ef636ddf8c29444b91f7a9a403e30a0c")
    ARGON2ID = bytes.fromhex("9e298b1956db4773b23dfc3ec6f0a1e6")
    AES_KDF = bytes.fromhex("c9d9f39a628a4460bf740d08c18a4fea")

    @property
    def display_name(self) -> str:
        """Human-readable KDF name."""
        names = {
            KdfType.ARGON2D: "Argon2d",
            KdfType.ARGON2ID: "Argon2id",
            KdfType.AES_KDF: "AES-KDF",
        }
        return names[self]

    @classmethod
    def from_uuid(cls, uuid_bytes: bytes) -> KdfType:
        """Look up KDF by its KDBX UUID.

        Raises:
            UnsupportedError: If the UUID doesn't match any known KDF
        """
        for kdf in cls:
            if kdf.value == uuid_bytes:
                return kdf
        raise UnsupportedError(f"Unknown KDF UUID: {uuid_bytes.hex()}")


# Minimum Argon2 parameters for security
# Based on OWASP recommendations (as of 2024)
ARGON2_MIN_MEMORY_KIB = 16 * 1024  # 16 MiB minimum
ARGON2_MIN_ITERATIONS = 3
ARGON2_MIN_PARALLELISM = 1

ARGON2_VERSION_10 = 0x10
ARGON2_VERSION_13 = 0x13

# Rounds between cancellation checks in AES-KDF
_AES_KDF_CHUNK = 10_000


@dataclass(frozen=True, slots=True)
class Argon2Config:
    """Configuration for Argon2 key derivation.

    Attributes:
        memory_kib: Memory usage in KiB
        iterations: Number of iterations (time cost)
        parallelism: Degree of parallelism
        salt: Random salt (must be at least 8 bytes)
        variant: Argon2 variant (Argon2d or Argon2id)
        version: Argon2 version (0x10 or 0x13)
    """

    memory_kib: int
    iterations: int
    parallelism: int
    salt: bytes
    variant: KdfType = KdfType.ARGON2ID
    version: int = ARGON2_VERSION_13

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.variant not in (KdfType.ARGON2D, KdfType.ARGON2ID):
            raise ValueError(f"Invalid Argon2 variant: {self.variant}")
        if len(self.salt) < 8:
            raise ValueError("Argon2 salt must be at least 8 bytes")
        if self.version not in (ARGON2_VERSION_10, ARGON2_VERSION_13):
            raise ValueError(f"Invalid Argon2 version: {self.version:#x}")
        if self.iterations < 1 or self.parallelism < 1:
            raise ValueError("Argon2 iterations and parallelism must be positive")
        if self.memory_kib < 8 * self.parallelism:
            raise ValueError("Argon2 memory must be at least 8 KiB per lane")

    @property
    def kdf_type(self) -> KdfType:
        return self.variant

    def validate_security(self) -> None:
        """Check that parameters meet minimum security requirements.

        Raises:
            ValueError: If parameters are below security minimums
        """
        issues = []
        if self.memory_kib < ARGON2_MIN_MEMORY_KIB:
            issues.append(
                f"Memory {self.memory_kib} KiB is below minimum "
                f"{ARGON2_MIN_MEMORY_KIB} KiB"
            )
        if self.iterations < ARGON2_MIN_ITERATIONS:
            issues.append(
                f"Iterations {self.iterations} is below minimum "
                f"{ARGON2_MIN_ITERATIONS}"
            )
        if self.parallelism < ARGON2_MIN_PARALLELISM:
            issues.append(
                f"Parallelism {self.parallelism} is below minimum "
                f"{ARGON2_MIN_PARALLELISM}"
            )
        if issues:
            raise ValueError("Weak Argon2 parameters: " + "; ".join(issues))

    def with_new_salt(self) -> Argon2Config:
        """Return a copy with a fresh random salt."""
        return Argon2Config(
            memory_kib=self.memory_kib,
            iterations=self.iterations,
            parallelism=self.parallelism,
            salt=secure_random_bytes(len(self.salt)),
            variant=self.variant,
            version=self.version,
        )

    @classmethod
    def standard(
        cls, salt: bytes | None = None, variant: KdfType = KdfType.ARGON2ID
    ) -> Argon2Config:
        """Balanced preset: 64 MiB, 3 iterations, 4 lanes."""
        return cls(
            memory_kib=64 * 1024,
            iterations=3,
            parallelism=4,
            salt=salt if salt is not None else secure_random_bytes(32),
            variant=variant,
        )

    @classmethod
    def high_security(
        cls, salt: bytes | None = None, variant: KdfType = KdfType.ARGON2ID
    ) -> Argon2Config:
        """Strong preset: 256 MiB, 10 iterations, 4 lanes."""
        return cls(
            memory_kib=256 * 1024,
            iterations=10,
            parallelism=4,
            salt=salt if salt is not None else secure_random_bytes(32),
            variant=variant,
        )

    @classmethod
    def fast(
        cls, salt: bytes | None = None, variant: KdfType = KdfType.ARGON2ID
    ) -> Argon2Config:
        """Minimum-strength preset for tests and low-end devices."""
        return cls(
            memory_kib=ARGON2_MIN_MEMORY_KIB,
            iterations=ARGON2_MIN_ITERATIONS,
            parallelism=2,
            salt=salt if salt is not None else secure_random_bytes(32),
            variant=variant,
        )

    @classmethod
    def default(cls, salt: bytes | None = None) -> Argon2Config:
        """Create configuration with secure defaults (same as standard())."""
        return cls.standard(salt=salt)


@dataclass(frozen=True, slots=True)
class AesKdfConfig:
    """Configuration for legacy AES-KDF.

    Attributes:
        rounds: Number of AES encryption rounds
        salt: 32-byte salt (the AES key)
    """

    rounds: int
    salt: bytes

    def __post_init__(self) -> None:
        """Validate configuration."""
        if len(self.salt) != 32:
            raise ValueError("AES-KDF salt must be exactly 32 bytes")
        if self.rounds < 1:
            raise ValueError("AES-KDF rounds must be at least 1")

    @property
    def kdf_type(self) -> KdfType:
        return KdfType.AES_KDF

    def with_new_salt(self) -> AesKdfConfig:
        return AesKdfConfig(rounds=self.rounds, salt=secure_random_bytes(32))

    @classmethod
    def default(cls, salt: bytes | None = None) -> AesKdfConfig:
        """KeePass default: 60 000 rounds."""
        return cls(rounds=60_000, salt=salt if salt is not None else secure_random_bytes(32))


KdfParameters = Union[Argon2Config, AesKdfConfig]


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("Key derivation cancelled")


def derive_key_argon2(
    password: bytes,
    config: Argon2Config,
    *,
    enforce_minimums: bool = True,
) -> SecureBytes:
    """Derive a 32-byte key using Argon2.

    Args:
        password: Password bytes (usually composite key hash)
        config: Argon2 configuration parameters
        enforce_minimums: If True, reject weak parameters

    Returns:
        32-byte derived key wrapped in SecureBytes

    Raises:
        ValueError: If parameters are below minimums
    """
    if enforce_minimums:
        config.validate_security()

    argon2_type = (
        Argon2Type.ID if config.variant == KdfType.ARGON2ID else Argon2Type.D
    )

    derived = hash_secret_raw(
        secret=password,
        salt=config.salt,
        time_cost=config.iterations,
        memory_cost=config.memory_kib,
        parallelism=config.parallelism,
        hash_len=32,
        type=argon2_type,
        version=config.version,
    )
    return SecureBytes(derived)


def derive_key_aes_kdf(
    password: bytes,
    config: AesKdfConfig,
    *,
    cancel_event: threading.Event | None = None,
) -> SecureBytes:
    """Derive a 32-byte key using legacy AES-KDF.

    Both 16-byte halves of the input are encrypted ``rounds`` times with
    AES-256-ECB keyed by the salt; the result is hashed with SHA-256.

    Args:
        password: 32-byte password hash
        config: AES-KDF configuration
        cancel_event: Checked every few thousand rounds

    Returns:
        32-byte derived key wrapped in SecureBytes

    Raises:
        ValueError: If password is not 32 bytes
        OperationCancelledError: If cancel_event is set during derivation
    """
    if len(password) != 32:
        raise ValueError("AES-KDF requires 32-byte input")

    cipher = AES.new(config.salt, AES.MODE_ECB)

    # ECB over 32 bytes transforms both halves independently
    current = bytearray(password)
    scratch = bytearray(32)
    try:
        remaining = config.rounds
        while remaining:
            _check_cancelled(cancel_event)
            for _ in range(min(remaining, _AES_KDF_CHUNK)):
                cipher.encrypt(current, output=scratch)
                current, scratch = scratch, current
            remaining -= min(remaining, _AES_KDF_CHUNK)
        return SecureBytes(hashlib.sha256(current).digest())
    finally:
        wipe(current)
        wipe(scratch)


class KdfEngine:
    """Runs key derivation for any supported KDF family.

    Example:
        >>> engine = KdfEngine()
        >>> key = engine.derive(composite_key, Argon2Config.standard())

        >>> handle = engine.submit(composite_key, params)
        >>> handle.cancel()  # e.g. user closed the unlock dialog
    """

    def __init__(self, *, enforce_minimums: bool = False) -> None:
        """Initialize the engine.

        Args:
            enforce_minimums: Reject Argon2 parameters below the security
                minimums. Off for reading (accept what the file has).
        """
        self._enforce_minimums = enforce_minimums

    def derive(
        self,
        composite_key: bytes,
        params: KdfParameters,
        *,
        cancel_event: threading.Event | None = None,
    ) -> SecureBytes:
        """Derive the 32-byte transformed key.

        Deterministic: identical inputs always yield identical output.

        Raises:
            OperationCancelledError: If cancel_event is set before the
                result is returned
            UnsupportedError: For unknown parameter types
        """
        _check_cancelled(cancel_event)
        logger.debug("Deriving key with %s", type(params).__name__)
        if isinstance(params, Argon2Config):
            key = derive_key_argon2(
                composite_key, params, enforce_minimums=self._enforce_minimums
            )
        elif isinstance(params, AesKdfConfig):
            key = derive_key_aes_kdf(composite_key, params, cancel_event=cancel_event)
        else:
            raise UnsupportedError(f"Unsupported KDF parameters: {type(params).__name__}")

        if cancel_event is not None and cancel_event.is_set():
            key.zeroize()
            raise OperationCancelledError("Key derivation cancelled")
        return key

    def submit(
        self,
        composite_key: bytes,
        params: KdfParameters,
        executor: ThreadPoolExecutor | None = None,
    ) -> DerivationHandle:
        """Start a derivation on a worker thread.

        Args:
            composite_key: 32-byte composite key
            params: KDF parameters
            executor: Executor to use; a single-use one is created if None
        """
        cancel_event = threading.Event()
        own_executor = executor is None
        pool = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="kdf")
        future = pool.submit(
            self.derive, composite_key, params, cancel_event=cancel_event
        )
        if own_executor:
            pool.shutdown(wait=False)
        return DerivationHandle(future, cancel_event)


class DerivationHandle:
    """Handle for a key derivation running on a worker thread."""

    def __init__(self, future: Future[SecureBytes], cancel_event: threading.Event) -> None:
        self._future = future
        self._cancel_event = cancel_event

    def cancel(self) -> None:
        """Request cancellation; any result produced later is wiped."""
        self._cancel_event.set()
        self._future.cancel()
        self._future.add_done_callback(_discard_result)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> SecureBytes:
        """Wait for the derived key.

        Raises:
            OperationCancelledError: If the derivation was cancelled
            TimeoutError: If the timeout expires first
        """
        if self._cancel_event.is_set():
            raise OperationCancelledError("Key derivation cancelled")
        return self._future.result(timeout)


def _discard_result(future: Future[SecureBytes]) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().zeroize()


def _process_keyfile(keyfile_data: bytes) -> bytes:
    """Process keyfile data according to KeePass keyfile format.

    KeePass supports several keyfile formats:
    1. XML keyfile (v1.0 or v2.0) - key is base64/hex encoded in XML
    2. 32-byte raw binary - used directly
    3. 64-byte hex string - decoded from hex
    4. Any other size - SHA-256 hashed

    Raises:
        InvalidKeyFileError: If an XML v2.0 keyfile fails its hash check
    """
    try:
        tree = DefusedET.fromstring(keyfile_data)
    except (DefusedET.ParseError, ValueError):
        tree = None

    if tree is not None:
        version_elem = tree.find("Meta/Version")
        data_elem = tree.find("Key/Data")
        if version_elem is not None and data_elem is not None:
            version = version_elem.text or ""
            try:
                if version.startswith("1.0"):
                    return base64.b64decode(data_elem.text or "")
                if version.startswith("2.0"):
                    key_hex = "".join((data_elem.text or "").split())
                    key_bytes = bytes.fromhex(key_hex)
                    if "Hash" in data_elem.attrib:
                        expected_hash = bytes.fromhex(data_elem.attrib["Hash"])
                        computed_hash = hashlib.sha256(key_bytes).digest()[:4]
                        if not constant_time_compare(expected_hash, computed_hash):
                            raise InvalidKeyFileError("Keyfile hash verification failed")
                    return key_bytes
            except ValueError as e:
                raise InvalidKeyFileError("Malformed XML keyfile") from e

    if len(keyfile_data) == 32:
        return keyfile_data

    if len(keyfile_data) == 64:
        try:
            return bytes.fromhex(keyfile_data.decode("ascii"))
        except (ValueError, UnicodeDecodeError):
            pass  # Not hex

    return hashlib.sha256(keyfile_data).digest()


def derive_composite_key(
    password: str | None = None,
    keyfile_data: bytes | None = None,
) -> SecureBytes:
    """Create composite key from password and/or keyfile.

    The composite key is SHA-256(SHA-256(password) || keyfile_key).

    Raises:
        MissingCredentialsError: If neither password nor keyfile is provided
    """
    if password is None and keyfile_data is None:
        raise MissingCredentialsError()

    parts: list[SecureBytes] = []
    try:
        if password is not None:
            parts.append(SecureBytes(hashlib.sha256(password.encode("utf-8")).digest()))
        if keyfile_data is not None:
            parts.append(SecureBytes(_process_keyfile(keyfile_data)))

        hasher = hashlib.sha256()
        for part in parts:
            hasher.update(part.data)
        return SecureBytes(hasher.digest())
    finally:
        for part in parts:
            part.zeroize()
