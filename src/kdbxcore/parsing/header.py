"""KDBX outer header parsing and building.

Outer header layout:
    signature 1 (u32 LE)  0x9AA2D903
    signature 2 (u32 LE)  0xB54BFB67
    minor version (u16 LE), major version (u16 LE)
    repeated TLV:
        id     (u8)
        length (u32 LE in KDBX4, u16 LE in KDBX3)
        value
    terminated by id 0

Unknown field ids are kept verbatim and written back in their original
order so that files produced by newer tools survive a round trip.
"""

from __future__ import annotations

import dataclasses
import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum

from kdbxcore.exceptions import (
    FormatError,
    HeaderError,
    UnsupportedError,
    UnsupportedVersionError,
)
from kdbxcore.security import Cipher, secure_random_bytes
from kdbxcore.security.kdf import AesKdfConfig, KdfParameters

from .variant import VariantMap, kdf_parameters_from_variant_map, kdf_parameters_to_variant_map

logger = logging.getLogger(__name__)

KDBX_SIGNATURE_1 = 0x9AA2D903
KDBX_SIGNATURE_2 = 0xB54BFB67
KEEPASS1_SIGNATURE_2 = 0xB54BFB65
KDBX_PRERELEASE_SIGNATURE_2 = 0xB54BFB66

KDBX_MAGIC = struct.pack("<II", KDBX_SIGNATURE_1, KDBX_SIGNATURE_2)

# Highest major version this codec understands
MAX_SUPPORTED_MAJOR = 4

# Value KeePass writes for the END header field
HEADER_END_VALUE = b"\r\n\r\n"


class KdbxVersion(IntEnum):
    """KDBX major format versions."""

    KDBX3 = 3
    KDBX4 = 4


class HeaderFieldType(IntEnum):
    """Outer header field ids."""

    END = 0
    COMMENT = 1
    CIPHER_ID = 2
    COMPRESSION_FLAGS = 3
    MASTER_SEED = 4
    TRANSFORM_SEED = 5
    TRANSFORM_ROUNDS = 6
    ENCRYPTION_IV = 7
    PROTECTED_STREAM_KEY = 8
    STREAM_START_BYTES = 9
    INNER_RANDOM_STREAM_ID = 10
    KDF_PARAMETERS = 11
    PUBLIC_CUSTOM_DATA = 12


# Fields that only exist in KDBX3 headers
_KDBX3_ONLY_FIELDS = frozenset({
    HeaderFieldType.TRANSFORM_SEED,
    HeaderFieldType.TRANSFORM_ROUNDS,
    HeaderFieldType.PROTECTED_STREAM_KEY,
    HeaderFieldType.STREAM_START_BYTES,
    HeaderFieldType.INNER_RANDOM_STREAM_ID,
})


class InnerHeaderFieldType(IntEnum):
    """KDBX4 inner header field ids."""

    END = 0
    INNER_RANDOM_STREAM_ID = 1
    INNER_RANDOM_STREAM_KEY = 2
    BINARY = 3


class CompressionType(IntEnum):
    """Payload compression algorithms."""

    NONE = 0
    GZIP = 1


@dataclass(frozen=True, slots=True)
class KdbxHeader:
    """Parsed KDBX outer header.

    Instances are immutable; ``regenerate()`` returns the copy used for the
    next save (fresh master seed and IV).

    Attributes:
        version: Major format version
        version_minor: Minor format version
        cipher: Outer cipher
        compression: Payload compression
        master_seed: 32-byte random seed mixed into the database key
        encryption_iv: Outer cipher IV / nonce
        kdf_parameters: KDF variant dictionary (KDBX4)
        public_custom_data: Optional plaintext variant dictionary (KDBX4)
        unknown_fields: Unrecognized TLV records, in file order
        transform_seed: AES-KDF seed (KDBX3)
        transform_rounds: AES-KDF rounds (KDBX3)
        protected_stream_key: Inner stream key (KDBX3)
        stream_start_bytes: Known plaintext prefix (KDBX3)
        inner_random_stream_id: Inner stream cipher id (KDBX3)
        raw_header: Exact header bytes as read or written
    """

    version: KdbxVersion
    cipher: Cipher
    compression: CompressionType
    master_seed: bytes
    encryption_iv: bytes
    kdf_parameters: VariantMap | None = None
    public_custom_data: VariantMap | None = None
    version_minor: int = 1
    unknown_fields: tuple[tuple[int, bytes], ...] = ()
    transform_seed: bytes | None = None
    transform_rounds: int | None = None
    protected_stream_key: bytes | None = None
    stream_start_bytes: bytes | None = None
    inner_random_stream_id: int | None = None
    raw_header: bytes = field(default=b"", repr=False, compare=False)

    @property
    def kdf_config(self) -> KdfParameters:
        """KDF parameters as a typed configuration.

        Raises:
            UnsupportedError: For unknown KDFs
            HeaderError: For malformed parameters
        """
        if self.version == KdbxVersion.KDBX3:
            if self.transform_seed is None or self.transform_rounds is None:
                raise HeaderError("Missing AES-KDF transform parameters")
            try:
                return AesKdfConfig(rounds=self.transform_rounds, salt=self.transform_seed)
            except ValueError as e:
                raise HeaderError(f"Invalid AES-KDF parameters: {e}") from e
        if self.kdf_parameters is None:
            raise HeaderError("Missing KDF parameters")
        return kdf_parameters_from_variant_map(self.kdf_parameters)

    @classmethod
    def create(
        cls,
        cipher: Cipher,
        kdf_config: KdfParameters,
        compression: CompressionType = CompressionType.GZIP,
        public_custom_data: VariantMap | None = None,
    ) -> KdbxHeader:
        """Create a fresh KDBX 4.1 header with random seed and IV."""
        return cls(
            version=KdbxVersion.KDBX4,
            version_minor=1,
            cipher=cipher,
            compression=compression,
            master_seed=secure_random_bytes(32),
            encryption_iv=secure_random_bytes(cipher.iv_size),
            kdf_parameters=kdf_parameters_to_variant_map(kdf_config),
            public_custom_data=public_custom_data,
        )

    def regenerate(
        self,
        cipher: Cipher | None = None,
        kdf_config: KdfParameters | None = None,
    ) -> KdbxHeader:
        """Return the KDBX4 header for the next save.

        The master seed and IV are always fresh. KDF parameters are kept
        unless a new configuration is given. KDBX3 headers are upgraded.
        """
        cipher = cipher or self.cipher
        if kdf_config is not None:
            kdf_parameters = kdf_parameters_to_variant_map(kdf_config)
        elif self.version == KdbxVersion.KDBX3:
            kdf_parameters = kdf_parameters_to_variant_map(self.kdf_config)
        else:
            kdf_parameters = self.kdf_parameters

        upgrading = self.version == KdbxVersion.KDBX3
        return dataclasses.replace(
            self,
            version=KdbxVersion.KDBX4,
            version_minor=1 if upgrading else self.version_minor,
            cipher=cipher,
            master_seed=secure_random_bytes(32),
            encryption_iv=secure_random_bytes(cipher.iv_size),
            kdf_parameters=kdf_parameters,
            unknown_fields=() if upgrading else self.unknown_fields,
            transform_seed=None,
            transform_rounds=None,
            protected_stream_key=None,
            stream_start_bytes=None,
            inner_random_stream_id=None,
            raw_header=b"",
        )

    # --- Parsing ---

    @classmethod
    def parse(cls, data: bytes) -> tuple[KdbxHeader, int]:
        """Parse the outer header at the start of ``data``.

        Returns:
            Tuple of (header, offset of the first byte after the header)

        Raises:
            FormatError: Unrecognized signature or too new a version
            UnsupportedError: KeePass 1.x or pre-release KDBX signatures
            HeaderError: Truncated or malformed fields
        """
        if len(data) < 12:
            raise FormatError("File too short to be a KDBX database")

        sig1, sig2, minor, major = struct.unpack_from("<IIHH", data, 0)
        if sig1 != KDBX_SIGNATURE_1:
            raise FormatError("Invalid KDBX signature")
        if sig2 in (KEEPASS1_SIGNATURE_2, KDBX_PRERELEASE_SIGNATURE_2):
            raise UnsupportedError("KeePass 1.x and pre-release KDBX files are not supported")
        if sig2 != KDBX_SIGNATURE_2:
            raise FormatError("Invalid KDBX signature")
        if major > MAX_SUPPORTED_MAJOR:
            raise UnsupportedVersionError(major, minor)
        if major < KdbxVersion.KDBX3:
            raise UnsupportedError(f"KDBX {major}.{minor} files are not supported")

        version = KdbxVersion(major)
        length_format = "<I" if version == KdbxVersion.KDBX4 else "<H"
        length_size = struct.calcsize(length_format)

        offset = 12
        fields: dict[int, bytes] = {}
        unknown: list[tuple[int, bytes]] = []
        while True:
            if offset + 1 + length_size > len(data):
                raise HeaderError("Truncated header field")
            field_id = data[offset]
            field_len = struct.unpack_from(length_format, data, offset + 1)[0]
            offset += 1 + length_size
            if offset + field_len > len(data):
                raise HeaderError(f"Truncated value for header field {field_id}")
            value = data[offset : offset + field_len]
            offset += field_len

            if field_id == HeaderFieldType.END:
                break
            if not cls._is_known_field(field_id, version):
                unknown.append((field_id, value))
                continue
            if field_id in fields:
                raise HeaderError(f"Duplicate header field {field_id}")
            fields[field_id] = value

        header = cls._from_fields(version, minor, fields, tuple(unknown), data[:offset])
        logger.debug(
            "Parsed KDBX %d.%d header: cipher=%s compression=%s",
            major,
            minor,
            header.cipher.display_name,
            header.compression.name,
        )
        return header, offset

    @staticmethod
    def _is_known_field(field_id: int, version: KdbxVersion) -> bool:
        if field_id == HeaderFieldType.COMMENT:
            return False
        try:
            ftype = HeaderFieldType(field_id)
        except ValueError:
            return False
        if version == KdbxVersion.KDBX4:
            return ftype not in _KDBX3_ONLY_FIELDS
        return ftype not in (HeaderFieldType.KDF_PARAMETERS, HeaderFieldType.PUBLIC_CUSTOM_DATA)

    @classmethod
    def _from_fields(
        cls,
        version: KdbxVersion,
        minor: int,
        fields: dict[int, bytes],
        unknown: tuple[tuple[int, bytes], ...],
        raw_header: bytes,
    ) -> KdbxHeader:
        def require(field_type: HeaderFieldType) -> bytes:
            if field_type not in fields:
                raise HeaderError(f"Missing mandatory header field: {field_type.name}")
            return fields[field_type]

        cipher = Cipher.from_uuid(require(HeaderFieldType.CIPHER_ID))
        if not cipher.is_supported:
            raise UnsupportedError(f"{cipher.display_name} is not supported")

        compression_raw = require(HeaderFieldType.COMPRESSION_FLAGS)
        if len(compression_raw) != 4:
            raise HeaderError("Invalid compression flags length")
        try:
            compression = CompressionType(struct.unpack("<I", compression_raw)[0])
        except ValueError:
            raise HeaderError("Unknown compression algorithm") from None

        master_seed = require(HeaderFieldType.MASTER_SEED)
        if len(master_seed) != 32:
            raise HeaderError("Master seed must be 32 bytes")

        encryption_iv = require(HeaderFieldType.ENCRYPTION_IV)
        if len(encryption_iv) != cipher.iv_size:
            raise HeaderError(
                f"{cipher.display_name} requires a {cipher.iv_size}-byte IV, "
                f"got {len(encryption_iv)}"
            )

        if version == KdbxVersion.KDBX4:
            kdf_parameters = VariantMap.parse(require(HeaderFieldType.KDF_PARAMETERS))
            # Fail early on unknown or malformed KDF parameters
            kdf_parameters_from_variant_map(kdf_parameters)
            public_custom_data = None
            if HeaderFieldType.PUBLIC_CUSTOM_DATA in fields:
                public_custom_data = VariantMap.parse(
                    fields[HeaderFieldType.PUBLIC_CUSTOM_DATA]
                )
            return cls(
                version=version,
                version_minor=minor,
                cipher=cipher,
                compression=compression,
                master_seed=master_seed,
                encryption_iv=encryption_iv,
                kdf_parameters=kdf_parameters,
                public_custom_data=public_custom_data,
                unknown_fields=unknown,
                raw_header=raw_header,
            )

        rounds_raw = require(HeaderFieldType.TRANSFORM_ROUNDS)
        stream_id_raw = require(HeaderFieldType.INNER_RANDOM_STREAM_ID)
        if len(rounds_raw) != 8 or len(stream_id_raw) != 4:
            raise HeaderError("Invalid KDBX3 header field length")
        return cls(
            version=version,
            version_minor=minor,
            cipher=cipher,
            compression=compression,
            master_seed=master_seed,
            encryption_iv=encryption_iv,
            unknown_fields=unknown,
            transform_seed=require(HeaderFieldType.TRANSFORM_SEED),
            transform_rounds=struct.unpack("<Q", rounds_raw)[0],
            protected_stream_key=require(HeaderFieldType.PROTECTED_STREAM_KEY),
            stream_start_bytes=require(HeaderFieldType.STREAM_START_BYTES),
            inner_random_stream_id=struct.unpack("<I", stream_id_raw)[0],
            raw_header=raw_header,
        )

    # --- Building ---

    def to_bytes(self) -> bytes:
        """Serialize as a KDBX4 outer header.

        Raises:
            ValueError: If this is a KDBX3 header (call regenerate() first)
        """
        if self.version != KdbxVersion.KDBX4:
            raise ValueError("Only KDBX4 headers can be written")
        if self.kdf_parameters is None:
            raise ValueError("Header has no KDF parameters")

        parts = [KDBX_MAGIC, struct.pack("<HH", self.version_minor, self.version)]

        def add_field(field_id: int, value: bytes) -> None:
            parts.append(struct.pack("<BI", field_id, len(value)))
            parts.append(value)

        add_field(HeaderFieldType.CIPHER_ID, self.cipher.value)
        add_field(HeaderFieldType.COMPRESSION_FLAGS, struct.pack("<I", self.compression))
        add_field(HeaderFieldType.MASTER_SEED, self.master_seed)
        add_field(HeaderFieldType.ENCRYPTION_IV, self.encryption_iv)
        add_field(HeaderFieldType.KDF_PARAMETERS, self.kdf_parameters.to_bytes())
        if self.public_custom_data is not None:
            add_field(HeaderFieldType.PUBLIC_CUSTOM_DATA, self.public_custom_data.to_bytes())
        for field_id, value in self.unknown_fields:
            add_field(field_id, value)
        add_field(HeaderFieldType.END, HEADER_END_VALUE)

        return b"".join(parts)
