"""KDBX VariantDictionary (typed key/value map).

The variant dictionary is the self-describing block that carries KDF
parameters and public custom data in the KDBX4 outer header:

    version (u16 LE, 0x0100)
    repeated:
        type  (u8)       0 terminates the map
        key   (i32 LE length + UTF-8)
        value (i32 LE length + payload)

VariantMap keeps entries in wire order together with their wire type so
unknown keys round-trip byte for byte. KDF parameters are then read out of
it into the closed union ``Argon2Config | AesKdfConfig``.
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from kdbxcore.exceptions import HeaderError, UnsupportedError
from kdbxcore.security.kdf import AesKdfConfig, Argon2Config, KdfParameters, KdfType

VARIANT_MAP_VERSION = 0x0100
VARIANT_MAP_CRITICAL_MASK = 0xFF00

VariantValue = Union[int, bool, str, bytes]


class VariantType(IntEnum):
    """Wire types of variant dictionary values."""

    END = 0x00
    UINT32 = 0x04
    UINT64 = 0x05
    BOOL = 0x08
    INT32 = 0x0C
    INT64 = 0x0D
    STRING = 0x18
    BYTES = 0x42


_INT_FORMATS = {
    VariantType.UINT32: "<I",
    VariantType.UINT64: "<Q",
    VariantType.INT32: "<i",
    VariantType.INT64: "<q",
}


@dataclass(frozen=True, slots=True)
class Variant:
    """A typed variant dictionary value."""

    type: VariantType
    value: VariantValue

    def encode(self) -> bytes:
        if self.type in _INT_FORMATS:
            return struct.pack(_INT_FORMATS[self.type], self.value)
        if self.type == VariantType.BOOL:
            return b"\x01" if self.value else b"\x00"
        if self.type == VariantType.STRING:
            return str(self.value).encode("utf-8")
        return bytes(self.value)  # type: ignore[arg-type]

    @classmethod
    def decode(cls, type_id: int, data: bytes) -> Variant:
        try:
            vtype = VariantType(type_id)
        except ValueError:
            raise HeaderError(f"Unknown variant type: {type_id:#x}") from None
        try:
            if vtype in _INT_FORMATS:
                return cls(vtype, struct.unpack(_INT_FORMATS[vtype], data)[0])
        except struct.error as e:
            raise HeaderError(f"Invalid {vtype.name} variant length: {len(data)}") from e
        if vtype == VariantType.BOOL:
            if len(data) != 1:
                raise HeaderError(f"Invalid BOOL variant length: {len(data)}")
            return cls(vtype, data != b"\x00")
        if vtype == VariantType.STRING:
            try:
                return cls(vtype, data.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise HeaderError("Invalid UTF-8 in variant string") from e
        return cls(vtype, bytes(data))


class VariantMap:
    """Ordered typed dictionary with KDBX wire encoding."""

    def __init__(self, version: int = VARIANT_MAP_VERSION) -> None:
        self.version = version
        self._items: dict[str, Variant] = {}

    # --- Typed setters ---

    def set(self, key: str, vtype: VariantType, value: VariantValue) -> None:
        if vtype == VariantType.END:
            raise ValueError("END is not a value type")
        self._items[key] = Variant(vtype, value)

    def set_uint32(self, key: str, value: int) -> None:
        self.set(key, VariantType.UINT32, value)

    def set_uint64(self, key: str, value: int) -> None:
        self.set(key, VariantType.UINT64, value)

    def set_bool(self, key: str, value: bool) -> None:
        self.set(key, VariantType.BOOL, value)

    def set_int32(self, key: str, value: int) -> None:
        self.set(key, VariantType.INT32, value)

    def set_int64(self, key: str, value: int) -> None:
        self.set(key, VariantType.INT64, value)

    def set_string(self, key: str, value: str) -> None:
        self.set(key, VariantType.STRING, value)

    def set_bytes(self, key: str, value: bytes) -> None:
        self.set(key, VariantType.BYTES, value)

    # --- Access ---

    def get(self, key: str, default: VariantValue | None = None) -> VariantValue | None:
        item = self._items.get(key)
        return item.value if item is not None else default

    def get_variant(self, key: str) -> Variant | None:
        return self._items.get(key)

    def require(self, key: str, *types: VariantType) -> VariantValue:
        """Return a value that must exist with one of ``types``.

        Raises:
            HeaderError: If the key is missing or has the wrong type
        """
        item = self._items.get(key)
        if item is None:
            raise HeaderError(f"Missing variant dictionary key: {key!r}")
        if types and item.type not in types:
            raise HeaderError(f"Variant {key!r} has unexpected type {item.type.name}")
        return item.value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def items(self) -> Iterator[tuple[str, Variant]]:
        yield from self._items.items()

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VariantMap):
            return NotImplemented
        return self.version == other.version and list(self._items.items()) == list(
            other._items.items()
        )

    def __repr__(self) -> str:
        return f"VariantMap({list(self._items)})"

    # --- Wire format ---

    @classmethod
    def parse(cls, data: bytes) -> VariantMap:
        """Parse a serialized variant dictionary.

        Raises:
            HeaderError: On truncation, unknown types or an unsupported
                major version
        """
        if len(data) < 2:
            raise HeaderError("Truncated variant dictionary")
        version = struct.unpack_from("<H", data, 0)[0]
        if version & VARIANT_MAP_CRITICAL_MASK > VARIANT_MAP_VERSION & VARIANT_MAP_CRITICAL_MASK:
            raise HeaderError(f"Unsupported variant dictionary version: {version:#06x}")

        result = cls(version=version)
        offset = 2
        while True:
            if offset >= len(data):
                raise HeaderError("Variant dictionary missing terminator")
            type_id = data[offset]
            offset += 1
            if type_id == VariantType.END:
                break

            key_bytes, offset = _read_sized(data, offset, "key")
            value_bytes, offset = _read_sized(data, offset, "value")
            try:
                key = key_bytes.decode("utf-8")
            except UnicodeDecodeError as e:
                raise HeaderError("Invalid UTF-8 in variant key") from e
            result._items[key] = Variant.decode(type_id, value_bytes)

        return result

    def to_bytes(self) -> bytes:
        parts = [struct.pack("<H", self.version)]
        for key, item in self._items.items():
            key_bytes = key.encode("utf-8")
            value_bytes = item.encode()
            parts.append(struct.pack("<Bi", item.type, len(key_bytes)))
            parts.append(key_bytes)
            parts.append(struct.pack("<i", len(value_bytes)))
            parts.append(value_bytes)
        parts.append(bytes([VariantType.END]))
        return b"".join(parts)


def _read_sized(data: bytes, offset: int, what: str) -> tuple[bytes, int]:
    if offset + 4 > len(data):
        raise HeaderError(f"Truncated variant dictionary {what} length")
    size = struct.unpack_from("<i", data, offset)[0]
    offset += 4
    if size < 0 or offset + size > len(data):
        raise HeaderError(f"Truncated variant dictionary {what}")
    return data[offset : offset + size], offset + size


# --- KDF parameters ---

KDF_UUID_KEY = "$UUID"
ARGON2_SALT = "S"
ARGON2_PARALLELISM = "P"
ARGON2_MEMORY = "M"
ARGON2_ITERATIONS = "I"
ARGON2_VERSION = "V"
ARGON2_SECRET_KEY = "K"
ARGON2_ASSOC_DATA = "A"
AES_KDF_ROUNDS = "R"
AES_KDF_SEED = "S"

_UNSIGNED = (VariantType.UINT32, VariantType.UINT64)


def kdf_parameters_from_variant_map(params: VariantMap) -> KdfParameters:
    """Read the KDF parameter union out of a header variant dictionary.

    Raises:
        UnsupportedError: For unknown KDF UUIDs or Argon2 secret/associated
            data parameters
        HeaderError: For missing or malformed parameters
    """
    uuid_bytes = params.require(KDF_UUID_KEY, VariantType.BYTES)
    kdf_type = KdfType.from_uuid(uuid_bytes)  # type: ignore[arg-type]

    try:
        if kdf_type is KdfType.AES_KDF:
            return AesKdfConfig(
                rounds=params.require(AES_KDF_ROUNDS, *_UNSIGNED),  # type: ignore[arg-type]
                salt=params.require(AES_KDF_SEED, VariantType.BYTES),  # type: ignore[arg-type]
            )

        if params.get(ARGON2_SECRET_KEY) or params.get(ARGON2_ASSOC_DATA):
            raise UnsupportedError("Argon2 secret key / associated data are not supported")

        memory_bytes = params.require(ARGON2_MEMORY, *_UNSIGNED)
        return Argon2Config(
            memory_kib=memory_bytes // 1024,  # type: ignore[operator]
            iterations=params.require(ARGON2_ITERATIONS, *_UNSIGNED),  # type: ignore[arg-type]
            parallelism=params.require(ARGON2_PARALLELISM, *_UNSIGNED),  # type: ignore[arg-type]
            salt=params.require(ARGON2_SALT, VariantType.BYTES),  # type: ignore[arg-type]
            variant=kdf_type,
            version=params.require(ARGON2_VERSION, *_UNSIGNED),  # type: ignore[arg-type]
        )
    except ValueError as e:
        raise HeaderError(f"Invalid {kdf_type.display_name} parameters: {e}") from e


def kdf_parameters_to_variant_map(config: KdfParameters) -> VariantMap:
    """Serialize a KDF configuration in the layout KeePass writes."""
    params = VariantMap()
    params.set_bytes(KDF_UUID_KEY, config.kdf_type.value)
    if isinstance(config, AesKdfConfig):
        params.set_uint64(AES_KDF_ROUNDS, config.rounds)
        params.set_bytes(AES_KDF_SEED, config.salt)
        return params

    params.set_bytes(ARGON2_SALT, config.salt)
    params.set_uint32(ARGON2_PARALLELISM, config.parallelism)
    params.set_uint64(ARGON2_MEMORY, config.memory_kib * 1024)
    params.set_uint64(ARGON2_ITERATIONS, config.iterations)
    params.set_uint32(ARGON2_VERSION, config.version)
    return params
