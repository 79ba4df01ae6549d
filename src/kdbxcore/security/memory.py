"""Secret buffers with explicit zeroization.

Python gives no guarantee about when (or whether) memory is cleared once an
object becomes unreachable. Everything that holds key material or protected
field plaintext inside kdbxcore therefore uses one of two types here:

- SecureBytes: a caller-owned plaintext buffer. It is overwritten with zeros
  on ``zeroize()``, on ``with`` exit and, as a last resort, on finalization.
- ProtectedValue: the at-rest form of a protected field. The plaintext is
  XOR-masked with a random pad of the same length, so the process never
  holds the value in the clear except inside a SecureBytes produced by
  ``reveal()``.

Note that immutable ``bytes`` and ``str`` objects handed in by callers (for
example a password string) cannot be wiped; only copies made by this module
are.
"""

from __future__ import annotations

import hmac
import re
from types import TracebackType

from .crypto import secure_random_bytes

# Well-formed UTF-8 byte sequences (RFC 3629): no overlongs, no surrogates
_UTF8 = re.compile(
    rb"(?:[\x00-\x7F]"
    rb"|[\xC2-\xDF][\x80-\xBF]"
    rb"|\xE0[\xA0-\xBF][\x80-\xBF]"
    rb"|[\xE1-\xEC\xEE\xEF][\x80-\xBF]{2}"
    rb"|\xED[\x80-\x9F][\x80-\xBF]"
    rb"|\xF0[\x90-\xBF][\x80-\xBF]{2}"
    rb"|[\xF1-\xF3][\x80-\xBF]{3}"
    rb"|\xF4[\x80-\x8F][\x80-\xBF]{2})*"
)


def wipe(buffer: bytearray) -> None:
    """Overwrite a bytearray with zeros in place."""
    for i in range(len(buffer)):
        buffer[i] = 0


class SecureBytes:
    """Mutable byte buffer that zeroizes its contents on release.

    Example:
        >>> with SecureBytes(b"secret") as buf:
        ...     use(buf.data)
        >>> buf.is_zeroized
        True
    """

    __slots__ = ("_buffer", "_zeroized")

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        self._buffer = bytearray(data)
        self._zeroized = False

    @property
    def data(self) -> bytes:
        """Return the contents as bytes.

        The returned object is an immutable copy owned by the caller.

        Raises:
            ValueError: If the buffer has already been zeroized
        """
        if self._zeroized:
            raise ValueError("SecureBytes has been zeroized")
        return bytes(self._buffer)

    @property
    def is_zeroized(self) -> bool:
        return self._zeroized

    def decode(self, encoding: str = "utf-8") -> str:
        """Decode the contents as text."""
        if self._zeroized:
            raise ValueError("SecureBytes has been zeroized")
        return self._buffer.decode(encoding)

    def view(self) -> memoryview:
        """Zero-copy view of the contents.

        The view reads the live buffer and shows zeros after ``zeroize()``.

        Raises:
            ValueError: If the buffer has already been zeroized
        """
        if self._zeroized:
            raise ValueError("SecureBytes has been zeroized")
        return memoryview(self._buffer)

    def zeroize(self) -> None:
        """Overwrite the buffer with zeros. Safe to call more than once."""
        if not self._zeroized:
            wipe(self._buffer)
            self._zeroized = True

    def __len__(self) -> int:
        return len(self._buffer)

    def __bool__(self) -> bool:
        return not self._zeroized and len(self._buffer) > 0

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecureBytes):
            other_data = bytes(other._buffer)
        elif isinstance(other, (bytes, bytearray)):
            other_data = bytes(other)
        else:
            return NotImplemented
        return hmac.compare_digest(bytes(self._buffer), other_data)

    __hash__ = None  # type: ignore[assignment]

    def __enter__(self) -> SecureBytes:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.zeroize()

    def __del__(self) -> None:
        self.zeroize()

    def __repr__(self) -> str:
        state = "zeroized" if self._zeroized else f"{len(self._buffer)} bytes"
        return f"SecureBytes(<{state}>)"


class ProtectedValue:
    """XOR-masked in-memory form of a protected field value.

    Attributes:
        stream_offset: Offset into the inner keystream at which this value
            was read from the file, or None for values created in memory.
            Informational only; the value is already decrypted.
    """

    __slots__ = ("_masked", "_pad", "stream_offset")

    def __init__(self) -> None:
        self._masked = bytearray()
        self._pad = bytearray()
        self.stream_offset: int | None = None

    @classmethod
    def from_bytes(
        cls, plaintext: bytes | bytearray, stream_offset: int | None = None
    ) -> ProtectedValue:
        """Mask ``plaintext`` under a fresh random pad.

        If ``plaintext`` is a bytearray the caller may wipe it right after
        this call; no reference to it is kept.
        """
        value = cls()
        value._pad = bytearray(secure_random_bytes(len(plaintext)))
        value._masked = bytearray(a ^ b for a, b in zip(plaintext, value._pad))
        value.stream_offset = stream_offset
        return value

    @classmethod
    def from_str(cls, plaintext: str) -> ProtectedValue:
        encoded = bytearray(plaintext.encode("utf-8"))
        try:
            return cls.from_bytes(encoded)
        finally:
            wipe(encoded)

    def reveal(self) -> SecureBytes:
        """Unmask into a new caller-owned SecureBytes."""
        return SecureBytes(bytearray(a ^ b for a, b in zip(self._masked, self._pad)))

    def reveal_str(self) -> str:
        """Unmask and decode as UTF-8.

        The returned str cannot be wiped; prefer ``reveal()`` where the
        caller can work with bytes.
        """
        with self.reveal() as secret:
            return secret.decode("utf-8")

    def is_utf8(self) -> bool:
        """Whether the value is well-formed UTF-8, checked without building a str."""
        with self.reveal() as secret:
            return _UTF8.fullmatch(secret._buffer) is not None

    def copy(self) -> ProtectedValue:
        """Return an independent copy with a fresh pad."""
        with self.reveal() as secret:
            value = ProtectedValue.from_bytes(secret._buffer, self.stream_offset)
        return value

    def zeroize(self) -> None:
        wipe(self._masked)
        wipe(self._pad)
        self._masked = bytearray()
        self._pad = bytearray()

    def __len__(self) -> int:
        return len(self._masked)

    def __deepcopy__(self, memo: dict[int, object]) -> ProtectedValue:
        return self.copy()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProtectedValue):
            return NotImplemented
        with self.reveal() as mine, other.reveal() as theirs:
            return mine == theirs

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"ProtectedValue(<{len(self._masked)} bytes>)"
