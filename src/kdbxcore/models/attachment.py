"""Binary attachment pool.

Attachments are stored once per database in a pool indexed by integer id
and referenced from entries (and their history) by id. KDBX4 carries the
pool in the inner header; KDBX3 in ``Meta/Binaries``.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass


@dataclass
class Binary:
    """Pooled attachment payload.

    Attributes:
        data: Attachment bytes
        protected: Whether KeePass should keep the payload memory-protected
    """

    data: bytes
    protected: bool = True


@dataclass(frozen=True)
class Attachment:
    """An attachment as seen from an entry.

    Attributes:
        filename: Display name stored on the entry
        id: Binary pool id
        data: Attachment bytes
        protected: Memory protection flag of the pooled binary
    """

    filename: str
    id: int
    data: bytes
    protected: bool = True


class BinaryPool:
    """Ordered ``id -> Binary`` mapping with content deduplication."""

    def __init__(self, binaries: Iterable[Binary] = ()) -> None:
        self._items: dict[int, Binary] = {}
        for index, binary in enumerate(binaries):
            self._items[index] = binary

    def add(self, data: bytes, protected: bool = True) -> int:
        """Add a payload and return its id.

        Identical payloads are stored once. Re-adding a payload with
        ``protected=True`` upgrades the pooled copy's flag.
        """
        for ref, binary in self._items.items():
            if binary.data == data:
                binary.protected = binary.protected or protected
                return ref
        ref = max(self._items, default=-1) + 1
        self._items[ref] = Binary(data=data, protected=protected)
        return ref

    def get(self, ref: int) -> Binary | None:
        return self._items.get(ref)

    def set(self, ref: int, binary: Binary) -> None:
        """Store a binary under an explicit id (used when loading)."""
        self._items[ref] = binary

    def remove(self, ref: int) -> bool:
        return self._items.pop(ref, None) is not None

    def clear(self) -> None:
        self._items.clear()

    def items(self) -> Iterator[tuple[int, Binary]]:
        yield from self._items.items()

    def compact(self, refs: Iterable[int]) -> tuple[list[Binary], dict[int, int]]:
        """Renumber the binaries named by ``refs`` densely from 0.

        Args:
            refs: Referenced ids, in document order (duplicates allowed)

        Returns:
            Tuple of (binaries in new id order, old id -> new id). Ids
            that are not in the pool are absent from the mapping.
        """
        remap: dict[int, int] = {}
        binaries: list[Binary] = []
        for ref in refs:
            if ref in remap or ref not in self._items:
                continue
            remap[ref] = len(binaries)
            binaries.append(self._items[ref])
        return binaries, remap

    def __contains__(self, ref: object) -> bool:
        return ref in self._items

    def __iter__(self) -> Iterator[int]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"BinaryPool({len(self._items)} binaries)"
