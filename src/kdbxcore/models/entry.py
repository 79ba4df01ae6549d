"""Entry model for KDBX password entries."""

from __future__ import annotations

import copy
import uuid as uuid_module
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING
from xml.etree.ElementTree import Element

from kdbxcore.security.memory import ProtectedValue, SecureBytes

from .meta import CustomDataItem
from .times import Times

if TYPE_CHECKING:
    from .group import Group


# Fields that have special handling and shouldn't be treated as custom properties
RESERVED_KEYS = frozenset({
    "Title",
    "UserName",
    "Password",
    "URL",
    "Notes",
    "otp",
})

# Standard fields every new entry starts with, in KeePass order
STANDARD_KEYS = ("Title", "UserName", "Password", "URL", "Notes")


class StringField:
    """A string field in an entry.

    Unprotected values are plain ``str``. Protected values are held as a
    ProtectedValue and only leave it through ``reveal()`` (into a
    SecureBytes the caller must release) or the ``value`` convenience
    property (into an immutable str that cannot be wiped).

    Attributes:
        key: Field name (e.g., "Title", "UserName", "Password")
    """

    __slots__ = ("key", "_protected", "_plain", "_secret")

    def __init__(self, key: str, value: str | None = None, protected: bool = False) -> None:
        self.key = key
        self._protected = protected
        self._plain: str | None = None
        self._secret: ProtectedValue | None = None
        self.value = value

    @classmethod
    def from_protected_value(cls, key: str, secret: ProtectedValue) -> StringField:
        """Wrap an already-masked value without revealing it."""
        string_field = cls(key, protected=True)
        string_field._secret = secret
        return string_field

    @property
    def protected(self) -> bool:
        """Whether the value is stored protected (in memory and in the file)."""
        return self._protected

    @protected.setter
    def protected(self, protected: bool) -> None:
        if protected == self._protected:
            return
        if protected and self._plain is not None:
            self._secret = ProtectedValue.from_str(self._plain)
            self._plain = None
        elif not protected and self._secret is not None:
            self._plain = self._secret.reveal_str()
            self._secret.zeroize()
            self._secret = None
        self._protected = protected

    @property
    def value(self) -> str | None:
        if self._secret is not None:
            return self._secret.reveal_str()
        return self._plain

    @value.setter
    def value(self, value: str | None) -> None:
        if self._secret is not None:
            self._secret.zeroize()
            self._secret = None
        self._plain = None
        if value is None:
            return
        if self._protected:
            self._secret = ProtectedValue.from_str(value)
        else:
            self._plain = value

    @property
    def secret(self) -> ProtectedValue | None:
        """The masked value of a protected field (None if unset or unprotected)."""
        return self._secret

    @property
    def is_empty(self) -> bool:
        if self._secret is not None:
            return len(self._secret) == 0
        return not self._plain

    @property
    def byte_size(self) -> int:
        """UTF-8 size of the value, computed without revealing it."""
        if self._secret is not None:
            return len(self._secret)
        return len(self._plain.encode("utf-8")) if self._plain else 0

    def reveal(self) -> SecureBytes:
        """Return the UTF-8 value in a caller-owned SecureBytes."""
        if self._secret is not None:
            return self._secret.reveal()
        return SecureBytes((self._plain or "").encode("utf-8"))

    def copy(self) -> StringField:
        """Return an independent copy (protected values get a fresh pad)."""
        duplicate = StringField(self.key, protected=self._protected)
        duplicate._plain = self._plain
        duplicate._secret = self._secret.copy() if self._secret is not None else None
        return duplicate

    def zeroize(self) -> None:
        if self._secret is not None:
            self._secret.zeroize()

    def __deepcopy__(self, memo: dict[int, object]) -> StringField:
        return self.copy()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StringField):
            return NotImplemented
        if self.key != other.key or self._protected != other._protected:
            return False
        if self._secret is not None or other._secret is not None:
            if self._secret is None or other._secret is None:
                return False
            return self._secret == other._secret
        return self._plain == other._plain

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        shown = "<protected>" if self._protected else repr(self._plain)
        return f"StringField(key={self.key!r}, value={shown})"


@dataclass
class AutoTypeAssociation:
    """Window-specific AutoType sequence.

    Attributes:
        window: Window title filter (wildcards allowed)
        sequence: Keystroke sequence for matching windows (empty = default)
    """

    window: str
    sequence: str = ""


@dataclass
class AutoType:
    """AutoType settings for an entry.

    Attributes:
        enabled: Whether AutoType is enabled for this entry
        sequence: Default keystroke sequence
        obfuscation: Data transfer obfuscation level (0 = none)
        associations: Window-specific sequences, in file order
    """

    enabled: bool = True
    sequence: str | None = None
    obfuscation: int = 0
    associations: list[AutoTypeAssociation] = field(default_factory=list)


@dataclass
class BinaryRef:
    """Reference to a binary attachment.

    Attributes:
        key: Filename of the attachment
        ref: Id of the binary in the database's pool
    """

    key: str
    ref: int


@dataclass
class Entry:
    """A password entry in a KDBX database.

    Entries store credentials and associated metadata. Each entry has
    standard fields (title, username, password, url, notes) plus support
    for custom string fields and binary attachments. Field order is kept
    as loaded.

    Attributes:
        uuid: Unique identifier for the entry
        times: Timestamps (creation, modification, access, expiry)
        icon_id: Standard icon index
        custom_icon_uuid: UUID of a custom icon in Meta, if any
        tags: List of tags for categorization
        strings: Ordered string fields (key -> StringField)
        binaries: Attachment references
        autotype: AutoType settings
        history: Previous versions of this entry, oldest first
        foreground_color: Custom foreground color (hex)
        background_color: Custom background color (hex)
        override_url: URL override for AutoType
        quality_check: Whether to check password quality
        previous_parent_group: Group the entry was in before its last move
        custom_data: Plugin data
        unknown_elements: Unrecognized child elements, written back verbatim
    """

    uuid: uuid_module.UUID = field(default_factory=uuid_module.uuid4)
    times: Times = field(default_factory=Times.create_new)
    icon_id: int = 0
    custom_icon_uuid: uuid_module.UUID | None = None
    tags: list[str] = field(default_factory=list)
    strings: dict[str, StringField] = field(default_factory=dict)
    binaries: list[BinaryRef] = field(default_factory=list)
    autotype: AutoType = field(default_factory=AutoType)
    history: list[HistoryEntry] = field(default_factory=list)
    foreground_color: str | None = None
    background_color: str | None = None
    override_url: str | None = None
    quality_check: bool = True
    previous_parent_group: uuid_module.UUID | None = None
    custom_data: dict[str, CustomDataItem] = field(default_factory=dict)
    unknown_elements: list[Element] = field(default_factory=list, repr=False)

    # Non-owning reference to the containing group (not serialized)
    _parent: weakref.ReferenceType[Group] | None = field(
        default=None, repr=False, compare=False
    )

    # --- Standard field properties ---

    def _get_string(self, key: str) -> str | None:
        string_field = self.strings.get(key)
        return string_field.value if string_field is not None else None

    def _set_string(self, key: str, value: str | None, protected: bool = False) -> None:
        if key not in self.strings:
            self.strings[key] = StringField(key, protected=protected)
        self.strings[key].value = value

    @property
    def title(self) -> str | None:
        """Get or set entry title."""
        return self._get_string("Title")

    @title.setter
    def title(self, value: str | None) -> None:
        self._set_string("Title", value)

    @property
    def username(self) -> str | None:
        """Get or set entry username."""
        return self._get_string("UserName")

    @username.setter
    def username(self, value: str | None) -> None:
        self._set_string("UserName", value)

    @property
    def password(self) -> str | None:
        """Get or set entry password.

        Reading returns an immutable str; use ``Database.decrypt_field``
        to obtain the value in a wipeable buffer.
        """
        return self._get_string("Password")

    @password.setter
    def password(self, value: str | None) -> None:
        self._set_string("Password", value, protected=True)

    @property
    def url(self) -> str | None:
        """Get or set entry URL."""
        return self._get_string("URL")

    @url.setter
    def url(self, value: str | None) -> None:
        self._set_string("URL", value)

    @property
    def notes(self) -> str | None:
        """Get or set entry notes."""
        return self._get_string("Notes")

    @notes.setter
    def notes(self, value: str | None) -> None:
        self._set_string("Notes", value)

    @property
    def otp(self) -> str | None:
        """Get or set OTP secret (TOTP/HOTP)."""
        return self._get_string("otp")

    @otp.setter
    def otp(self, value: str | None) -> None:
        self._set_string("otp", value, protected=True)

    # --- Custom properties ---

    def get_custom_property(self, key: str) -> str | None:
        """Get a custom property value.

        Args:
            key: Property name (must not be a reserved key)

        Returns:
            Property value, or None if not set

        Raises:
            ValueError: If key is a reserved key
        """
        if key in RESERVED_KEYS:
            raise ValueError(f"{key} is a reserved key, use the property instead")
        return self._get_string(key)

    def set_custom_property(self, key: str, value: str, protected: bool = False) -> None:
        """Set a custom property.

        Raises:
            ValueError: If key is a reserved key
        """
        if key in RESERVED_KEYS:
            raise ValueError(f"{key} is a reserved key, use the property instead")
        old = self.strings.get(key)
        if old is not None:
            old.zeroize()
        self.strings[key] = StringField(key, value, protected=protected)

    def delete_custom_property(self, key: str) -> None:
        """Delete a custom property.

        Raises:
            ValueError: If key is a reserved key
            KeyError: If property doesn't exist
        """
        if key in RESERVED_KEYS:
            raise ValueError(f"{key} is a reserved key")
        if key not in self.strings:
            raise KeyError(f"No such property: {key}")
        self.strings.pop(key).zeroize()

    @property
    def custom_properties(self) -> dict[str, str | None]:
        """Get all custom properties as a dictionary."""
        return {k: v.value for k, v in self.strings.items() if k not in RESERVED_KEYS}

    # --- Tree ---

    @property
    def parent(self) -> Group | None:
        """Get parent group.

        The link is weak: it is only valid while the owning tree (its root
        group, usually held by the database model) is alive.
        """
        return self._parent() if self._parent is not None else None

    def move_to(self, destination: Group, position: int | None = None) -> None:
        """Move this entry to another group.

        Raises:
            ValueError: If the entry has no parent
        """
        parent = self.parent
        if parent is None:
            raise ValueError("Cannot move entry that has no parent")
        if parent is destination:
            raise ValueError("Entry is already in the destination group")
        parent.remove_entry(self)
        self.previous_parent_group = parent.uuid
        destination.add_entry(self, position=position)
        self.times.update_location()

    # --- Convenience methods ---

    @property
    def expired(self) -> bool:
        """Check if entry has expired."""
        return self.times.expired

    def touch(self, modify: bool = False) -> None:
        """Update access time, optionally modification time."""
        self.times.touch(modify=modify)

    def save_history(self, max_items: int = -1, max_size: int = -1) -> HistoryEntry:
        """Append a snapshot of the current state to the history.

        Args:
            max_items: Keep at most this many snapshots (-1 = unlimited)
            max_size: Keep at most this many bytes of snapshots (-1 = unlimited)

        Returns:
            The new snapshot
        """
        history_entry = HistoryEntry.from_entry(self)
        self.history.append(history_entry)
        self.trim_history(max_items, max_size)
        return history_entry

    def trim_history(self, max_items: int = -1, max_size: int = -1) -> None:
        """Drop the oldest snapshots beyond the given limits."""
        if max_items >= 0:
            while len(self.history) > max_items:
                self.history.pop(0).zeroize()
        if max_size >= 0:
            while self.history and sum(h.byte_size for h in self.history) > max_size:
                self.history.pop(0).zeroize()

    @property
    def byte_size(self) -> int:
        """Approximate stored size of the string fields."""
        return sum(len(k.encode("utf-8")) + f.byte_size for k, f in self.strings.items())

    def zeroize(self) -> None:
        """Wipe all protected values, including those in history."""
        for string_field in self.strings.values():
            string_field.zeroize()
        for history_entry in self.history:
            history_entry.zeroize()

    def __str__(self) -> str:
        return f'Entry: "{self.title}" ({self.username})'

    def __hash__(self) -> int:
        return hash(self.uuid)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Entry):
            return self.uuid == other.uuid
        return NotImplemented

    @classmethod
    def create(
        cls,
        title: str | None = None,
        username: str | None = None,
        password: str | None = None,
        url: str | None = None,
        notes: str | None = None,
        tags: list[str] | None = None,
        icon_id: int = 0,
        expires: bool = False,
        expiry_time: datetime | None = None,
    ) -> Entry:
        """Create a new entry with the standard fields.

        Returns:
            New Entry instance
        """
        entry = cls(
            times=Times.create_new(expires=expires, expiry_time=expiry_time),
            icon_id=icon_id,
            tags=tags or [],
        )
        for key, value in zip(STANDARD_KEYS, (title, username, password, url, notes)):
            entry.strings[key] = StringField(key, value, protected=key == "Password")
        return entry


@dataclass(eq=False)
class HistoryEntry(Entry):
    """A historical version of an entry.

    History entries are snapshots of an entry at a previous point in time.
    They share the same UUID as their parent entry and never carry history
    of their own.
    """

    def __post_init__(self) -> None:
        if self.history:
            raise ValueError("History entries cannot have history")

    def __str__(self) -> str:
        return f'HistoryEntry: "{self.title}" ({self.times.last_modification_time})'

    def __hash__(self) -> int:
        # Include mtime since history entries share UUID with parent
        return hash((self.uuid, self.times.last_modification_time))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HistoryEntry):
            return (self.uuid, self.times.last_modification_time) == (
                other.uuid,
                other.times.last_modification_time,
            )
        return NotImplemented

    @classmethod
    def from_entry(cls, entry: Entry) -> HistoryEntry:
        """Create a history entry from an existing entry.

        Args:
            entry: Entry to create history from

        Returns:
            New HistoryEntry with copied data
        """
        # Deep copy all fields except history and parent
        return cls(
            uuid=entry.uuid,
            times=copy.deepcopy(entry.times),
            icon_id=entry.icon_id,
            custom_icon_uuid=entry.custom_icon_uuid,
            tags=list(entry.tags),
            strings={k: v.copy() for k, v in entry.strings.items()},
            binaries=[BinaryRef(b.key, b.ref) for b in entry.binaries],
            autotype=copy.deepcopy(entry.autotype),
            history=[],
            foreground_color=entry.foreground_color,
            background_color=entry.background_color,
            override_url=entry.override_url,
            quality_check=entry.quality_check,
            previous_parent_group=entry.previous_parent_group,
            custom_data=copy.deepcopy(entry.custom_data),
            # Preserved elements are shared read-only; the mapper writes copies
            unknown_elements=list(entry.unknown_elements),
        )
