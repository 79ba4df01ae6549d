"""Group model for KDBX database folders."""

from __future__ import annotations

import re
import uuid as uuid_module
import weakref
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Union
from xml.etree.ElementTree import Element

from kdbxcore.exceptions import DuplicateUuidError

from .entry import Entry
from .meta import CustomDataItem
from .times import Times

GroupChild = Union[Entry, "Group"]


@dataclass
class Group:
    """A group (folder) in a KDBX database.

    Groups organize entries into a hierarchical structure. Entries and
    subgroups live in one ordered ``children`` list, so their relative
    order survives a load/save cycle. Children hold only a weak reference
    to their parent; the tree is owned from the root down.

    Attributes:
        uuid: Unique identifier for the group
        name: Display name of the group
        notes: Optional notes/description
        times: Timestamps (creation, modification, access, expiry)
        icon_id: Standard icon index
        custom_icon_uuid: UUID of a custom icon in Meta, if any
        is_expanded: Whether group is expanded in UI
        default_autotype_sequence: Default AutoType sequence for entries
        enable_autotype: Whether AutoType is enabled for this group
        enable_searching: Whether entries in this group are searchable
        last_top_visible_entry: UUID of last visible entry (UI state)
        tags: List of tags
        previous_parent_group: Group this one was in before its last move
        custom_data: Plugin data
        unknown_elements: Unrecognized child elements, written back verbatim
        children: Entries and subgroups, in order
    """

    uuid: uuid_module.UUID = field(default_factory=uuid_module.uuid4)
    name: str | None = None
    notes: str | None = None
    times: Times = field(default_factory=Times.create_new)
    icon_id: int = 48  # Default folder icon
    custom_icon_uuid: uuid_module.UUID | None = None
    is_expanded: bool = True
    default_autotype_sequence: str | None = None
    enable_autotype: bool | None = None  # None = inherit from parent
    enable_searching: bool | None = None  # None = inherit from parent
    last_top_visible_entry: uuid_module.UUID | None = None
    tags: list[str] = field(default_factory=list)
    previous_parent_group: uuid_module.UUID | None = None
    custom_data: dict[str, CustomDataItem] = field(default_factory=dict)
    unknown_elements: list[Element] = field(default_factory=list, repr=False)
    children: list[GroupChild] = field(default_factory=list, repr=False)

    # Non-owning reference to parent group (not serialized)
    _parent: weakref.ReferenceType[Group] | None = field(
        default=None, repr=False, compare=False
    )
    # Flag for root group
    _is_root: bool = field(default=False, repr=False)

    @property
    def parent(self) -> Group | None:
        """Get parent group, or None if this is the root.

        The link is weak: it is only valid while the owning tree (its root
        group, usually held by the database model) is alive.
        """
        return self._parent() if self._parent is not None else None

    @property
    def is_root_group(self) -> bool:
        """Check if this is the database root group."""
        return self._is_root

    @property
    def root(self) -> Group:
        """Topmost ancestor of this group (itself if detached)."""
        current = self
        while (parent := current.parent) is not None:
            current = parent
        return current

    @property
    def entries(self) -> list[Entry]:
        """Entries directly in this group, in order."""
        return [child for child in self.children if isinstance(child, Entry)]

    @property
    def subgroups(self) -> list[Group]:
        """Direct subgroups, in order."""
        return [child for child in self.children if isinstance(child, Group)]

    @property
    def path(self) -> list[str]:
        """Get path from root to this group.

        Returns:
            List of group names from root (exclusive) to this group (inclusive).
            Empty list for the root group.
        """
        parts: list[str] = []
        current: Group | None = self
        while current is not None and not current.is_root_group and current.parent is not None:
            if current.name is not None:
                parts.insert(0, current.name)
            current = current.parent
        return parts

    @property
    def expired(self) -> bool:
        """Check if group has expired."""
        return self.times.expired

    def touch(self, modify: bool = False) -> None:
        """Update access time, optionally modification time."""
        self.times.touch(modify=modify)

    # --- Child management ---

    def _attach(self, child: GroupChild, position: int | None) -> None:
        """Insert a child and point it at this group. No checks."""
        child._parent = weakref.ref(self)
        if position is None:
            self.children.append(child)
        else:
            self.children.insert(position, child)

    def _detach(self, child: GroupChild) -> None:
        for index, existing in enumerate(self.children):
            if existing is child:
                del self.children[index]
                child._parent = None
                return
        raise ValueError(f"{type(child).__name__} not in this group")

    def _check_unique(self, uuids: set[uuid_module.UUID]) -> None:
        """Raise if any of ``uuids`` is already used in this tree."""
        for existing in self.root.iter_uuids():
            if existing in uuids:
                raise DuplicateUuidError(existing)

    def add_entry(self, entry: Entry, position: int | None = None) -> Entry:
        """Add an entry to this group.

        Args:
            entry: Entry to add (must not already be in a group)
            position: Index in ``children`` (default: append)

        Returns:
            The added entry

        Raises:
            ValueError: If the entry already has a parent
            DuplicateUuidError: If the entry's UUID is already in the tree
        """
        if entry.parent is not None:
            raise ValueError("Entry already belongs to a group")
        self._check_unique({entry.uuid})
        self._attach(entry, position)
        self.touch(modify=True)
        return entry

    def remove_entry(self, entry: Entry) -> None:
        """Remove an entry from this group.

        Raises:
            ValueError: If entry is not in this group
        """
        self._detach(entry)
        self.touch(modify=True)

    def create_entry(
        self,
        title: str | None = None,
        username: str | None = None,
        password: str | None = None,
        url: str | None = None,
        notes: str | None = None,
        tags: list[str] | None = None,
    ) -> Entry:
        """Create and add a new entry to this group."""
        entry = Entry.create(
            title=title,
            username=username,
            password=password,
            url=url,
            notes=notes,
            tags=tags,
        )
        return self.add_entry(entry)

    def add_subgroup(self, group: Group, position: int | None = None) -> Group:
        """Add a subgroup to this group.

        Args:
            group: Group to add (with its whole subtree)
            position: Index in ``children`` (default: append)

        Returns:
            The added group

        Raises:
            ValueError: If the group already has a parent or is the root
            DuplicateUuidError: If any UUID in the subtree is already in the tree
        """
        if group.parent is not None or group._is_root:
            raise ValueError("Group already belongs to a tree")
        if group is self.root:
            raise ValueError("Cannot add a group to its own subtree")
        self._check_unique(set(group.iter_uuids()))
        self._attach(group, position)
        self.touch(modify=True)
        return group

    def remove_subgroup(self, group: Group) -> None:
        """Remove a subgroup from this group.

        Raises:
            ValueError: If group is not a subgroup of this group
        """
        self._detach(group)
        self.touch(modify=True)

    def create_subgroup(
        self,
        name: str,
        notes: str | None = None,
        icon_id: int = 48,
    ) -> Group:
        """Create and add a new subgroup."""
        group = Group(name=name, notes=notes, icon_id=icon_id)
        return self.add_subgroup(group)

    def move_to(self, destination: Group, position: int | None = None) -> None:
        """Move this group to a different parent group.

        Removes the group from its current parent and adds it to the
        destination group. Updates the location_changed timestamp.

        Args:
            destination: Target parent group to move this group to
            position: Index in the destination's children (default: append)

        Raises:
            ValueError: If this is the root group (cannot be moved)
            ValueError: If group has no parent (not yet added to a database)
            ValueError: If destination is the current parent
            ValueError: If destination is this group (cannot move into self)
            ValueError: If destination is a descendant of this group (would create cycle)
        """
        old_parent = self.parent
        if self._is_root:
            raise ValueError("Cannot move the root group")
        if old_parent is None:
            raise ValueError("Cannot move group that has no parent")
        if old_parent is destination:
            raise ValueError("Group is already in the destination group")
        if destination is self:
            raise ValueError("Cannot move group into itself")

        # Check for cycle: destination cannot be a descendant of this group
        if self._is_descendant(destination):
            raise ValueError("Cannot move group into its own descendant (would create cycle)")

        old_parent._detach(self)
        destination._attach(self, position)

        self.previous_parent_group = old_parent.uuid
        self.times.update_location()
        old_parent.touch(modify=True)
        destination.touch(modify=True)

    def _is_descendant(self, group: Group) -> bool:
        """Check if the given group is a descendant of this group."""
        return any(subgroup is group for subgroup in self.iter_groups(recursive=True))

    def contains(self, item: GroupChild) -> bool:
        """Whether ``item`` is somewhere below this group."""
        parent = item.parent
        while parent is not None:
            if parent is self:
                return True
            parent = parent.parent
        return False

    # --- Iteration and search ---

    def iter_uuids(self) -> Iterator[uuid_module.UUID]:
        """UUIDs of this group and everything below it (history excluded)."""
        yield self.uuid
        for child in self.children:
            if isinstance(child, Group):
                yield from child.iter_uuids()
            else:
                yield child.uuid

    def iter_entries(self, recursive: bool = True) -> Iterator[Entry]:
        """Iterate over entries in document order.

        Args:
            recursive: If True, include entries from all subgroups

        Yields:
            Entry objects
        """
        for child in self.children:
            if isinstance(child, Entry):
                yield child
            elif recursive:
                yield from child.iter_entries(recursive=True)

    def iter_groups(self, recursive: bool = True) -> Iterator[Group]:
        """Iterate over subgroups in document order.

        Args:
            recursive: If True, include nested subgroups

        Yields:
            Group objects
        """
        for child in self.children:
            if isinstance(child, Group):
                yield child
                if recursive:
                    yield from child.iter_groups(recursive=True)

    def find_entry_by_uuid(
        self, uuid: uuid_module.UUID, recursive: bool = True
    ) -> Entry | None:
        """Find an entry by UUID."""
        for entry in self.iter_entries(recursive=recursive):
            if entry.uuid == uuid:
                return entry
        return None

    def find_group_by_uuid(
        self, uuid: uuid_module.UUID, recursive: bool = True
    ) -> Group | None:
        """Find a group by UUID (including this group)."""
        if self.uuid == uuid:
            return self
        for group in self.iter_groups(recursive=recursive):
            if group.uuid == uuid:
                return group
        return None

    def find_entries(
        self,
        title: str | None = None,
        username: str | None = None,
        url: str | None = None,
        tags: list[str] | None = None,
        recursive: bool = True,
    ) -> list[Entry]:
        """Find entries matching criteria.

        All criteria are combined with AND logic. None means "any value".

        Args:
            title: Match entries with this title (exact)
            username: Match entries with this username (exact)
            url: Match entries with this URL (exact)
            tags: Match entries containing all these tags
            recursive: Search in subgroups

        Returns:
            List of matching entries
        """
        results = []
        for entry in self.iter_entries(recursive=recursive):
            if title is not None and entry.title != title:
                continue
            if username is not None and entry.username != username:
                continue
            if url is not None and entry.url != url:
                continue
            if tags is not None and not all(t in entry.tags for t in tags):
                continue
            results.append(entry)
        return results

    def find_entries_contains(
        self,
        title: str | None = None,
        username: str | None = None,
        url: str | None = None,
        notes: str | None = None,
        recursive: bool = True,
        case_sensitive: bool = False,
    ) -> list[Entry]:
        """Find entries where fields contain the given substrings.

        All criteria are combined with AND logic. None means "any value".

        Args:
            title: Match entries whose title contains this substring
            username: Match entries whose username contains this substring
            url: Match entries whose URL contains this substring
            notes: Match entries whose notes contain this substring
            recursive: Search in subgroups
            case_sensitive: If False (default), matching is case-insensitive

        Returns:
            List of matching entries
        """

        def contains(field_value: str | None, search: str) -> bool:
            if field_value is None:
                return False
            if case_sensitive:
                return search in field_value
            return search.lower() in field_value.lower()

        results = []
        for entry in self.iter_entries(recursive=recursive):
            if title is not None and not contains(entry.title, title):
                continue
            if username is not None and not contains(entry.username, username):
                continue
            if url is not None and not contains(entry.url, url):
                continue
            if notes is not None and not contains(entry.notes, notes):
                continue
            results.append(entry)
        return results

    def find_entries_regex(
        self,
        title: str | None = None,
        username: str | None = None,
        url: str | None = None,
        notes: str | None = None,
        recursive: bool = True,
        case_sensitive: bool = False,
    ) -> list[Entry]:
        """Find entries where fields match the given regex patterns.

        All criteria are combined with AND logic. None means "any value".

        Raises:
            re.error: If any pattern is not a valid regex
        """
        flags = 0 if case_sensitive else re.IGNORECASE
        patterns = {
            name: re.compile(pattern, flags)
            for name, pattern in (
                ("title", title),
                ("username", username),
                ("url", url),
                ("notes", notes),
            )
            if pattern is not None
        }

        results = []
        for entry in self.iter_entries(recursive=recursive):
            for name, pattern in patterns.items():
                value = getattr(entry, name)
                if value is None or pattern.search(value) is None:
                    break
            else:
                results.append(entry)
        return results

    def find_groups(
        self,
        name: str | None = None,
        recursive: bool = True,
    ) -> list[Group]:
        """Find groups matching criteria."""
        results = []
        for group in self.iter_groups(recursive=recursive):
            if name is not None and group.name != name:
                continue
            results.append(group)
        return results

    def zeroize(self) -> None:
        """Wipe protected values of every entry below this group."""
        for entry in self.iter_entries(recursive=True):
            entry.zeroize()

    def __str__(self) -> str:
        path_str = "/".join(self.path) if self.path else "(root)"
        return f'Group: "{path_str}"'

    def __hash__(self) -> int:
        return hash(self.uuid)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Group):
            return self.uuid == other.uuid
        return NotImplemented

    @classmethod
    def create_root(cls, name: str = "Root") -> Group:
        """Create a root group for a new database."""
        group = cls(name=name)
        group._is_root = True
        return group
