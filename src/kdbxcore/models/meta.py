"""Database-level metadata stored in the XML ``Meta`` element."""

from __future__ import annotations

import uuid as uuid_module
from dataclasses import dataclass, field
from datetime import datetime
from xml.etree.ElementTree import Element

from .times import utc_now

# Standard fields covered by the memory protection policy
PROTECTABLE_FIELDS = ("Title", "UserName", "Password", "URL", "Notes")


@dataclass
class CustomIcon:
    """A PNG icon stored in the database and referenced by UUID."""

    uuid: uuid_module.UUID
    data: bytes
    name: str | None = None
    last_modification_time: datetime | None = None


@dataclass
class CustomDataItem:
    """A plugin-defined key/value pair (Meta, Group or Entry level)."""

    value: str
    last_modification_time: datetime | None = None


@dataclass
class DeletedObject:
    """Tombstone for a permanently deleted group or entry.

    KeePass uses these during synchronization so that a deletion on one
    copy of the database is not undone by merging another copy.
    """

    uuid: uuid_module.UUID
    deletion_time: datetime = field(default_factory=utc_now)


@dataclass
class Meta:
    """Database metadata and settings.

    Attributes:
        generator: Name of the application that last wrote the file
        database_name: Name of the database
        database_description: Description of the database
        default_username: Default username for new entries
        maintenance_history_days: Days to keep history entries
        color: Database color (hex)
        master_key_changed: When the credentials were last changed
        master_key_change_rec: Days until a key change is recommended (-1 = never)
        master_key_change_force: Days until a key change is forced (-1 = never)
        master_key_change_force_once: Force a key change on next open
        memory_protection: Which standard fields are stored protected
        custom_icons: Icon pool, in file order
        recycle_bin_enabled: Whether deletes go to the recycle bin
        recycle_bin_uuid: UUID of the recycle bin group
        entry_templates_group: UUID of the entry templates group
        history_max_items: Max history entries per entry (-1 = unlimited)
        history_max_size: Max history size per entry in bytes (-1 = unlimited)
        custom_data: Database-level plugin data
        unknown_elements: Unrecognized child elements, written back verbatim
    """

    generator: str = "kdbxcore"
    database_name: str = "Database"
    database_name_changed: datetime | None = None
    database_description: str = ""
    database_description_changed: datetime | None = None
    default_username: str = ""
    default_username_changed: datetime | None = None
    maintenance_history_days: int = 365
    color: str | None = None
    master_key_changed: datetime | None = None
    master_key_change_rec: int = -1
    master_key_change_force: int = -1
    master_key_change_force_once: bool = False
    memory_protection: dict[str, bool] = field(
        default_factory=lambda: {
            "Title": False,
            "UserName": False,
            "Password": True,
            "URL": False,
            "Notes": False,
        }
    )
    custom_icons: list[CustomIcon] = field(default_factory=list)
    recycle_bin_enabled: bool = True
    recycle_bin_uuid: uuid_module.UUID | None = None
    recycle_bin_changed: datetime | None = None
    entry_templates_group: uuid_module.UUID | None = None
    entry_templates_group_changed: datetime | None = None
    last_selected_group: uuid_module.UUID | None = None
    last_top_visible_group: uuid_module.UUID | None = None
    history_max_items: int = 10
    history_max_size: int = 6 * 1024 * 1024  # 6 MiB
    settings_changed: datetime | None = None
    custom_data: dict[str, CustomDataItem] = field(default_factory=dict)
    unknown_elements: list[Element] = field(default_factory=list, repr=False)

    def get_custom_icon(self, uuid: uuid_module.UUID) -> CustomIcon | None:
        for icon in self.custom_icons:
            if icon.uuid == uuid:
                return icon
        return None

    def add_custom_icon(self, data: bytes, name: str | None = None) -> uuid_module.UUID:
        """Add a PNG icon to the pool and return its UUID."""
        icon = CustomIcon(
            uuid=uuid_module.uuid4(),
            data=data,
            name=name,
            last_modification_time=utc_now(),
        )
        self.custom_icons.append(icon)
        return icon.uuid
