"""Timestamps shared by groups and entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current time in UTC, truncated to whole seconds (KDBX resolution)."""
    return datetime.now(UTC).replace(microsecond=0)


@dataclass
class Times:
    """Timestamps of a group or entry.

    Attributes:
        creation_time: When the item was created
        last_modification_time: Last content change
        last_access_time: Last time the item was used
        expiry_time: When the item expires (only meaningful if ``expires``)
        expires: Whether the item expires at all
        usage_count: Number of times the item was used
        location_changed: Last time the item moved to another group
    """

    creation_time: datetime = field(default_factory=utc_now)
    last_modification_time: datetime = field(default_factory=utc_now)
    last_access_time: datetime = field(default_factory=utc_now)
    expiry_time: datetime | None = None
    expires: bool = False
    usage_count: int = 0
    location_changed: datetime | None = None

    @classmethod
    def create_new(
        cls,
        expires: bool = False,
        expiry_time: datetime | None = None,
    ) -> Times:
        """Create timestamps for a new item, all set to now."""
        now = utc_now()
        return cls(
            creation_time=now,
            last_modification_time=now,
            last_access_time=now,
            expiry_time=expiry_time,
            expires=expires,
            location_changed=now,
        )

    @property
    def expired(self) -> bool:
        if not self.expires or self.expiry_time is None:
            return False
        return self.expiry_time <= utc_now()

    def touch(self, modify: bool = False) -> None:
        """Update access time, optionally modification time."""
        now = utc_now()
        self.last_access_time = now
        if modify:
            self.last_modification_time = now

    def update_location(self) -> None:
        """Record a move to another group."""
        now = utc_now()
        self.location_changed = now
        self.last_access_time = now
