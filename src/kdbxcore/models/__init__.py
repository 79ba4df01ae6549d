"""Data models for KDBX database elements.

This module provides typed Python classes for representing KDBX database
contents: entries, groups, metadata and the attachment pool.
"""

from .attachment import Attachment, Binary, BinaryPool
from .entry import AutoType, AutoTypeAssociation, BinaryRef, Entry, HistoryEntry, StringField
from .group import Group
from .meta import CustomDataItem, CustomIcon, DeletedObject, Meta
from .times import Times

__all__ = [
    "Attachment",
    "AutoType",
    "AutoTypeAssociation",
    "Binary",
    "BinaryPool",
    "BinaryRef",
    "CustomDataItem",
    "CustomIcon",
    "DeletedObject",
    "Entry",
    "Group",
    "HistoryEntry",
    "Meta",
    "StringField",
    "Times",
]
