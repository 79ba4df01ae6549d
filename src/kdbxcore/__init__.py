"""kdbxcore - A codec and object model for KeePass KDBX 4 databases.

This library turns an encrypted KDBX file into a typed tree of groups and
entries and back, checking integrity end-to-end. It prioritizes security
with:
- Secure memory handling (protected values stay masked until revealed)
- Constant-time comparisons for authentication
- Modern cryptographic defaults (Argon2id, ChaCha20 inner stream)

Example:
    from kdbxcore import Database

    with Database.open("vault.kdbx", password="secret") as db:
        entry = db.find_entries(title="Gmail")[0]
        print(entry.username)

        with db.decrypt_field(entry, "Password") as password:
            use(password.data)

        # Create new entry
        db.add_entry(title="New Site", username="user", password="pass123")
        db.save()
"""

__version__ = "0.1.0"

from .database import Database, PendingOpen
from .exceptions import (
    CodecError,
    CredentialError,
    DatabaseClosedError,
    DatabaseError,
    DuplicateUuidError,
    EntryNotFoundError,
    FormatError,
    GroupNotFoundError,
    HeaderError,
    IntegrityError,
    InvalidKeyFileError,
    KdbxError,
    LegacyUpgradeRequired,
    MissingCredentialsError,
    ModelError,
    OperationCancelledError,
    PayloadError,
    UnsupportedError,
    UnsupportedVersionError,
)
from .models import Attachment, Entry, Group, HistoryEntry, Meta, StringField, Times
from .policy import DEFAULT_POLICY, CodecPolicy
from .security import (
    AesKdfConfig,
    Argon2Config,
    Cipher,
    KdfType,
    ProtectedValue,
    SecureBytes,
)

__all__ = [
    # Core classes
    "AesKdfConfig",
    "Argon2Config",
    "Attachment",
    "CodecPolicy",
    "DEFAULT_POLICY",
    "Database",
    "Entry",
    "Group",
    "HistoryEntry",
    "Meta",
    "PendingOpen",
    "ProtectedValue",
    "SecureBytes",
    "StringField",
    "Times",
    "Cipher",
    "KdfType",
    # Exceptions
    "KdbxError",
    "CodecError",
    "FormatError",
    "UnsupportedVersionError",
    "HeaderError",
    "IntegrityError",
    "PayloadError",
    "ModelError",
    "UnsupportedError",
    "LegacyUpgradeRequired",
    "OperationCancelledError",
    "CredentialError",
    "InvalidKeyFileError",
    "MissingCredentialsError",
    "DatabaseError",
    "EntryNotFoundError",
    "GroupNotFoundError",
    "DuplicateUuidError",
    "DatabaseClosedError",
]
