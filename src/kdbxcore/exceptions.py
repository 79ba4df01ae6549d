"""Custom exception hierarchy for kdbxcore.

All exceptions inherit from KdbxError. Errors raised while decoding or
encoding a database file inherit from CodecError and are terminal for the
current open/save attempt: retrying with the same input cannot change the
outcome.

Exception Hierarchy:
    KdbxError (base)
    ├── CodecError
    │   ├── FormatError
    │   │   └── UnsupportedVersionError
    │   ├── HeaderError
    │   ├── IntegrityError
    │   ├── PayloadError
    │   ├── ModelError
    │   └── UnsupportedError
    │       └── LegacyUpgradeRequired
    ├── OperationCancelledError
    ├── CredentialError
    │   ├── MissingCredentialsError
    │   └── InvalidKeyFileError
    └── DatabaseError
        ├── EntryNotFoundError
        ├── GroupNotFoundError
        ├── DuplicateUuidError
        └── DatabaseClosedError

Security Note:
    Exception messages never contain key material or field values.
    IntegrityError deliberately does not say whether the secret was wrong
    or the file was tampered with; callers should present it as
    "incorrect password or corrupted file".
"""

from __future__ import annotations


class KdbxError(Exception):
    """Base exception for all kdbxcore errors."""


class CodecError(KdbxError):
    """Error while decoding or encoding a KDBX file."""


# --- Codec Errors ---


class FormatError(CodecError):
    """File signature or version is not recognized.

    The data does not start with the KDBX magic bytes, or declares a
    format version newer than this library understands.
    """


class UnsupportedVersionError(FormatError):
    """KDBX major version is newer than the highest supported version."""

    def __init__(self, version_major: int, version_minor: int) -> None:
        self.version_major = version_major
        self.version_minor = version_minor
        super().__init__(
            f"Unsupported KDBX version: {version_major}.{version_minor}"
        )


class HeaderError(CodecError):
    """Malformed or incomplete outer or inner header.

    Raised for truncated TLV records, missing mandatory fields, invalid
    field lengths and unknown cipher or KDF identifiers.
    """


class IntegrityError(CodecError):
    """Header or block authentication failed.

    Covers both a wrong secret and tampering. The two cases are not
    distinguished on purpose.
    """

    def __init__(
        self, message: str = "Integrity check failed - wrong key or corrupted data"
    ) -> None:
        super().__init__(message)


class PayloadError(CodecError):
    """Authenticated payload could not be decoded.

    Raised for corrupt compressed streams, invalid padding and oversized
    binary attachments.
    """


class ModelError(CodecError):
    """Decrypted XML document is structurally invalid."""

    def __init__(self, message: str = "Invalid KDBX XML structure") -> None:
        super().__init__(message)


class UnsupportedError(CodecError):
    """Recognized but unimplemented format variant.

    Examples are the Twofish outer cipher, the ArcFour inner stream and
    KDBX 3 files when legacy reading is disabled.
    """


class LegacyUpgradeRequired(UnsupportedError):
    """Saving a database opened from a KDBX 3 file needs explicit consent.

    Pass ``allow_upgrade=True`` to ``Database.save()`` to write it as KDBX 4.
    """

    def __init__(self) -> None:
        super().__init__(
            "Database was opened from a KDBX 3 file; "
            "saving requires allow_upgrade=True (it will be written as KDBX 4)"
        )


# --- Cancellation ---


class OperationCancelledError(KdbxError):
    """A long-running operation (key derivation, open) was cancelled."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


# --- Credential Errors ---


class CredentialError(KdbxError):
    """Error with database credentials.

    Messages are kept generic to avoid information disclosure about which
    credential component is incorrect.
    """


class MissingCredentialsError(CredentialError):
    """No credentials provided.

    At least one credential (password or keyfile) is required
    to open or create a database.
    """

    def __init__(self) -> None:
        super().__init__("At least one credential (password or keyfile) is required")


class InvalidKeyFileError(CredentialError):
    """Keyfile is malformed or failed hash verification."""

    def __init__(self, message: str = "Invalid keyfile") -> None:
        super().__init__(message)


# --- Database Errors ---


class DatabaseError(KdbxError):
    """Error in database operations after successful decryption."""


class EntryNotFoundError(DatabaseError):
    """Entry not found in database."""

    def __init__(self, message: str = "Entry not found") -> None:
        super().__init__(message)


class GroupNotFoundError(DatabaseError):
    """Group not found in database."""

    def __init__(self, message: str = "Group not found") -> None:
        super().__init__(message)


class DuplicateUuidError(DatabaseError):
    """A group or entry with the same UUID already exists in the tree."""

    def __init__(self, uuid: object) -> None:
        self.uuid = uuid
        super().__init__(f"Duplicate UUID in database tree: {uuid}")


class DatabaseClosedError(DatabaseError):
    """Operation attempted on a closed database."""

    def __init__(self) -> None:
        super().__init__("Database is closed")
