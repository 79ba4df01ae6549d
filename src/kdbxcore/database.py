"""High-level Database API for KDBX files.

This module provides the main interface for working with KeePass databases:
- Opening and decrypting KDBX files (optionally on a worker thread)
- Creating new databases
- Editing entries and groups under a single database lock
- Searching for entries and groups
- Saving databases atomically
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import uuid as uuid_module
from collections.abc import Iterator
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType

from .exceptions import (
    DatabaseClosedError,
    EntryNotFoundError,
    GroupNotFoundError,
    LegacyUpgradeRequired,
    MissingCredentialsError,
    OperationCancelledError,
    UnsupportedError,
)
from .models import Attachment, Binary, BinaryPool, BinaryRef, Entry, Group, Meta
from .models.meta import DeletedObject
from .models.times import utc_now
from .parsing import KdbxHeader, KdbxVersion
from .parsing.kdbx3 import read_kdbx3
from .parsing.kdbx4 import DecryptedPayload, InnerHeader, read_kdbx4, write_kdbx4
from .parsing.mapper import DatabaseModel, XmlModelMapper
from .parsing.variant import VariantMap, kdf_parameters_to_variant_map
from .policy import DEFAULT_POLICY, CodecPolicy
from .security import (
    Argon2Config,
    Cipher,
    InnerStreamId,
    KdfEngine,
    KdfParameters,
    ProtectedStreamCipher,
    SecureBytes,
    secure_random_bytes,
)
from .security.kdf import derive_composite_key

logger = logging.getLogger(__name__)

# Size of the inner stream key generated for every save
INNER_STREAM_KEY_SIZE = 64

RECYCLE_BIN_NAME = "Recycle Bin"
RECYCLE_BIN_ICON = 43


class Database:
    """High-level interface for KDBX databases.

    This class provides the main API for working with KeePass databases.
    It ties the codec layers together and owns the in-memory model, the
    user's composite key and the cached KDF output.

    Every mutation goes through the database lock, as does the snapshot
    taken by ``to_bytes()``, so a save never serializes a half-applied
    edit. Use ``edit()`` to group several steps under one acquisition.

    Example usage:
        # Open existing database
        with Database.open("passwords.kdbx", password="secret") as db:
            # Find entries
            entries = db.find_entries(title="GitHub")

            # Create entry
            entry = db.add_entry(
                title="New Site",
                username="user",
                password="pass123",
            )

            # Save changes
            db.save()
    """

    def __init__(
        self,
        model: DatabaseModel,
        header: KdbxHeader,
        policy: CodecPolicy | None = None,
    ) -> None:
        """Initialize database.

        Usually you should use Database.open() or Database.create() instead.

        Args:
            model: Decoded database contents
            header: Outer header the next save is derived from
            policy: Codec limits and feature switches
        """
        self._model = model
        self._header = header
        self._policy = policy or DEFAULT_POLICY
        self._lock = threading.RLock()
        self._composite_key: SecureBytes | None = None
        self._transformed_key: SecureBytes | None = None
        self._transformed_params: VariantMap | None = None
        self._filepath: Path | None = None
        self._legacy = header.version == KdbxVersion.KDBX3
        self._closed = False

    def __enter__(self) -> Database:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager, wiping all secrets."""
        self.close()

    def close(self) -> None:
        """Wipe protected values, attachments and keys.

        The database cannot be used afterwards. Calling close() again is
        a no-op.
        """
        with self._lock:
            if self._closed:
                return
            self._model.zeroize()
            self._model.binaries.clear()
            self._wipe_keys()
            self._closed = True
            logger.debug("Database closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def _wipe_keys(self) -> None:
        if self._composite_key is not None:
            self._composite_key.zeroize()
            self._composite_key = None
        self._forget_transformed_key()

    def _forget_transformed_key(self) -> None:
        if self._transformed_key is not None:
            self._transformed_key.zeroize()
        self._transformed_key = None
        self._transformed_params = None

    def _ensure_open(self) -> None:
        if self._closed:
            raise DatabaseClosedError()

    @contextmanager
    def edit(self) -> Iterator[Database]:
        """Hold the database lock for a multi-step edit.

        Example:
            with db.edit():
                group = db.add_group("Work")
                db.add_entry(group, title="VPN")
        """
        with self._lock:
            self._ensure_open()
            yield self

    # --- Properties ---

    @property
    def root_group(self) -> Group:
        """Get the root group of the database."""
        self._ensure_open()
        return self._model.root_group

    @property
    def meta(self) -> Meta:
        """Get database metadata and settings."""
        self._ensure_open()
        return self._model.meta

    @property
    def header(self) -> KdbxHeader:
        """Outer header of the file as last read or written."""
        return self._header

    @property
    def policy(self) -> CodecPolicy:
        return self._policy

    @property
    def filepath(self) -> Path | None:
        """Get the file path (if opened from or saved to a file)."""
        return self._filepath

    @property
    def is_legacy(self) -> bool:
        """Whether the database was read from a KDBX 3 file and not yet upgraded."""
        return self._legacy

    @property
    def kdf_config(self) -> KdfParameters:
        return self._header.kdf_config

    @property
    def binaries(self) -> BinaryPool:
        """The attachment pool."""
        self._ensure_open()
        return self._model.binaries

    @property
    def deleted_objects(self) -> list[DeletedObject]:
        self._ensure_open()
        return self._model.deleted_objects

    @property
    def recycle_bin(self) -> Group | None:
        """The recycle bin group, if one exists."""
        self._ensure_open()
        bin_uuid = self._model.meta.recycle_bin_uuid
        if bin_uuid is None:
            return None
        return self._model.root_group.find_group_by_uuid(bin_uuid)

    # --- Opening databases ---

    @classmethod
    def open(
        cls,
        filepath: str | Path,
        password: str | None = None,
        keyfile: str | Path | None = None,
        *,
        policy: CodecPolicy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Database:
        """Open an existing KDBX database.

        Args:
            filepath: Path to the .kdbx file
            password: Database password
            keyfile: Path to keyfile (optional)
            policy: Codec limits and feature switches
            cancel_event: Cancels the open (during key derivation) when set

        Returns:
            Database instance

        Raises:
            FileNotFoundError: If file doesn't exist
            MissingCredentialsError: If neither password nor keyfile is given
            IntegrityError: If credentials are wrong or file is corrupted
            UnsupportedError: For KDBX 3 files unless the policy allows them
            OperationCancelledError: If cancel_event was set
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Database file not found: {filepath}")

        data = filepath.read_bytes()

        return cls.open_bytes(
            data,
            password=password,
            keyfile_data=_read_keyfile(keyfile),
            filepath=filepath,
            policy=policy,
            cancel_event=cancel_event,
        )

    @classmethod
    def open_bytes(
        cls,
        data: bytes,
        password: str | None = None,
        keyfile_data: bytes | None = None,
        *,
        filepath: str | Path | None = None,
        policy: CodecPolicy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Database:
        """Open a KDBX database from bytes.

        Args:
            data: KDBX file contents
            password: Database password
            keyfile_data: Keyfile contents (optional)
            filepath: Original file path (for save)
            policy: Codec limits and feature switches
            cancel_event: Cancels the open (during key derivation) when set

        Returns:
            Database instance
        """
        policy = policy or DEFAULT_POLICY
        composite_key = derive_composite_key(password, keyfile_data)
        try:
            payload = cls._decrypt(data, composite_key, policy, cancel_event)
            model = cls._load_model(payload, policy)
            if cancel_event is not None and cancel_event.is_set():
                model.zeroize()
                payload.transformed_key.zeroize()
                raise OperationCancelledError()
        except BaseException:
            composite_key.zeroize()
            raise

        db = cls(model, payload.header, policy)
        db._composite_key = composite_key
        db._transformed_key = payload.transformed_key
        db._transformed_params = _kdf_params_of(payload.header)
        db._filepath = Path(filepath) if filepath is not None else None
        logger.debug(
            "Opened KDBX %d.%d database",
            payload.header.version,
            payload.header.version_minor,
        )
        return db

    @classmethod
    def open_in_background(
        cls,
        filepath: str | Path,
        password: str | None = None,
        keyfile: str | Path | None = None,
        *,
        policy: CodecPolicy | None = None,
        executor: Executor | None = None,
    ) -> PendingOpen:
        """Open a database on a worker thread.

        The returned handle can cancel the open while the KDF runs.

        Args:
            filepath: Path to the .kdbx file
            password: Database password
            keyfile: Path to keyfile (optional)
            policy: Codec limits and feature switches
            executor: Executor to run on (default: a private single thread)

        Returns:
            PendingOpen handle
        """
        cancel_event = threading.Event()
        own_executor = executor is None
        if executor is None:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kdbx-open")
        try:
            future = executor.submit(
                cls.open,
                filepath,
                password,
                keyfile,
                policy=policy,
                cancel_event=cancel_event,
            )
        finally:
            if own_executor:
                executor.shutdown(wait=False)
        return PendingOpen(future, cancel_event)

    @staticmethod
    def _decrypt(
        data: bytes,
        composite_key: SecureBytes,
        policy: CodecPolicy,
        cancel_event: threading.Event | None,
    ) -> DecryptedPayload:
        header, _ = KdbxHeader.parse(data)
        if header.version == KdbxVersion.KDBX3:
            if not policy.allow_legacy:
                raise UnsupportedError(
                    "KDBX 3 databases are not supported; "
                    "open with CodecPolicy(allow_legacy=True)"
                )
            return read_kdbx3(data, composite_key, policy=policy, cancel_event=cancel_event)
        return read_kdbx4(data, composite_key, policy=policy, cancel_event=cancel_event)

    @staticmethod
    def _load_model(payload: DecryptedPayload, policy: CodecPolicy) -> DatabaseModel:
        inner = payload.inner_header
        try:
            stream_cipher = None
            if inner.random_stream_id != InnerStreamId.NONE:
                stream_cipher = ProtectedStreamCipher(
                    inner.random_stream_id, inner.random_stream_key
                )
            binaries = BinaryPool(
                Binary(data=data, protected=protected) for protected, data in inner.binaries
            )
            return XmlModelMapper(stream_cipher, policy).parse(payload.xml_data, binaries)
        except BaseException:
            payload.transformed_key.zeroize()
            raise

    def reload(self) -> None:
        """Re-read the database from its file with the current credentials.

        On failure the database is closed and the error propagates.

        Raises:
            ValueError: If the database has no file path
        """
        with self._lock:
            self._ensure_open()
            if self._filepath is None:
                raise ValueError("Database has no file to reload from")
            if self._composite_key is None:
                raise MissingCredentialsError()

            try:
                data = self._filepath.read_bytes()
                payload = self._decrypt(data, self._composite_key, self._policy, None)
                model = self._load_model(payload, self._policy)
            except BaseException:
                self.close()
                raise

            self._model.zeroize()
            self._model.binaries.clear()
            self._forget_transformed_key()
            self._model = model
            self._header = payload.header
            self._legacy = payload.header.version == KdbxVersion.KDBX3
            self._transformed_key = payload.transformed_key
            self._transformed_params = _kdf_params_of(payload.header)
            logger.debug("Reloaded database from %s", self._filepath)

    # --- Creating databases ---

    @classmethod
    def create(
        cls,
        filepath: str | Path | None = None,
        password: str | None = None,
        keyfile: str | Path | None = None,
        database_name: str = "Database",
        cipher: Cipher = Cipher.AES256_CBC,
        kdf_config: KdfParameters | None = None,
        policy: CodecPolicy | None = None,
    ) -> Database:
        """Create a new KDBX database.

        Args:
            filepath: Path to save the database (optional)
            password: Database password
            keyfile: Path to keyfile (optional)
            database_name: Name for the database
            cipher: Encryption cipher to use
            kdf_config: KDF parameters (default: Argon2Config.default())
            policy: Codec limits and feature switches

        Returns:
            New Database instance

        Raises:
            MissingCredentialsError: If neither password nor keyfile is given
            ValueError: If the KDF parameters are below the enforced minimums
        """
        policy = policy or DEFAULT_POLICY
        kdf_config = kdf_config or Argon2Config.default()
        _check_kdf_config(kdf_config, policy)

        composite_key = derive_composite_key(password, _read_keyfile(keyfile))

        # Create root group and recycle bin
        root_group = Group.create_root(database_name)
        recycle_bin = _new_recycle_bin()
        root_group.add_subgroup(recycle_bin)

        now = utc_now()
        meta = Meta(
            database_name=database_name,
            database_name_changed=now,
            master_key_changed=now,
            recycle_bin_enabled=True,
            recycle_bin_uuid=recycle_bin.uuid,
            recycle_bin_changed=now,
            settings_changed=now,
        )

        db = cls(
            DatabaseModel(meta=meta, root_group=root_group),
            KdbxHeader.create(cipher, kdf_config),
            policy,
        )
        db._composite_key = composite_key
        if filepath:
            db._filepath = Path(filepath)

        return db

    # --- Saving databases ---

    def save(
        self,
        filepath: str | Path | None = None,
        *,
        kdf_config: KdfParameters | None = None,
        cipher: Cipher | None = None,
        allow_upgrade: bool = False,
    ) -> None:
        """Save the database to a file.

        The file is written to a temporary file in the same directory,
        flushed to disk and then renamed over the target, so a failed save
        leaves the previous file intact.

        Args:
            filepath: Path to save to (uses original path if not specified)
            kdf_config: New KDF parameters (default: keep the current ones)
            cipher: New outer cipher (default: keep the current one)
            allow_upgrade: Permit writing a KDBX 3 database as KDBX 4

        Raises:
            ValueError: If no filepath specified and database wasn't opened from file
            LegacyUpgradeRequired: For KDBX 3 databases without allow_upgrade
        """
        with self._lock:
            if filepath:
                target = Path(filepath)
            elif self._filepath is None:
                raise ValueError("No filepath specified and database wasn't opened from file")
            else:
                target = self._filepath

            data, header = self._serialize(kdf_config, cipher, allow_upgrade)
            _write_atomic(target, data)

            self._header = header
            self._legacy = False
            self._filepath = target
            logger.debug("Saved %d bytes to %s", len(data), target)

    def to_bytes(
        self,
        *,
        kdf_config: KdfParameters | None = None,
        cipher: Cipher | None = None,
        allow_upgrade: bool = False,
    ) -> bytes:
        """Serialize the database to KDBX 4 format.

        Every call uses a fresh master seed, IV and inner stream key. The
        KDF only runs when its parameters differ from the cached ones.

        Returns:
            KDBX file contents as bytes

        Raises:
            MissingCredentialsError: If no credentials are set
            LegacyUpgradeRequired: For KDBX 3 databases without allow_upgrade
        """
        data, _ = self._serialize(kdf_config, cipher, allow_upgrade)
        return data

    def _serialize(
        self,
        kdf_config: KdfParameters | None,
        cipher: Cipher | None,
        allow_upgrade: bool,
    ) -> tuple[bytes, KdbxHeader]:
        with self._lock:
            self._ensure_open()
            if self._legacy and not allow_upgrade:
                raise LegacyUpgradeRequired()
            if self._composite_key is None:
                raise MissingCredentialsError()
            if kdf_config is not None:
                _check_kdf_config(kdf_config, self._policy)

            header = self._header.regenerate(cipher=cipher, kdf_config=kdf_config)
            transformed_key = self._transformed_key_for(header)

            binaries, binary_ids = self._model.binaries.compact(self._iter_binary_refs())
            stream_key = secure_random_bytes(INNER_STREAM_KEY_SIZE)
            mapper = XmlModelMapper(
                ProtectedStreamCipher(InnerStreamId.CHACHA20, stream_key), self._policy
            )
            xml_data = mapper.build(self._model, binary_ids)

            inner_header = InnerHeader(
                random_stream_id=InnerStreamId.CHACHA20,
                random_stream_key=stream_key,
                binaries=[(binary.protected, binary.data) for binary in binaries],
            )
            data = write_kdbx4(
                header, inner_header, xml_data, transformed_key, policy=self._policy
            )
            return data, header

    def _transformed_key_for(self, header: KdbxHeader) -> SecureBytes:
        """Return the KDF output for ``header``, deriving it only when needed."""
        if (
            self._transformed_key is not None
            and self._transformed_params is not None
            and header.kdf_parameters == self._transformed_params
        ):
            return self._transformed_key

        if self._composite_key is None:
            raise MissingCredentialsError()
        # Parameters were validated when they were chosen
        engine = KdfEngine(enforce_minimums=False)
        transformed_key = engine.derive(self._composite_key.data, header.kdf_config)
        self._forget_transformed_key()
        self._transformed_key = transformed_key
        self._transformed_params = header.kdf_parameters
        return transformed_key

    def _iter_binary_refs(self) -> Iterator[int]:
        for entry in self._model.root_group.iter_entries():
            for binary_ref in entry.binaries:
                yield binary_ref.ref
            for history_entry in entry.history:
                for binary_ref in history_entry.binaries:
                    yield binary_ref.ref

    def set_credentials(
        self,
        password: str | None = None,
        keyfile_data: bytes | None = None,
    ) -> None:
        """Set or update database credentials.

        The new credentials take effect on the next save.

        Args:
            password: New password (None to remove)
            keyfile_data: New keyfile contents (None to remove)

        Raises:
            MissingCredentialsError: If both password and keyfile are None
        """
        composite_key = derive_composite_key(password, keyfile_data)
        with self._lock:
            self._ensure_open()
            self._wipe_keys()
            self._composite_key = composite_key
            self._model.meta.master_key_changed = utc_now()

    # --- Field access ---

    def decrypt_field(self, entry: Entry, key: str) -> SecureBytes:
        """Reveal a field value into a caller-owned buffer.

        The caller must release the buffer (``zeroize()`` or ``with``).

        Raises:
            KeyError: If the entry has no such field
        """
        with self._lock:
            self._ensure_open()
            string_field = entry.strings.get(key)
            if string_field is None:
                raise KeyError(key)
            return string_field.reveal()

    def set_field(
        self,
        entry: Entry,
        key: str,
        value: str,
        protected: bool | None = None,
    ) -> None:
        """Set a field value, creating the field if needed.

        Args:
            entry: Entry to modify
            key: Field name
            value: New value
            protected: Protection flag (default: keep the field's flag, or
                use the memory protection policy for new fields)
        """
        with self._lock:
            self._ensure_open()
            string_field = entry.strings.get(key)
            if string_field is None:
                if protected is None:
                    protected = self._model.meta.memory_protection.get(key, False)
                entry.set_custom_property(key, value, protected=protected)
            else:
                if protected is not None:
                    string_field.protected = protected
                string_field.value = value
            entry.touch(modify=True)

    def remove_field(self, entry: Entry, key: str) -> None:
        """Remove a field from an entry.

        Raises:
            KeyError: If the entry has no such field
        """
        with self._lock:
            self._ensure_open()
            string_field = entry.strings.pop(key)
            string_field.zeroize()
            entry.touch(modify=True)

    def apply_protection_policy(self, entry: Entry) -> None:
        """Apply the database's memory protection policy to an entry.

        Fields the policy names are switched to protected; fields the
        policy leaves unprotected keep their current flag. The same rule
        is applied to every entry on save.

        Args:
            entry: Entry to apply policy to
        """
        for key, string_field in entry.strings.items():
            if self._model.meta.memory_protection.get(key, False):
                string_field.protected = True

    # --- Tree mutations ---

    def add_group(
        self,
        name: str,
        parent: Group | None = None,
        *,
        notes: str | None = None,
        icon_id: int = 48,
        position: int | None = None,
    ) -> Group:
        """Create a group under ``parent`` (default: the root group).

        Returns:
            The new group
        """
        with self._lock:
            self._ensure_open()
            parent = parent or self._model.root_group
            group = Group(name=name, notes=notes, icon_id=icon_id)
            return parent.add_subgroup(group, position=position)

    def add_entry(
        self,
        parent: Group | None = None,
        *,
        title: str | None = None,
        username: str | None = None,
        password: str | None = None,
        url: str | None = None,
        notes: str | None = None,
        tags: list[str] | None = None,
        entry: Entry | None = None,
        position: int | None = None,
    ) -> Entry:
        """Add an entry under ``parent`` (default: the root group).

        Either pass a prepared ``entry`` or the standard field values.

        Args:
            parent: Group to add to
            title: Entry title
            username: User name
            password: Password (stored protected)
            url: URL
            notes: Notes
            tags: Tags
            entry: Existing detached entry to insert instead
            position: Index in the parent's children (default: append)

        Returns:
            The added entry

        Raises:
            DuplicateUuidError: If the entry's UUID is already in the tree
        """
        with self._lock:
            self._ensure_open()
            parent = parent or self._model.root_group
            if entry is None:
                entry = Entry.create(
                    title=title,
                    username=username,
                    password=password,
                    url=url,
                    notes=notes,
                    tags=tags,
                )
            self.apply_protection_policy(entry)
            return parent.add_entry(entry, position=position)

    def update_entry(
        self,
        entry: Entry,
        *,
        title: str | None = None,
        username: str | None = None,
        password: str | None = None,
        url: str | None = None,
        notes: str | None = None,
        tags: list[str] | None = None,
        fields: dict[str, str] | None = None,
    ) -> Entry:
        """Edit an entry, keeping its previous state in the history.

        The current state is snapshotted first; the history is then
        trimmed to the database's history limits. Arguments left as None
        are not changed.

        Returns:
            The updated entry
        """
        with self._lock:
            self._ensure_open()
            meta = self._model.meta
            entry.save_history(meta.history_max_items, meta.history_max_size)

            if title is not None:
                entry.title = title
            if username is not None:
                entry.username = username
            if password is not None:
                entry.password = password
            if url is not None:
                entry.url = url
            if notes is not None:
                entry.notes = notes
            if tags is not None:
                entry.tags = list(tags)
            for key, value in (fields or {}).items():
                string_field = entry.strings.get(key)
                if string_field is None:
                    entry.set_custom_property(
                        key, value, protected=meta.memory_protection.get(key, False)
                    )
                else:
                    string_field.value = value

            entry.touch(modify=True)
            return entry

    def move_entry(
        self, entry: Entry, destination: Group, position: int | None = None
    ) -> None:
        """Move an entry to ``destination`` (or reorder it within its group)."""
        with self._lock:
            self._ensure_open()
            parent = entry.parent
            if parent is None:
                raise EntryNotFoundError("Entry is not in this database")
            if parent is destination:
                parent._detach(entry)
                parent._attach(entry, position)
                parent.touch(modify=True)
            else:
                entry.move_to(destination, position=position)

    def move_group(
        self, group: Group, destination: Group, position: int | None = None
    ) -> None:
        """Move a group to ``destination`` (or reorder it within its parent).

        Raises:
            ValueError: For the root group or a move into its own subtree
        """
        with self._lock:
            self._ensure_open()
            parent = group.parent
            if parent is not None and parent is destination:
                parent._detach(group)
                parent._attach(group, position)
                parent.touch(modify=True)
            else:
                group.move_to(destination, position=position)

    def delete_entry(self, entry: Entry, permanent: bool = False) -> None:
        """Delete an entry.

        With the recycle bin enabled the entry is moved there first;
        deleting an entry that is already in the recycle bin, or passing
        ``permanent=True``, removes it and records a deleted object.
        """
        with self._lock:
            self._ensure_open()
            parent = entry.parent
            if parent is None:
                raise EntryNotFoundError("Entry is not in this database")

            use_bin = not permanent and self._model.meta.recycle_bin_enabled
            if use_bin and not self.is_in_recycle_bin(entry):
                entry.move_to(self._get_or_create_recycle_bin())
                return

            parent.remove_entry(entry)
            self._record_deleted([entry.uuid])
            entry.zeroize()

    def delete_group(self, group: Group, permanent: bool = False) -> None:
        """Delete a group and everything below it.

        Raises:
            ValueError: For the root group, or when moving the recycle bin
                into itself
        """
        with self._lock:
            self._ensure_open()
            if group.is_root_group:
                raise ValueError("Cannot delete the root group")
            parent = group.parent
            if parent is None:
                raise GroupNotFoundError("Group is not in this database")

            recycle_bin = self.recycle_bin
            use_bin = not permanent and self._model.meta.recycle_bin_enabled
            if use_bin and group is recycle_bin:
                raise ValueError("Cannot move the recycle bin into itself")
            if use_bin and not self.is_in_recycle_bin(group):
                group.move_to(self._get_or_create_recycle_bin())
                return

            parent.remove_subgroup(group)
            self._record_deleted(list(group.iter_uuids()))
            group.zeroize()
            if group is recycle_bin:
                self._model.meta.recycle_bin_uuid = None
                self._model.meta.recycle_bin_changed = utc_now()

    def empty_recycle_bin(self) -> None:
        """Permanently delete everything in the recycle bin."""
        with self._lock:
            recycle_bin = self.recycle_bin
            if recycle_bin is None:
                return
            for child in list(recycle_bin.children):
                if isinstance(child, Group):
                    self.delete_group(child, permanent=True)
                else:
                    self.delete_entry(child, permanent=True)

    def is_in_recycle_bin(self, item: Entry | Group) -> bool:
        """Whether ``item`` is somewhere below the recycle bin."""
        recycle_bin = self.recycle_bin
        return recycle_bin is not None and recycle_bin.contains(item)

    def _get_or_create_recycle_bin(self) -> Group:
        recycle_bin = self.recycle_bin
        if recycle_bin is None:
            recycle_bin = self._model.root_group.add_subgroup(_new_recycle_bin())
            self._model.meta.recycle_bin_uuid = recycle_bin.uuid
            self._model.meta.recycle_bin_changed = utc_now()
            logger.debug("Created recycle bin")
        return recycle_bin

    def _record_deleted(self, uuids: list[uuid_module.UUID]) -> None:
        now = utc_now()
        self._model.deleted_objects.extend(
            DeletedObject(uuid=item_uuid, deletion_time=now) for item_uuid in uuids
        )

    # --- Search operations ---

    def find_entries(
        self,
        title: str | None = None,
        username: str | None = None,
        url: str | None = None,
        tags: list[str] | None = None,
        uuid: uuid_module.UUID | None = None,
        recursive: bool = True,
    ) -> list[Entry]:
        """Find entries matching criteria.

        Args:
            title: Match entries with this title
            username: Match entries with this username
            url: Match entries with this URL
            tags: Match entries with all these tags
            uuid: Match entry with this UUID
            recursive: Search in subgroups

        Returns:
            List of matching entries
        """
        if uuid is not None:
            entry = self.root_group.find_entry_by_uuid(uuid, recursive=recursive)
            return [entry] if entry else []

        return self.root_group.find_entries(
            title=title,
            username=username,
            url=url,
            tags=tags,
            recursive=recursive,
        )

    def find_groups(
        self,
        name: str | None = None,
        uuid: uuid_module.UUID | None = None,
        recursive: bool = True,
    ) -> list[Group]:
        """Find groups matching criteria.

        Returns:
            List of matching groups
        """
        if uuid is not None:
            group = self.root_group.find_group_by_uuid(uuid, recursive=recursive)
            return [group] if group else []

        return self.root_group.find_groups(name=name, recursive=recursive)

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

        Returns:
            List of matching entries
        """
        return self.root_group.find_entries_contains(
            title=title,
            username=username,
            url=url,
            notes=notes,
            recursive=recursive,
            case_sensitive=case_sensitive,
        )

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

        Raises:
            re.error: If any pattern is not a valid regex
        """
        return self.root_group.find_entries_regex(
            title=title,
            username=username,
            url=url,
            notes=notes,
            recursive=recursive,
            case_sensitive=case_sensitive,
        )

    def get_entry(self, uuid: uuid_module.UUID) -> Entry:
        """Get an entry by UUID.

        Raises:
            EntryNotFoundError: If no entry has this UUID
        """
        entry = self.root_group.find_entry_by_uuid(uuid)
        if entry is None:
            raise EntryNotFoundError(f"Entry not found: {uuid}")
        return entry

    def get_group(self, uuid: uuid_module.UUID) -> Group:
        """Get a group by UUID.

        Raises:
            GroupNotFoundError: If no group has this UUID
        """
        group = self.root_group.find_group_by_uuid(uuid)
        if group is None:
            raise GroupNotFoundError(f"Group not found: {uuid}")
        return group

    def iter_entries(self, recursive: bool = True) -> Iterator[Entry]:
        """Iterate over all entries in the database, in document order."""
        yield from self.root_group.iter_entries(recursive=recursive)

    def iter_groups(self, recursive: bool = True) -> Iterator[Group]:
        """Iterate over all groups in the database (root excluded)."""
        yield from self.root_group.iter_groups(recursive=recursive)

    # --- Attachments ---

    @property
    def attachments(self) -> list[Attachment]:
        """All attachments referenced by current entries, in document order."""
        result = []
        pool = self.binaries
        for entry in self.iter_entries():
            for binary_ref in entry.binaries:
                binary = pool.get(binary_ref.ref)
                if binary is None:
                    continue
                result.append(
                    Attachment(
                        filename=binary_ref.key,
                        id=binary_ref.ref,
                        data=binary.data,
                        protected=binary.protected,
                    )
                )
        return result

    def get_attachment(self, entry: Entry, name: str) -> bytes | None:
        """Get an attachment from an entry by filename.

        Args:
            entry: Entry to get attachment from
            name: Filename of the attachment

        Returns:
            Attachment data or None if not found
        """
        for binary_ref in entry.binaries:
            if binary_ref.key == name:
                binary = self.binaries.get(binary_ref.ref)
                return binary.data if binary is not None else None
        return None

    def add_attachment(
        self, entry: Entry, name: str, data: bytes, protected: bool = True
    ) -> None:
        """Add an attachment to an entry.

        An existing attachment with the same name is replaced. Identical
        payloads share one pool slot.

        Args:
            entry: Entry to add attachment to
            name: Filename for the attachment
            data: Attachment data
            protected: Whether the attachment should be memory-protected

        Raises:
            ValueError: If data exceeds the policy's maximum binary size
        """
        if len(data) > self._policy.max_binary_size:
            raise ValueError(
                f"Attachment of {len(data)} bytes exceeds the "
                f"{self._policy.max_binary_size} byte limit"
            )
        with self._lock:
            ref = self.binaries.add(data, protected=protected)
            for binary_ref in entry.binaries:
                if binary_ref.key == name:
                    binary_ref.ref = ref
                    break
            else:
                entry.binaries.append(BinaryRef(key=name, ref=ref))
            entry.touch(modify=True)

    def remove_attachment(self, entry: Entry, name: str) -> bool:
        """Remove an attachment from an entry by filename.

        Returns:
            True if removed, False if not found
        """
        with self._lock:
            self._ensure_open()
            for i, binary_ref in enumerate(entry.binaries):
                if binary_ref.key == name:
                    # The pooled payload stays until the next save drops
                    # unreferenced binaries
                    entry.binaries.pop(i)
                    entry.touch(modify=True)
                    return True
            return False

    def list_attachments(self, entry: Entry) -> list[str]:
        """List all attachment filenames for an entry."""
        return [binary_ref.key for binary_ref in entry.binaries]

    def __str__(self) -> str:
        if self._closed:
            return "Database: (closed)"
        entry_count = sum(1 for _ in self.iter_entries())
        group_count = sum(1 for _ in self.iter_groups())
        name = self._model.meta.database_name
        return f'Database: "{name}" ({entry_count} entries, {group_count} groups)'


class PendingOpen:
    """Handle for a database being opened on a worker thread."""

    def __init__(self, future: Future[Database], cancel_event: threading.Event) -> None:
        self._future = future
        self._cancel_event = cancel_event

    def cancel(self) -> None:
        """Request cancellation.

        Key derivation stops at its next checkpoint. A database that
        finished opening regardless is closed, never handed out.
        """
        self._cancel_event.set()
        if not self._future.cancel():
            self._future.add_done_callback(_close_result)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> Database:
        """Wait for the open to finish.

        Raises:
            OperationCancelledError: If cancel() was called
            TimeoutError: If the open did not finish in time
        """
        if self._cancel_event.is_set():
            raise OperationCancelledError()
        return self._future.result(timeout=timeout)


def _close_result(future: Future[Database]) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


def _read_keyfile(keyfile: str | Path | None) -> bytes | None:
    if not keyfile:
        return None
    keyfile_path = Path(keyfile)
    if not keyfile_path.exists():
        raise FileNotFoundError(f"Keyfile not found: {keyfile}")
    return keyfile_path.read_bytes()


def _check_kdf_config(kdf_config: KdfParameters, policy: CodecPolicy) -> None:
    if policy.enforce_kdf_minimums and isinstance(kdf_config, Argon2Config):
        kdf_config.validate_security()


def _kdf_params_of(header: KdbxHeader) -> VariantMap:
    """KDF parameters of a header in their KDBX4 form."""
    if header.kdf_parameters is not None:
        return header.kdf_parameters
    return kdf_parameters_to_variant_map(header.kdf_config)


def _new_recycle_bin() -> Group:
    return Group(
        name=RECYCLE_BIN_NAME,
        icon_id=RECYCLE_BIN_ICON,
        enable_autotype=False,
        enable_searching=False,
    )


def _write_atomic(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` so readers see the old or new file, never a mix."""
    directory = path.parent
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=directory)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
