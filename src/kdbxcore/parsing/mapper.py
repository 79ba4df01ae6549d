"""Mapping between the decrypted KDBX XML document and the object model.

The XML payload looks like::

    <KeePassFile>
      <Meta>...</Meta>
      <Root>
        <Group>...</Group>          root group, entries and groups interleaved
        <DeletedObjects>...</DeletedObjects>
      </Root>
    </KeePassFile>

Protected values (``Protected="True"``) are masked with the inner stream
cipher. The keystream is shared by all of them in document order, so they
are unmasked in a single pre-pass over the whole tree before any model
object is built, straight into ProtectedValue instances. On save the same
happens in reverse after the tree has been built.

Elements the mapper does not understand are kept on the nearest model
object and written back unchanged.
"""

from __future__ import annotations

import base64
import binascii
import copy
import logging
import struct
import uuid as uuid_module
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import cast
from xml.etree.ElementTree import Element, SubElement, tostring

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as DefusedET

from kdbxcore.exceptions import ModelError, PayloadError
from kdbxcore.models import (
    AutoType,
    AutoTypeAssociation,
    Binary,
    BinaryPool,
    BinaryRef,
    CustomDataItem,
    CustomIcon,
    DeletedObject,
    Entry,
    Group,
    HistoryEntry,
    Meta,
    StringField,
    Times,
)
from kdbxcore.models.times import utc_now
from kdbxcore.policy import DEFAULT_POLICY, CodecPolicy
from kdbxcore.security import ProtectedStreamCipher, ProtectedValue, SecureBytes
from kdbxcore.security.memory import wipe

from .compression import decompress
from .header import CompressionType

logger = logging.getLogger(__name__)

# KDBX4 times are seconds since 0001-01-01T00:00:00Z
KDBX_EPOCH = datetime(1, 1, 1, tzinfo=UTC)

_ZERO_UUID = uuid_module.UUID(int=0)


@dataclass
class DatabaseModel:
    """Everything the XML document describes.

    Attributes:
        meta: Database metadata
        root_group: Root of the group tree
        binaries: Attachment pool
        deleted_objects: Deletion tombstones
        unknown_root_elements: Unrecognized children of ``Root``
        unknown_elements: Unrecognized children of ``KeePassFile``
        element_secrets: Protected values found inside preserved unknown
            elements, keyed by element
    """

    meta: Meta
    root_group: Group
    binaries: BinaryPool = field(default_factory=BinaryPool)
    deleted_objects: list[DeletedObject] = field(default_factory=list)
    unknown_root_elements: list[Element] = field(default_factory=list, repr=False)
    unknown_elements: list[Element] = field(default_factory=list, repr=False)
    element_secrets: dict[Element, ProtectedValue] = field(default_factory=dict, repr=False)

    def zeroize(self) -> None:
        """Wipe every protected value the model holds."""
        self.root_group.zeroize()
        for secret in self.element_secrets.values():
            secret.zeroize()
        self.element_secrets.clear()


# --- Value codecs ---


def decode_time(text: str) -> datetime:
    """Decode a KDBX time value.

    KDBX4 uses base64 little-endian int64 seconds since year 1; KDBX3 and
    hand-written files use ISO-8601.

    Raises:
        ModelError: If the value is neither
    """
    text = text.strip()
    if "-" not in text and ":" not in text:
        try:
            raw = base64.b64decode(text, validate=True)
        except binascii.Error:
            raw = b""
        if len(raw) == 8:
            seconds = struct.unpack("<q", raw)[0]
            try:
                return KDBX_EPOCH + timedelta(seconds=seconds)
            except OverflowError as e:
                raise ModelError(f"Time value out of range: {text!r}") from e
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise ModelError(f"Malformed time value: {text!r}") from e
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def encode_time(dt: datetime) -> str:
    """Encode a datetime in the KDBX4 binary time format."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    seconds = (dt - KDBX_EPOCH) // timedelta(seconds=1)
    return base64.b64encode(struct.pack("<q", seconds)).decode("ascii")


def _parse_bool(text: str | None, what: str) -> bool:
    value = (text or "").strip().lower()
    if value == "true":
        return True
    if value == "false":
        return False
    raise ModelError(f"Invalid boolean for {what}: {text!r}")


def _parse_optional_bool(text: str | None, what: str) -> bool | None:
    if text is None or text.strip().lower() in ("", "null"):
        return None
    return _parse_bool(text, what)


def _parse_int(text: str | None, what: str) -> int:
    try:
        return int((text or "").strip())
    except ValueError as e:
        raise ModelError(f"Invalid number for {what}: {text!r}") from e


def _parse_uuid(text: str | None, what: str) -> uuid_module.UUID:
    try:
        raw = base64.b64decode((text or "").strip(), validate=True)
    except binascii.Error as e:
        raise ModelError(f"Invalid UUID for {what}") from e
    if len(raw) != 16:
        raise ModelError(f"Invalid UUID for {what}")
    return uuid_module.UUID(bytes=raw)


def _parse_optional_uuid(text: str | None, what: str) -> uuid_module.UUID | None:
    if not text or not text.strip():
        return None
    value = _parse_uuid(text, what)
    return None if value == _ZERO_UUID else value


def _encode_uuid(value: uuid_module.UUID | None) -> str:
    return base64.b64encode((value or _ZERO_UUID).bytes).decode("ascii")


def _encode_bool(value: bool) -> str:
    return "True" if value else "False"


def _parse_tags(text: str | None) -> list[str]:
    if not text:
        return []
    return [t.strip() for t in text.replace(",", ";").split(";") if t.strip()]


class XmlModelMapper:
    """Converts between KDBX XML and the object model.

    A mapper is bound to one inner stream cipher and therefore to a single
    parse or build: the keystream position advances with every protected
    value.

    Example:
        >>> cipher = ProtectedStreamCipher(inner.random_stream_id, inner.random_stream_key)
        >>> model = XmlModelMapper(cipher).parse(xml_data, binaries)
    """

    def __init__(
        self,
        stream_cipher: ProtectedStreamCipher | None,
        policy: CodecPolicy = DEFAULT_POLICY,
    ) -> None:
        """Initialize the mapper.

        Args:
            stream_cipher: Inner stream cipher; None means protected values
                are stored unmasked (inner stream id 0)
            policy: Codec limits
        """
        self._cipher = stream_cipher
        self._policy = policy
        self._secrets: dict[Element, ProtectedValue] = {}
        self._binaries = BinaryPool()
        self._temporary: list[ProtectedValue] = []
        self._binary_ids: dict[int, int] | None = None
        self._memory_protection: dict[str, bool] = {}
        self._element_secrets: dict[Element, ProtectedValue] = {}

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, xml_data: bytes, binaries: BinaryPool | None = None) -> DatabaseModel:
        """Parse the XML payload.

        Args:
            xml_data: Decrypted XML document
            binaries: Attachment pool from the inner header (KDBX4). KDBX3
                pools in ``Meta/Binaries`` are added to it.

        Raises:
            ModelError: If the document is structurally invalid
            PayloadError: If a KDBX3 pooled binary is corrupt or too large
        """
        try:
            root = DefusedET.fromstring(xml_data)
        except (DefusedET.ParseError, DefusedXmlException) as e:
            raise ModelError("Malformed XML payload") from e
        if root.tag != "KeePassFile":
            raise ModelError("Not a KeePass XML document")

        self._binaries = binaries if binaries is not None else BinaryPool()
        created = self._unmask_protected_values(root)
        try:
            model = self._parse_document(root)
        except BaseException:
            for secret in created:
                secret.zeroize()
            raise
        finally:
            remaining = self._secrets
            self._secrets = {}

        # Secrets not consumed by a string field live in preserved elements
        model.element_secrets = remaining
        self._check_binary_refs(model)
        logger.debug("Mapped XML: %d protected values", len(created))
        return model

    def _unmask_protected_values(self, root: Element) -> list[ProtectedValue]:
        """Unmask all protected values in document order.

        Each ciphertext consumes the next ``len`` keystream bytes; values must
        therefore be processed in exactly the order they appear.
        """
        created: list[ProtectedValue] = []
        try:
            for elem in root.iter():
                if (elem.get("Protected") or "").lower() != "true":
                    continue
                try:
                    ciphertext = base64.b64decode((elem.text or "").strip(), validate=True)
                except binascii.Error as e:
                    raise ModelError("Invalid base64 in protected value") from e

                if self._cipher is not None:
                    offset = self._cipher.position
                    plaintext = bytearray(len(ciphertext))
                    self._cipher.decrypt(ciphertext, output=plaintext)
                else:
                    offset = None
                    plaintext = bytearray(ciphertext)
                try:
                    secret = ProtectedValue.from_bytes(plaintext, stream_offset=offset)
                finally:
                    wipe(plaintext)
                created.append(secret)
                self._secrets[elem] = secret
        except BaseException:
            for secret in created:
                secret.zeroize()
            self._secrets = {}
            raise
        return created

    def _parse_document(self, root: Element) -> DatabaseModel:
        meta = Meta()
        root_group: Group | None = None
        deleted_objects: list[DeletedObject] = []
        unknown_root: list[Element] = []
        unknown: list[Element] = []

        for child in root:
            if child.tag == "Meta":
                meta = self._parse_meta(child)
            elif child.tag == "Root":
                for item in child:
                    if item.tag == "Group" and root_group is None:
                        root_group = self._parse_group(item)
                    elif item.tag == "DeletedObjects":
                        deleted_objects = self._parse_deleted_objects(item)
                    else:
                        unknown_root.append(item)
            else:
                unknown.append(child)

        if root_group is None:
            raise ModelError("Missing Root/Group element")
        root_group._is_root = True

        seen: set[uuid_module.UUID] = set()
        for item_uuid in root_group.iter_uuids():
            if item_uuid in seen:
                raise ModelError(f"Duplicate UUID in document: {item_uuid}")
            seen.add(item_uuid)

        return DatabaseModel(
            meta=meta,
            root_group=root_group,
            binaries=self._binaries,
            deleted_objects=deleted_objects,
            unknown_root_elements=unknown_root,
            unknown_elements=unknown,
        )

    def _parse_meta(self, elem: Element) -> Meta:
        meta = Meta()
        for child in elem:
            tag, text = child.tag, child.text
            if tag == "Generator":
                meta.generator = text or ""
            elif tag == "HeaderHash":
                pass  # KDBX3 only; superseded by the header HMAC
            elif tag == "DatabaseName":
                meta.database_name = text or ""
            elif tag == "DatabaseNameChanged":
                meta.database_name_changed = self._parse_time(text)
            elif tag == "DatabaseDescription":
                meta.database_description = text or ""
            elif tag == "DatabaseDescriptionChanged":
                meta.database_description_changed = self._parse_time(text)
            elif tag == "DefaultUserName":
                meta.default_username = text or ""
            elif tag == "DefaultUserNameChanged":
                meta.default_username_changed = self._parse_time(text)
            elif tag == "MaintenanceHistoryDays":
                meta.maintenance_history_days = _parse_int(text, tag)
            elif tag == "Color":
                meta.color = text or None
            elif tag == "MasterKeyChanged":
                meta.master_key_changed = self._parse_time(text)
            elif tag == "MasterKeyChangeRec":
                meta.master_key_change_rec = _parse_int(text, tag)
            elif tag == "MasterKeyChangeForce":
                meta.master_key_change_force = _parse_int(text, tag)
            elif tag == "MasterKeyChangeForceOnce":
                meta.master_key_change_force_once = _parse_bool(text, tag)
            elif tag == "MemoryProtection":
                for item in child:
                    if item.tag.startswith("Protect"):
                        meta.memory_protection[item.tag[len("Protect") :]] = _parse_bool(
                            item.text, item.tag
                        )
            elif tag == "CustomIcons":
                meta.custom_icons = [self._parse_custom_icon(icon) for icon in child]
            elif tag == "RecycleBinEnabled":
                meta.recycle_bin_enabled = _parse_bool(text, tag)
            elif tag == "RecycleBinUUID":
                meta.recycle_bin_uuid = _parse_optional_uuid(text, tag)
            elif tag == "RecycleBinChanged":
                meta.recycle_bin_changed = self._parse_time(text)
            elif tag == "EntryTemplatesGroup":
                meta.entry_templates_group = _parse_optional_uuid(text, tag)
            elif tag == "EntryTemplatesGroupChanged":
                meta.entry_templates_group_changed = self._parse_time(text)
            elif tag == "LastSelectedGroup":
                meta.last_selected_group = _parse_optional_uuid(text, tag)
            elif tag == "LastTopVisibleGroup":
                meta.last_top_visible_group = _parse_optional_uuid(text, tag)
            elif tag == "HistoryMaxItems":
                meta.history_max_items = _parse_int(text, tag)
            elif tag == "HistoryMaxSize":
                meta.history_max_size = _parse_int(text, tag)
            elif tag == "SettingsChanged":
                meta.settings_changed = self._parse_time(text)
            elif tag == "Binaries":
                self._parse_meta_binaries(child)
            elif tag == "CustomData":
                meta.custom_data = self._parse_custom_data(child)
            else:
                meta.unknown_elements.append(child)
        return meta

    def _parse_custom_icon(self, elem: Element) -> CustomIcon:
        icon_uuid = _parse_uuid(elem.findtext("UUID"), "custom icon")
        try:
            data = base64.b64decode((elem.findtext("Data") or "").strip(), validate=True)
        except binascii.Error as e:
            raise ModelError("Invalid custom icon data") from e
        modified = elem.findtext("LastModificationTime")
        return CustomIcon(
            uuid=icon_uuid,
            data=data,
            name=elem.findtext("Name"),
            last_modification_time=self._parse_time(modified) if modified else None,
        )

    def _parse_meta_binaries(self, elem: Element) -> None:
        """Load a KDBX3 ``Meta/Binaries`` pool."""
        for item in elem.findall("Binary"):
            ref = _parse_int(item.get("ID"), "binary ID")
            protected = item in self._secrets
            data = self._element_bytes(item)
            if (item.get("Compressed") or "").lower() == "true":
                data = decompress(data, CompressionType.GZIP)
            if len(data) > self._policy.max_binary_size:
                raise PayloadError(
                    f"Binary attachment too large: {len(data)} bytes "
                    f"(max {self._policy.max_binary_size} bytes)"
                )
            self._binaries.set(ref, Binary(data=data, protected=protected))

    def _element_bytes(self, elem: Element) -> bytes:
        """Raw bytes of a base64 element, unmasked if it was protected."""
        secret = self._secrets.pop(elem, None)
        if secret is not None:
            with secret.reveal() as plaintext:
                data = plaintext.data
            secret.zeroize()
            return data
        try:
            return base64.b64decode((elem.text or "").strip(), validate=True)
        except binascii.Error as e:
            raise ModelError(f"Invalid base64 in {elem.tag}") from e

    def _parse_custom_data(self, elem: Element) -> dict[str, CustomDataItem]:
        items: dict[str, CustomDataItem] = {}
        for item in elem.findall("Item"):
            key = item.findtext("Key")
            if key is None:
                raise ModelError("Custom data item without key")
            modified = item.findtext("LastModificationTime")
            items[key] = CustomDataItem(
                value=item.findtext("Value") or "",
                last_modification_time=self._parse_time(modified) if modified else None,
            )
        return items

    def _parse_deleted_objects(self, elem: Element) -> list[DeletedObject]:
        result = []
        for item in elem.findall("DeletedObject"):
            deleted_at = item.findtext("DeletionTime")
            result.append(
                DeletedObject(
                    uuid=_parse_uuid(item.findtext("UUID"), "deleted object"),
                    deletion_time=self._parse_time(deleted_at) if deleted_at else utc_now(),
                )
            )
        return result

    def _parse_time(self, text: str | None) -> datetime:
        if not text:
            raise ModelError("Empty time value")
        return decode_time(text)

    def _parse_times(self, elem: Element) -> Times:
        times = Times.create_new()
        for child in elem:
            tag, text = child.tag, child.text
            if tag == "CreationTime":
                times.creation_time = self._parse_time(text)
            elif tag == "LastModificationTime":
                times.last_modification_time = self._parse_time(text)
            elif tag == "LastAccessTime":
                times.last_access_time = self._parse_time(text)
            elif tag == "ExpiryTime":
                times.expiry_time = self._parse_time(text)
            elif tag == "Expires":
                times.expires = _parse_bool(text, tag)
            elif tag == "UsageCount":
                times.usage_count = _parse_int(text, tag)
            elif tag == "LocationChanged":
                times.location_changed = self._parse_time(text)
        return times

    def _parse_group(self, elem: Element) -> Group:
        """Parse a Group element, keeping entries and subgroups in order."""
        group = Group()
        has_uuid = False
        for child in elem:
            tag, text = child.tag, child.text
            if tag == "UUID":
                group.uuid = _parse_uuid(text, "group")
                has_uuid = True
            elif tag == "Name":
                group.name = text or ""
            elif tag == "Notes":
                group.notes = text or ""
            elif tag == "IconID":
                group.icon_id = _parse_int(text, tag)
            elif tag == "CustomIconUUID":
                group.custom_icon_uuid = _parse_optional_uuid(text, tag)
            elif tag == "Times":
                group.times = self._parse_times(child)
            elif tag == "IsExpanded":
                group.is_expanded = _parse_bool(text, tag)
            elif tag == "DefaultAutoTypeSequence":
                group.default_autotype_sequence = text or None
            elif tag == "EnableAutoType":
                group.enable_autotype = _parse_optional_bool(text, tag)
            elif tag == "EnableSearching":
                group.enable_searching = _parse_optional_bool(text, tag)
            elif tag == "LastTopVisibleEntry":
                group.last_top_visible_entry = _parse_optional_uuid(text, tag)
            elif tag == "PreviousParentGroup":
                group.previous_parent_group = _parse_optional_uuid(text, tag)
            elif tag == "Tags":
                group.tags = _parse_tags(text)
            elif tag == "CustomData":
                group.custom_data = self._parse_custom_data(child)
            elif tag == "Entry":
                group._attach(self._parse_entry(child, Entry), None)
            elif tag == "Group":
                group._attach(self._parse_group(child), None)
            else:
                group.unknown_elements.append(child)
        if not has_uuid:
            raise ModelError("Group without UUID")
        return group

    def _parse_entry(self, elem: Element, cls: type[Entry]) -> Entry:
        """Parse an Entry element into ``cls`` (Entry or HistoryEntry)."""
        entry = cls()
        has_uuid = False
        for child in elem:
            tag, text = child.tag, child.text
            if tag == "UUID":
                entry.uuid = _parse_uuid(text, "entry")
                has_uuid = True
            elif tag == "IconID":
                entry.icon_id = _parse_int(text, tag)
            elif tag == "CustomIconUUID":
                entry.custom_icon_uuid = _parse_optional_uuid(text, tag)
            elif tag == "ForegroundColor":
                entry.foreground_color = text or None
            elif tag == "BackgroundColor":
                entry.background_color = text or None
            elif tag == "OverrideURL":
                entry.override_url = text or None
            elif tag == "QualityCheck":
                entry.quality_check = _parse_bool(text, tag)
            elif tag == "Tags":
                entry.tags = _parse_tags(text)
            elif tag == "PreviousParentGroup":
                entry.previous_parent_group = _parse_optional_uuid(text, tag)
            elif tag == "Times":
                entry.times = self._parse_times(child)
            elif tag == "CustomData":
                entry.custom_data = self._parse_custom_data(child)
            elif tag == "String":
                string_field = self._parse_string(child)
                if string_field.key in entry.strings:
                    raise ModelError("Duplicate string field key in entry")
                entry.strings[string_field.key] = string_field
            elif tag == "Binary":
                entry.binaries.append(self._parse_binary_ref(child))
            elif tag == "AutoType":
                entry.autotype = self._parse_autotype(child)
            elif tag == "History":
                if cls is HistoryEntry:
                    raise ModelError("History entry with nested history")
                for hist_elem in child.findall("Entry"):
                    entry.history.append(
                        cast(HistoryEntry, self._parse_entry(hist_elem, HistoryEntry))
                    )
            else:
                entry.unknown_elements.append(child)
        if not has_uuid:
            raise ModelError("Entry without UUID")
        return entry

    def _parse_string(self, elem: Element) -> StringField:
        key = elem.findtext("Key")
        if key is None:
            raise ModelError("String field without key")
        value_elem = elem.find("Value")
        if value_elem is None:
            return StringField(key)

        secret = self._secrets.pop(value_elem, None)
        if secret is not None:
            if not secret.is_utf8():
                raise ModelError("Invalid UTF-8 in protected value")
            return StringField.from_protected_value(key, secret)

        # KDBX3 writers may request protection without masking the value
        protect = (value_elem.get("ProtectInMemory") or "").lower() == "true"
        return StringField(key, value_elem.text or "", protected=protect)

    def _parse_binary_ref(self, elem: Element) -> BinaryRef:
        key = elem.findtext("Key")
        value_elem = elem.find("Value")
        if key is None or value_elem is None:
            raise ModelError("Binary reference without key or value")
        ref = value_elem.get("Ref")
        if ref is not None:
            return BinaryRef(key=key, ref=_parse_int(ref, "binary Ref"))
        # Inline attachment (old KDBX3 writers): move it into the pool
        protected = value_elem in self._secrets
        return BinaryRef(key=key, ref=self._binaries.add(self._element_bytes(value_elem), protected))

    def _parse_autotype(self, elem: Element) -> AutoType:
        autotype = AutoType()
        for child in elem:
            tag, text = child.tag, child.text
            if tag == "Enabled":
                autotype.enabled = _parse_bool(text, "AutoType/Enabled")
            elif tag == "DataTransferObfuscation":
                autotype.obfuscation = _parse_int(text, tag)
            elif tag == "DefaultSequence":
                autotype.sequence = text or None
            elif tag == "Association":
                autotype.associations.append(
                    AutoTypeAssociation(
                        window=child.findtext("Window") or "",
                        sequence=child.findtext("KeystrokeSequence") or "",
                    )
                )
        return autotype

    def _check_binary_refs(self, model: DatabaseModel) -> None:
        for entry in model.root_group.iter_entries():
            for item in (entry, *entry.history):
                for binary_ref in item.binaries:
                    if binary_ref.ref not in model.binaries:
                        logger.warning(
                            "Entry %s references missing binary %d", entry.uuid, binary_ref.ref
                        )

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def build(self, model: DatabaseModel, binary_ids: dict[int, int] | None = None) -> bytes:
        """Serialize the model to KDBX4 XML with protected values masked.

        Args:
            model: Database contents
            binary_ids: Old pool id -> id written to the file. References
                to ids missing from the mapping are dropped with a warning.
                None writes ids unchanged.

        Returns:
            UTF-8 XML document
        """
        self._secrets = {}
        self._temporary = []
        self._binary_ids = binary_ids
        self._memory_protection = model.meta.memory_protection
        self._element_secrets = model.element_secrets
        try:
            root = Element("KeePassFile")
            self._build_meta(SubElement(root, "Meta"), model.meta)

            root_elem = SubElement(root, "Root")
            self._build_group(root_elem, model.root_group)
            deleted_elem = SubElement(root_elem, "DeletedObjects")
            for deleted in model.deleted_objects:
                item = SubElement(deleted_elem, "DeletedObject")
                SubElement(item, "UUID").text = _encode_uuid(deleted.uuid)
                SubElement(item, "DeletionTime").text = encode_time(deleted.deletion_time)
            root_elem.extend(self._preserved(model.unknown_root_elements))
            root.extend(self._preserved(model.unknown_elements))

            self._mask_protected_values(root)
            # Serialize to bytes (tostring returns bytes when encoding is specified)
            return cast(bytes, tostring(root, encoding="utf-8", xml_declaration=True))
        finally:
            for secret in self._temporary:
                secret.zeroize()
            self._secrets = {}
            self._element_secrets = {}

    def _preserved(self, elements: list[Element]) -> list[Element]:
        """Copies of preserved unknown elements for one build.

        Masking rewrites element text in place, and the same element may be
        shared between an entry and its history snapshots. Secrets of the
        originals are carried over to the copies.
        """
        copies = []
        for original in elements:
            duplicate = copy.deepcopy(original)
            for source, target in zip(original.iter(), duplicate.iter()):
                secret = self._element_secrets.get(source)
                if secret is not None:
                    self._secrets[target] = secret
            copies.append(duplicate)
        return copies

    def _mask_protected_values(self, root: Element) -> None:
        """Mask all protected values in document order."""
        count = 0
        for elem in root.iter():
            if (elem.get("Protected") or "").lower() != "true":
                continue
            secret = self._secrets.get(elem)
            if secret is not None:
                plaintext = secret.reveal()
            else:
                plaintext = SecureBytes((elem.text or "").encode("utf-8"))
            with plaintext:
                if self._cipher is not None:
                    masked = bytearray(len(plaintext))
                    self._cipher.encrypt(plaintext.view(), output=masked)
                    elem.text = base64.b64encode(masked).decode("ascii")
                else:
                    elem.text = base64.b64encode(plaintext.view()).decode("ascii")
            count += 1
        logger.debug("Masked %d protected values", count)

    def _build_meta(self, elem: Element, meta: Meta) -> None:
        def add(tag: str, text: str) -> None:
            SubElement(elem, tag).text = text

        def add_time(tag: str, value: datetime | None) -> None:
            if value is not None:
                add(tag, encode_time(value))

        add("Generator", meta.generator)
        add("DatabaseName", meta.database_name)
        add_time("DatabaseNameChanged", meta.database_name_changed)
        add("DatabaseDescription", meta.database_description)
        add_time("DatabaseDescriptionChanged", meta.database_description_changed)
        add("DefaultUserName", meta.default_username)
        add_time("DefaultUserNameChanged", meta.default_username_changed)
        add("MaintenanceHistoryDays", str(meta.maintenance_history_days))
        add("Color", meta.color or "")
        add_time("MasterKeyChanged", meta.master_key_changed)
        add("MasterKeyChangeRec", str(meta.master_key_change_rec))
        add("MasterKeyChangeForce", str(meta.master_key_change_force))
        if meta.master_key_change_force_once:
            add("MasterKeyChangeForceOnce", "True")

        mp = SubElement(elem, "MemoryProtection")
        for field_name, is_protected in meta.memory_protection.items():
            SubElement(mp, f"Protect{field_name}").text = _encode_bool(is_protected)

        if meta.custom_icons:
            icons = SubElement(elem, "CustomIcons")
            for icon in meta.custom_icons:
                icon_elem = SubElement(icons, "Icon")
                SubElement(icon_elem, "UUID").text = _encode_uuid(icon.uuid)
                SubElement(icon_elem, "Data").text = base64.b64encode(icon.data).decode("ascii")
                if icon.name is not None:
                    SubElement(icon_elem, "Name").text = icon.name
                if icon.last_modification_time is not None:
                    SubElement(icon_elem, "LastModificationTime").text = encode_time(
                        icon.last_modification_time
                    )

        add("RecycleBinEnabled", _encode_bool(meta.recycle_bin_enabled))
        add("RecycleBinUUID", _encode_uuid(meta.recycle_bin_uuid))
        add_time("RecycleBinChanged", meta.recycle_bin_changed)
        add("EntryTemplatesGroup", _encode_uuid(meta.entry_templates_group))
        add_time("EntryTemplatesGroupChanged", meta.entry_templates_group_changed)
        add("HistoryMaxItems", str(meta.history_max_items))
        add("HistoryMaxSize", str(meta.history_max_size))
        add("LastSelectedGroup", _encode_uuid(meta.last_selected_group))
        add("LastTopVisibleGroup", _encode_uuid(meta.last_top_visible_group))
        add_time("SettingsChanged", meta.settings_changed)
        self._build_custom_data(elem, meta.custom_data, always=True)
        elem.extend(self._preserved(meta.unknown_elements))

    def _build_custom_data(
        self, parent: Element, items: dict[str, CustomDataItem], always: bool = False
    ) -> None:
        if not items and not always:
            return
        elem = SubElement(parent, "CustomData")
        for key, item in items.items():
            item_elem = SubElement(elem, "Item")
            SubElement(item_elem, "Key").text = key
            SubElement(item_elem, "Value").text = item.value
            if item.last_modification_time is not None:
                SubElement(item_elem, "LastModificationTime").text = encode_time(
                    item.last_modification_time
                )

    def _build_times(self, parent: Element, times: Times) -> None:
        elem = SubElement(parent, "Times")
        SubElement(elem, "CreationTime").text = encode_time(times.creation_time)
        SubElement(elem, "LastModificationTime").text = encode_time(times.last_modification_time)
        SubElement(elem, "LastAccessTime").text = encode_time(times.last_access_time)
        SubElement(elem, "ExpiryTime").text = encode_time(times.expiry_time or times.creation_time)
        SubElement(elem, "Expires").text = _encode_bool(times.expires)
        SubElement(elem, "UsageCount").text = str(times.usage_count)
        if times.location_changed is not None:
            SubElement(elem, "LocationChanged").text = encode_time(times.location_changed)

    def _build_group(self, parent: Element, group: Group) -> None:
        elem = SubElement(parent, "Group")

        SubElement(elem, "UUID").text = _encode_uuid(group.uuid)
        SubElement(elem, "Name").text = group.name or ""
        if group.notes is not None:
            SubElement(elem, "Notes").text = group.notes
        SubElement(elem, "IconID").text = str(group.icon_id)
        if group.custom_icon_uuid is not None:
            SubElement(elem, "CustomIconUUID").text = _encode_uuid(group.custom_icon_uuid)

        self._build_times(elem, group.times)

        SubElement(elem, "IsExpanded").text = _encode_bool(group.is_expanded)
        if group.default_autotype_sequence:
            SubElement(elem, "DefaultAutoTypeSequence").text = group.default_autotype_sequence
        SubElement(elem, "EnableAutoType").text = (
            "null" if group.enable_autotype is None else _encode_bool(group.enable_autotype)
        )
        SubElement(elem, "EnableSearching").text = (
            "null" if group.enable_searching is None else _encode_bool(group.enable_searching)
        )
        SubElement(elem, "LastTopVisibleEntry").text = _encode_uuid(group.last_top_visible_entry)
        if group.previous_parent_group is not None:
            SubElement(elem, "PreviousParentGroup").text = _encode_uuid(
                group.previous_parent_group
            )
        if group.tags:
            SubElement(elem, "Tags").text = ";".join(group.tags)
        self._build_custom_data(elem, group.custom_data)
        elem.extend(self._preserved(group.unknown_elements))

        for child in group.children:
            if isinstance(child, Group):
                self._build_group(elem, child)
            else:
                self._build_entry(elem, child)

    def _build_entry(self, parent: Element, entry: Entry) -> None:
        elem = SubElement(parent, "Entry")

        SubElement(elem, "UUID").text = _encode_uuid(entry.uuid)
        SubElement(elem, "IconID").text = str(entry.icon_id)
        if entry.custom_icon_uuid is not None:
            SubElement(elem, "CustomIconUUID").text = _encode_uuid(entry.custom_icon_uuid)
        SubElement(elem, "ForegroundColor").text = entry.foreground_color or ""
        SubElement(elem, "BackgroundColor").text = entry.background_color or ""
        SubElement(elem, "OverrideURL").text = entry.override_url or ""
        if not entry.quality_check:
            SubElement(elem, "QualityCheck").text = "False"
        SubElement(elem, "Tags").text = ";".join(entry.tags)
        if entry.previous_parent_group is not None:
            SubElement(elem, "PreviousParentGroup").text = _encode_uuid(
                entry.previous_parent_group
            )

        self._build_times(elem, entry.times)
        self._build_custom_data(elem, entry.custom_data)

        for key, string_field in entry.strings.items():
            string_elem = SubElement(elem, "String")
            SubElement(string_elem, "Key").text = key
            value_elem = SubElement(string_elem, "Value")
            # Fields are never downgraded: the policy can only add protection
            if string_field.protected or self._memory_protection.get(key, False):
                value_elem.set("Protected", "True")
                secret = string_field.secret
                if secret is None:
                    secret = ProtectedValue.from_str(string_field.value or "")
                    self._temporary.append(secret)
                self._secrets[value_elem] = secret
            else:
                value_elem.text = string_field.value or ""

        for binary_ref in entry.binaries:
            ref = binary_ref.ref
            if self._binary_ids is not None:
                if ref not in self._binary_ids:
                    logger.warning(
                        "Dropping reference to missing binary %d from entry %s", ref, entry.uuid
                    )
                    continue
                ref = self._binary_ids[ref]
            binary_elem = SubElement(elem, "Binary")
            SubElement(binary_elem, "Key").text = binary_ref.key
            SubElement(binary_elem, "Value").set("Ref", str(ref))

        at = entry.autotype
        at_elem = SubElement(elem, "AutoType")
        SubElement(at_elem, "Enabled").text = _encode_bool(at.enabled)
        SubElement(at_elem, "DataTransferObfuscation").text = str(at.obfuscation)
        if at.sequence:
            SubElement(at_elem, "DefaultSequence").text = at.sequence
        for association in at.associations:
            assoc = SubElement(at_elem, "Association")
            SubElement(assoc, "Window").text = association.window
            SubElement(assoc, "KeystrokeSequence").text = association.sequence

        elem.extend(self._preserved(entry.unknown_elements))

        if entry.history:
            history_elem = SubElement(elem, "History")
            for hist_entry in entry.history:
                self._build_entry(history_elem, hist_entry)
