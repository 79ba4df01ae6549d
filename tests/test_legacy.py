"""Tests for reading KDBX 3.1 files and upgrading them to KDBX 4."""

import base64
import gzip
import os
import uuid
from pathlib import Path

import pytest

from kdbxcore import Database
from kdbxcore.exceptions import IntegrityError, LegacyUpgradeRequired, UnsupportedError
from kdbxcore.parsing import CompressionType, KdbxHeader, KdbxVersion
from kdbxcore.policy import CodecPolicy
from kdbxcore.security import AesKdfConfig, Argon2Config, KdfEngine
from kdbxcore.testing import build_kdbx3, flip_byte, legacy_stream_cipher

LEGACY = CodecPolicy(allow_legacy=True)
PASSWORD = "legacy"
STREAM_KEY = os.urandom(32)


def b64uuid(value: int) -> str:
    return base64.b64encode(uuid.UUID(int=value).bytes).decode()


def legacy_xml(stream_key: bytes = STREAM_KEY) -> bytes:
    """A KeePass 2.x style document with ISO times and a Meta binary pool."""
    stream = legacy_stream_cipher(stream_key)
    password = base64.b64encode(stream.encrypt(b"correct horse")).decode()
    pin = base64.b64encode(stream.encrypt(b"4321")).decode()
    attachment = base64.b64encode(gzip.compress(b"attached file")).decode()
    return (
        "<?xml version=\"1.0\" encoding=\"utf-8\"?>"
        "<KeePassFile><Meta>"
        "<Generator>KeePass</Generator>"
        "<HeaderHash>AAAA</HeaderHash>"
        "<DatabaseName>Legacy</DatabaseName>"
        "<DatabaseNameChanged>2019-06-01T10:00:00Z</DatabaseNameChanged>"
        f"<Binaries><Binary ID=\"0\" Compressed=\"True\">{attachment}</Binary></Binaries>"
        "</Meta><Root>"
        f"<Group><UUID>{b64uuid(1)}</UUID><Name>Root</Name>"
        "<Times><CreationTime>2019-06-01T10:00:00Z</CreationTime></Times>"
        f"<Entry><UUID>{b64uuid(2)}</UUID>"
        "<Times><LastModificationTime>2019-06-02T11:00:00Z</LastModificationTime></Times>"
        "<String><Key>Title</Key><Value>Mail</Value></String>"
        f"<String><Key>Password</Key><Value Protected=\"True\">{password}</Value></String>"
        f"<String><Key>PIN</Key><Value Protected=\"True\">{pin}</Value></String>"
        "<Binary><Key>notes.txt</Key><Value Ref=\"0\"/></Binary>"
        "</Entry></Group>"
        "<DeletedObjects/></Root></KeePassFile>"
    ).encode()


@pytest.fixture
def kdbx3_bytes() -> bytes:
    return build_kdbx3(legacy_xml(), PASSWORD, stream_key=STREAM_KEY, rounds=100)


@pytest.fixture
def legacy_db(kdbx3_bytes: bytes) -> Database:
    return Database.open_bytes(kdbx3_bytes, password=PASSWORD, policy=LEGACY)


class TestOpenLegacy:
    """Tests for opening KDBX 3.1 files."""

    def test_rejected_by_default(self, kdbx3_bytes: bytes) -> None:
        """Test that KDBX3 needs an explicit opt-in."""
        with pytest.raises(UnsupportedError, match="allow_legacy"):
            Database.open_bytes(kdbx3_bytes, password=PASSWORD)

    def test_contents(self, legacy_db: Database) -> None:
        """Test that entries, protected values and times are decoded."""
        assert legacy_db.is_legacy
        assert legacy_db.meta.database_name == "Legacy"
        entry = legacy_db.find_entries(title="Mail")[0]
        assert entry.password == "correct horse"
        assert entry.get_custom_property("PIN") == "4321"
        assert entry.strings["PIN"].protected
        assert entry.times.last_modification_time.year == 2019

    def test_meta_binaries(self, legacy_db: Database) -> None:
        """Test that the Meta binary pool feeds attachments."""
        entry = legacy_db.find_entries(title="Mail")[0]
        assert legacy_db.get_attachment(entry, "notes.txt") == b"attached file"

    def test_uncompressed(self) -> None:
        """Test a KDBX3 file without payload compression."""
        data = build_kdbx3(
            legacy_xml(), PASSWORD, stream_key=STREAM_KEY, compression=CompressionType.NONE
        )
        db = Database.open_bytes(data, password=PASSWORD, policy=LEGACY)
        assert db.find_entries(title="Mail")

    def test_small_blocks(self) -> None:
        """Test a hashed block stream with many blocks."""
        data = build_kdbx3(legacy_xml(), PASSWORD, stream_key=STREAM_KEY, block_size=64)
        db = Database.open_bytes(data, password=PASSWORD, policy=LEGACY)
        assert db.find_entries(title="Mail")[0].password == "correct horse"

    def test_keyfile(self) -> None:
        """Test a KDBX3 file protected by password and keyfile."""
        keyfile = os.urandom(32)
        data = build_kdbx3(legacy_xml(), PASSWORD, keyfile, stream_key=STREAM_KEY)
        db = Database.open_bytes(data, password=PASSWORD, keyfile_data=keyfile, policy=LEGACY)
        assert db.find_entries(title="Mail")

    def test_wrong_password(self, kdbx3_bytes: bytes) -> None:
        """Test that the start bytes catch a wrong key."""
        with pytest.raises(IntegrityError, match="Wrong key"):
            Database.open_bytes(kdbx3_bytes, password="nope", policy=LEGACY)

    def test_corrupted_payload(self, kdbx3_bytes: bytes) -> None:
        """Test that a modified data block fails its hash."""
        _, header_end = KdbxHeader.parse(kdbx3_bytes)
        # Plaintext byte 80 lies in the first hashed block (start bytes + block header = 72)
        tampered = flip_byte(kdbx3_bytes, header_end + 83)
        with pytest.raises(IntegrityError, match="Hash verification"):
            Database.open_bytes(tampered, password=PASSWORD, policy=LEGACY)


class TestUpgrade:
    """Tests for writing an opened KDBX3 database."""

    def test_save_requires_upgrade_flag(self, legacy_db: Database, tmp_path: Path) -> None:
        """Test that saving silently as KDBX4 is refused."""
        with pytest.raises(LegacyUpgradeRequired):
            legacy_db.save(tmp_path / "out.kdbx")
        with pytest.raises(LegacyUpgradeRequired):
            legacy_db.to_bytes()
        assert not (tmp_path / "out.kdbx").exists()

    def test_upgrade_writes_kdbx4(self, legacy_db: Database, tmp_path: Path) -> None:
        """Test that allow_upgrade produces a KDBX 4.1 file with the same data."""
        target = tmp_path / "upgraded.kdbx"
        legacy_db.save(target, allow_upgrade=True)

        assert not legacy_db.is_legacy
        header, _ = KdbxHeader.parse(target.read_bytes())
        assert header.version == KdbxVersion.KDBX4
        assert header.version_minor == 1

        db = Database.open(target, password=PASSWORD)
        entry = db.find_entries(title="Mail")[0]
        assert entry.password == "correct horse"
        assert db.get_attachment(entry, "notes.txt") == b"attached file"
        assert db.meta.database_name == "Legacy"

    def test_upgrade_keeps_aes_kdf(self, legacy_db: Database, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that the AES-KDF parameters carry over without re-deriving."""
        calls = []
        original = KdfEngine.derive

        def counting_derive(self, *args, **kwargs):
            calls.append(args)
            return original(self, *args, **kwargs)

        monkeypatch.setattr(KdfEngine, "derive", counting_derive)
        data = legacy_db.to_bytes(allow_upgrade=True)

        assert calls == []
        header, _ = KdbxHeader.parse(data)
        assert isinstance(header.kdf_config, AesKdfConfig)
        assert header.kdf_config == legacy_db.header.kdf_config

    def test_upgrade_with_new_kdf(self, legacy_db: Database) -> None:
        """Test upgrading and switching to Argon2 in one save."""
        config = Argon2Config.fast()
        data = legacy_db.to_bytes(allow_upgrade=True, kdf_config=config)
        db = Database.open_bytes(data, password=PASSWORD)
        assert db.kdf_config == config
