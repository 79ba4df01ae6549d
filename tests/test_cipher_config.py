"""Tests for cipher configuration on save."""

import pytest

from kdbxcore import Argon2Config, Cipher, Database
from kdbxcore.exceptions import UnsupportedError
from kdbxcore.testing import fast_kdf_config

PASSWORD = "test"


@pytest.fixture
def db() -> Database:
    database = Database.create(password=PASSWORD, kdf_config=fast_kdf_config())
    database.add_entry(title="Test")
    return database


class TestCipherConfigOnSave:
    """Tests for using cipher parameter when saving databases."""

    @pytest.mark.parametrize("cipher", [Cipher.CHACHA20, Cipher.AES256_CBC])
    def test_to_bytes_with_cipher(self, db: Database, cipher: Cipher) -> None:
        """Test saving with each supported cipher."""
        data = db.to_bytes(cipher=cipher)
        db2 = Database.open_bytes(data, password=PASSWORD)
        assert db2.header.cipher == cipher
        assert db2.find_entries(title="Test")

    def test_change_cipher_preserves_data(self) -> None:
        """Test that changing cipher preserves all database content."""
        db = Database.create(password=PASSWORD, kdf_config=fast_kdf_config())
        entry = db.add_entry(
            title="Important",
            username="user@example.com",
            password="secret123",
            url="https://example.com",
            notes="Some notes here",
        )
        entry.set_custom_property("custom_key", "custom_value")

        data = db.to_bytes(cipher=Cipher.CHACHA20)
        db2 = Database.open_bytes(data, password=PASSWORD)
        entry2 = db2.find_entries(title="Important")[0]
        assert entry2.username == "user@example.com"
        assert entry2.password == "secret123"
        assert entry2.url == "https://example.com"
        assert entry2.notes == "Some notes here"
        assert entry2.get_custom_property("custom_key") == "custom_value"

    def test_cipher_with_kdf_config(self, db: Database) -> None:
        """Test using both cipher and kdf_config together."""
        data = db.to_bytes(cipher=Cipher.CHACHA20, kdf_config=Argon2Config.fast())
        db2 = Database.open_bytes(data, password=PASSWORD)
        assert db2.header.cipher == Cipher.CHACHA20
        assert isinstance(db2.kdf_config, Argon2Config)

    def test_cipher_kept_by_default(self, tmp_path) -> None:
        """Test that a save without cipher keeps the current one."""
        db = Database.create(
            tmp_path / "c.kdbx",
            password=PASSWORD,
            cipher=Cipher.CHACHA20,
            kdf_config=fast_kdf_config(),
        )
        db.save()
        assert Database.open(tmp_path / "c.kdbx", password=PASSWORD).header.cipher == Cipher.CHACHA20

    def test_twofish_rejected(self, db: Database) -> None:
        """Test that Twofish cannot be used for writing."""
        with pytest.raises(UnsupportedError):
            db.to_bytes(cipher=Cipher.TWOFISH256_CBC)


class TestCipherEnum:
    """Tests for Cipher enum properties."""

    def test_aes256_properties(self) -> None:
        """Test AES-256-CBC cipher properties."""
        cipher = Cipher.AES256_CBC
        assert cipher.key_size == 32
        assert cipher.iv_size == 16
        assert cipher.display_name == "AES-256-CBC"
        assert len(cipher.value) == 16  # UUID

    def test_chacha20_properties(self) -> None:
        """Test ChaCha20 cipher properties."""
        cipher = Cipher.CHACHA20
        assert cipher.key_size == 32
        assert cipher.iv_size == 12
        assert cipher.display_name == "ChaCha20"
        assert not cipher.is_block_cipher

    def test_twofish_properties(self) -> None:
        """Test Twofish is recognized but unsupported."""
        cipher = Cipher.TWOFISH256_CBC
        assert cipher.iv_size == 16
        assert cipher.display_name == "Twofish-256-CBC"
        assert not cipher.is_supported

    def test_from_uuid(self) -> None:
        """Test cipher lookup by UUID."""
        for cipher in Cipher:
            assert Cipher.from_uuid(cipher.value) == cipher
