"""Tests for key derivation, KDF presets and composite keys."""

import base64
import hashlib
import threading

import pytest
from Cryptodome.Cipher import AES

from kdbxcore import Database
from kdbxcore.exceptions import (
    InvalidKeyFileError,
    MissingCredentialsError,
    OperationCancelledError,
)
from kdbxcore.policy import CodecPolicy
from kdbxcore.security import AesKdfConfig, Argon2Config, KdfEngine, KdfType
from kdbxcore.security.kdf import derive_composite_key
from kdbxcore.testing import fast_argon2_config, fast_kdf_config

COMPOSITE = hashlib.sha256(b"composite").digest()


def reference_aes_kdf(key: bytes, salt: bytes, rounds: int) -> bytes:
    cipher = AES.new(salt, AES.MODE_ECB)
    for _ in range(rounds):
        key = cipher.encrypt(key)
    return hashlib.sha256(key).digest()


class TestArgon2ConfigPresets:
    """Tests for Argon2Config preset factory methods."""

    def test_standard_preset(self) -> None:
        """Test standard() preset has expected values."""
        config = Argon2Config.standard()

        assert config.memory_kib == 64 * 1024  # 64 MiB
        assert config.iterations == 3
        assert config.parallelism == 4
        assert len(config.salt) == 32

    def test_high_security_preset(self) -> None:
        """Test high_security() preset has stronger values."""
        config = Argon2Config.high_security()

        assert config.memory_kib == 256 * 1024  # 256 MiB
        assert config.iterations == 10
        assert config.parallelism == 4

    def test_fast_preset(self) -> None:
        """Test fast() preset sits exactly at the minimums."""
        config = Argon2Config.fast()

        assert config.memory_kib == 16 * 1024
        assert config.iterations == 3
        assert config.parallelism == 2
        config.validate_security()

    def test_default_is_standard(self) -> None:
        """Test that default() returns same parameters as standard()."""
        default_config = Argon2Config.default()
        standard_config = Argon2Config.standard()

        assert default_config.memory_kib == standard_config.memory_kib
        assert default_config.iterations == standard_config.iterations
        assert default_config.parallelism == standard_config.parallelism
        assert default_config.variant == KdfType.ARGON2ID

    def test_custom_salt(self) -> None:
        """Test that custom salt can be provided."""
        custom_salt = b"x" * 32
        assert Argon2Config.standard(salt=custom_salt).salt == custom_salt

    def test_presets_generate_unique_salts(self) -> None:
        """Test that each preset call generates a unique salt."""
        assert Argon2Config.standard().salt != Argon2Config.standard().salt

    def test_with_new_salt(self) -> None:
        """Test that with_new_salt keeps the cost parameters."""
        config = Argon2Config.fast()
        renewed = config.with_new_salt()
        assert renewed.salt != config.salt
        assert renewed.memory_kib == config.memory_kib
        assert renewed.variant == config.variant


class TestKdfConfigValidation:
    """Tests for parameter validation."""

    def test_short_salt_rejected(self) -> None:
        """Test that Argon2 salts under 8 bytes are rejected."""
        with pytest.raises(ValueError, match="salt"):
            Argon2Config(memory_kib=1024, iterations=1, parallelism=1, salt=b"short")

    def test_memory_per_lane(self) -> None:
        """Test that memory must cover 8 KiB per lane."""
        with pytest.raises(ValueError, match="per lane"):
            Argon2Config(memory_kib=8, iterations=1, parallelism=2, salt=b"s" * 16)

    def test_aes_variant_rejected(self) -> None:
        """Test that AES_KDF is not an Argon2 variant."""
        with pytest.raises(ValueError, match="variant"):
            Argon2Config(
                memory_kib=1024,
                iterations=1,
                parallelism=1,
                salt=b"s" * 16,
                variant=KdfType.AES_KDF,
            )

    def test_validate_security(self) -> None:
        """Test that weak parameters fail the security check."""
        with pytest.raises(ValueError, match="Weak Argon2"):
            fast_argon2_config().validate_security()

    def test_aes_kdf_salt_length(self) -> None:
        """Test that AES-KDF requires a 32-byte salt."""
        with pytest.raises(ValueError, match="32 bytes"):
            AesKdfConfig(rounds=10, salt=b"x" * 16)

    def test_aes_kdf_rounds(self) -> None:
        """Test that AES-KDF needs at least one round."""
        with pytest.raises(ValueError, match="rounds"):
            AesKdfConfig(rounds=0, salt=b"x" * 32)


class TestKdfEngine:
    """Tests for KdfEngine.derive() and submit()."""

    def test_aes_kdf_matches_reference(self) -> None:
        """Test AES-KDF against a straightforward reimplementation."""
        config = fast_kdf_config(deterministic=True)
        with KdfEngine().derive(COMPOSITE, config) as key:
            assert key.data == reference_aes_kdf(COMPOSITE, config.salt, config.rounds)

    def test_aes_kdf_crosses_chunk_boundary(self) -> None:
        """Test AES-KDF with a round count that spans several chunks."""
        config = AesKdfConfig(rounds=25_001, salt=bytes(32))
        with KdfEngine().derive(COMPOSITE, config) as key:
            assert key.data == reference_aes_kdf(COMPOSITE, config.salt, config.rounds)

    def test_aes_kdf_requires_32_bytes(self) -> None:
        """Test that AES-KDF rejects input that is not a SHA-256 digest."""
        with pytest.raises(ValueError, match="32-byte"):
            KdfEngine().derive(b"short", fast_kdf_config())

    def test_argon2_deterministic(self) -> None:
        """Test that identical Argon2 inputs produce identical keys."""
        config = fast_argon2_config()
        engine = KdfEngine()
        with engine.derive(COMPOSITE, config) as first, engine.derive(COMPOSITE, config) as second:
            assert len(first.data) == 32
            assert first == second

    def test_argon2_salt_sensitive(self) -> None:
        """Test that a different salt yields a different key."""
        config = fast_argon2_config()
        engine = KdfEngine()
        first = engine.derive(COMPOSITE, config)
        second = engine.derive(COMPOSITE, config.with_new_salt())
        assert first != second

    def test_argon2_variants_differ(self) -> None:
        """Test that Argon2d and Argon2id produce different output."""
        salt = b"s" * 16
        engine = KdfEngine()
        d = engine.derive(
            COMPOSITE,
            Argon2Config(memory_kib=8, iterations=1, parallelism=1, salt=salt, variant=KdfType.ARGON2D),
        )
        i = engine.derive(
            COMPOSITE,
            Argon2Config(memory_kib=8, iterations=1, parallelism=1, salt=salt),
        )
        assert d != i

    def test_enforce_minimums(self) -> None:
        """Test that an enforcing engine rejects weak Argon2 parameters."""
        with pytest.raises(ValueError, match="Weak Argon2"):
            KdfEngine(enforce_minimums=True).derive(COMPOSITE, fast_argon2_config())

    def test_cancel_before_start(self) -> None:
        """Test that a set cancel event stops the derivation."""
        event = threading.Event()
        event.set()
        with pytest.raises(OperationCancelledError):
            KdfEngine().derive(COMPOSITE, fast_kdf_config(), cancel_event=event)

    def test_submit_returns_key(self) -> None:
        """Test that a background derivation yields the same key."""
        config = fast_kdf_config(deterministic=True)
        handle = KdfEngine().submit(COMPOSITE, config)
        key = handle.result(timeout=30)
        assert handle.done()
        assert not handle.cancelled
        assert key == KdfEngine().derive(COMPOSITE, config)

    def test_submit_cancel(self) -> None:
        """Test that a cancelled handle raises on result()."""
        handle = KdfEngine().submit(COMPOSITE, AesKdfConfig(rounds=5_000_000, salt=bytes(32)))
        handle.cancel()
        assert handle.cancelled
        with pytest.raises(OperationCancelledError):
            handle.result(timeout=30)


class TestCompositeKey:
    """Tests for derive_composite_key() and keyfile formats."""

    def test_password_only(self) -> None:
        """Test the composite of a password alone."""
        key = derive_composite_key("secret")
        expected = hashlib.sha256(hashlib.sha256(b"secret").digest()).digest()
        assert key.data == expected

    def test_password_and_keyfile_order(self) -> None:
        """Test that the password hash precedes the keyfile key."""
        keyfile = b"k" * 32
        key = derive_composite_key("secret", keyfile)
        expected = hashlib.sha256(hashlib.sha256(b"secret").digest() + keyfile).digest()
        assert key.data == expected

    def test_missing_credentials(self) -> None:
        """Test that no password and no keyfile is rejected."""
        with pytest.raises(MissingCredentialsError):
            derive_composite_key(None, None)

    def test_empty_password_is_a_credential(self) -> None:
        """Test that an empty password still counts."""
        assert len(derive_composite_key("").data) == 32

    def test_hex_keyfile(self) -> None:
        """Test that a 64-character hex keyfile is decoded."""
        raw = bytes(range(32))
        assert derive_composite_key(keyfile_data=raw.hex().encode()) == derive_composite_key(
            keyfile_data=raw
        )

    def test_arbitrary_keyfile_is_hashed(self) -> None:
        """Test that other keyfiles are used through SHA-256."""
        data = b"any file contents at all"
        expected = hashlib.sha256(hashlib.sha256(data).digest()).digest()
        assert derive_composite_key(keyfile_data=data).data == expected

    def test_xml_v1_keyfile(self) -> None:
        """Test XML keyfile version 1.0 (base64 key)."""
        raw = bytes(range(32))
        xml = (
            "<KeyFile><Meta><Version>1.00</Version></Meta>"
            f"<Key><Data>{base64.b64encode(raw).decode()}</Data></Key></KeyFile>"
        ).encode()
        assert derive_composite_key(keyfile_data=xml) == derive_composite_key(keyfile_data=raw)

    def test_xml_v2_keyfile(self) -> None:
        """Test XML keyfile version 2.0 (hex key with checksum)."""
        raw = bytes(range(32))
        checksum = hashlib.sha256(raw).digest()[:4].hex().upper()
        hex_key = raw.hex().upper()
        xml = (
            "<KeyFile><Meta><Version>2.0</Version></Meta>"
            f'<Key><Data Hash="{checksum}">{hex_key[:32]} {hex_key[32:]}</Data></Key></KeyFile>'
        ).encode()
        assert derive_composite_key(keyfile_data=xml) == derive_composite_key(keyfile_data=raw)

    def test_xml_v2_bad_checksum(self) -> None:
        """Test that a checksum mismatch raises InvalidKeyFileError."""
        xml = (
            "<KeyFile><Meta><Version>2.0</Version></Meta>"
            f'<Key><Data Hash="00000000">{bytes(32).hex()}</Data></Key></KeyFile>'
        ).encode()
        with pytest.raises(InvalidKeyFileError):
            derive_composite_key(keyfile_data=xml)


class TestKdfConfigOnSave:
    """Tests for using kdf_config when saving databases."""

    def test_to_bytes_with_argon2(self, new_db: Database) -> None:
        """Test that to_bytes() writes the requested Argon2 parameters."""
        new_db.add_entry(title="Test")
        config = Argon2Config.fast()

        data = new_db.to_bytes(kdf_config=config)

        db2 = Database.open_bytes(data, password="password")
        assert db2.kdf_config == config
        assert db2.find_entries(title="Test")

    def test_weak_config_rejected_on_save(self, new_db: Database) -> None:
        """Test that weak Argon2 parameters are refused by default."""
        with pytest.raises(ValueError, match="Weak Argon2"):
            new_db.to_bytes(kdf_config=fast_argon2_config())

    def test_weak_config_allowed_by_policy(self) -> None:
        """Test that the policy can lift the minimums."""
        policy = CodecPolicy(enforce_kdf_minimums=False)
        db = Database.create(password="pw", kdf_config=fast_argon2_config(), policy=policy)
        data = db.to_bytes()

        with pytest.warns(UserWarning, match="weak KDF"):
            reopened = Database.open_bytes(data, password="pw")
        assert reopened.kdf_config == db.kdf_config

    def test_weak_config_rejected_on_create(self) -> None:
        """Test that create() validates Argon2 parameters."""
        with pytest.raises(ValueError):
            Database.create(password="pw", kdf_config=fast_argon2_config())

    def test_kdf_not_rerun_when_unchanged(
        self, new_db: Database, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that consecutive saves reuse the cached transformed key."""
        new_db.to_bytes()
        calls = []
        original = KdfEngine.derive

        def counting_derive(self, *args, **kwargs):
            calls.append(args)
            return original(self, *args, **kwargs)

        monkeypatch.setattr(KdfEngine, "derive", counting_derive)
        first = new_db.to_bytes()
        second = new_db.to_bytes()
        assert calls == []
        assert first != second

        new_db.to_bytes(kdf_config=fast_kdf_config())
        assert len(calls) == 1
