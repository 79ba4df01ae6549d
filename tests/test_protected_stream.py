"""Tests for the inner stream cipher and outer cipher primitives."""

import hashlib
import os

import pytest
from Cryptodome.Cipher import ChaCha20, Salsa20

from kdbxcore.exceptions import HeaderError, UnsupportedError
from kdbxcore.security import (
    Cipher,
    CipherContext,
    InnerStreamId,
    ProtectedStreamCipher,
    compute_hmac_sha256,
    secure_random_bytes,
    verify_hmac_sha256,
)
from kdbxcore.security.stream import SALSA20_NONCE

STREAM_KEY = bytes(range(64))


class TestProtectedStreamCipher:
    """Tests for ProtectedStreamCipher."""

    def test_chacha20_keystream(self) -> None:
        """Test ChaCha20 key and nonce derivation from the stream key."""
        key_hash = hashlib.sha512(STREAM_KEY).digest()
        reference = ChaCha20.new(key=key_hash[:32], nonce=key_hash[32:44])
        cipher = ProtectedStreamCipher(InnerStreamId.CHACHA20, STREAM_KEY)
        assert cipher.encrypt(b"\x00" * 40) == reference.encrypt(b"\x00" * 40)

    def test_salsa20_keystream(self) -> None:
        """Test Salsa20 with the fixed KeePass nonce."""
        reference = Salsa20.new(key=hashlib.sha256(STREAM_KEY[:32]).digest(), nonce=SALSA20_NONCE)
        cipher = ProtectedStreamCipher(InnerStreamId.SALSA20, STREAM_KEY[:32])
        assert cipher.encrypt(b"\x00" * 40) == reference.encrypt(b"\x00" * 40)

    @pytest.mark.parametrize("stream_id", [InnerStreamId.SALSA20, InnerStreamId.CHACHA20])
    def test_sequential_values(self, stream_id: InnerStreamId) -> None:
        """Test that values decrypt when processed in the same order."""
        values = [b"first", b"", b"second value", b"3"]
        writer = ProtectedStreamCipher(stream_id, STREAM_KEY)
        masked = [writer.encrypt(v) for v in values]

        reader = ProtectedStreamCipher(stream_id, STREAM_KEY)
        assert [reader.decrypt(m) for m in masked] == values

    def test_order_matters(self) -> None:
        """Test that skipping a value desynchronizes the ones after it."""
        writer = ProtectedStreamCipher(InnerStreamId.CHACHA20, STREAM_KEY)
        first = writer.encrypt(b"aaaa")
        second = writer.encrypt(b"bbbb")

        reader = ProtectedStreamCipher(InnerStreamId.CHACHA20, STREAM_KEY)
        assert reader.decrypt(second) != b"bbbb"
        assert first != second

    def test_position(self) -> None:
        """Test that position counts consumed keystream bytes."""
        cipher = ProtectedStreamCipher(InnerStreamId.CHACHA20, STREAM_KEY)
        assert cipher.position == 0
        cipher.decrypt(b"12345")
        cipher.encrypt(b"678")
        assert cipher.position == 8
        assert cipher.stream_id == InnerStreamId.CHACHA20

    @pytest.mark.parametrize("stream_id", [InnerStreamId.CHACHA20, InnerStreamId.SALSA20])
    def test_mixed_directions_share_keystream(self, stream_id: InnerStreamId) -> None:
        """Test that decrypt then encrypt on one instance continues the keystream."""
        writer = ProtectedStreamCipher(stream_id, STREAM_KEY)
        first = writer.encrypt(b"first")
        second = writer.encrypt(b"second")

        mixed = ProtectedStreamCipher(stream_id, STREAM_KEY)
        assert mixed.decrypt(first) == b"first"
        assert mixed.encrypt(b"second") == second

    def test_decrypt_into_buffer(self) -> None:
        """Test unmasking straight into a caller-provided bytearray."""
        masked = ProtectedStreamCipher(InnerStreamId.CHACHA20, STREAM_KEY).encrypt(b"secret")
        cipher = ProtectedStreamCipher(InnerStreamId.CHACHA20, STREAM_KEY)
        output = bytearray(len(masked))
        assert cipher.decrypt(masked, output=output) is None
        assert output == bytearray(b"secret")
        assert cipher.position == 6

    def test_arcfour_unsupported(self) -> None:
        """Test that the ArcFour variant raises UnsupportedError."""
        with pytest.raises(UnsupportedError, match="ArcFour"):
            ProtectedStreamCipher(InnerStreamId.ARC4_VARIANT, STREAM_KEY)

    def test_unknown_id(self) -> None:
        """Test that an unknown stream id raises HeaderError."""
        with pytest.raises(HeaderError):
            ProtectedStreamCipher(7, STREAM_KEY)

    def test_empty_key(self) -> None:
        """Test that an empty stream key raises HeaderError."""
        with pytest.raises(HeaderError, match="key"):
            ProtectedStreamCipher(InnerStreamId.CHACHA20, b"")


class TestCipherContext:
    """Tests for outer payload ciphers."""

    @pytest.mark.parametrize("cipher", [Cipher.AES256_CBC, Cipher.CHACHA20])
    def test_roundtrip(self, cipher: Cipher) -> None:
        """Test encrypt/decrypt with each supported cipher."""
        ctx = CipherContext(cipher, os.urandom(32), os.urandom(cipher.iv_size))
        plaintext = os.urandom(64)
        ciphertext = ctx.encrypt(plaintext)
        assert ciphertext != plaintext
        assert ctx.decrypt(ciphertext) == plaintext

    def test_chacha20_any_length(self) -> None:
        """Test that ChaCha20 needs no padding."""
        ctx = CipherContext(Cipher.CHACHA20, os.urandom(32), os.urandom(12))
        assert len(ctx.encrypt(b"abc")) == 3

    def test_aes_requires_alignment(self) -> None:
        """Test that AES-CBC rejects unaligned input."""
        ctx = CipherContext(Cipher.AES256_CBC, os.urandom(32), os.urandom(16))
        with pytest.raises(ValueError, match="multiple of 16"):
            ctx.decrypt(b"x" * 17)

    def test_twofish_unsupported(self) -> None:
        """Test that Twofish cannot be instantiated."""
        with pytest.raises(UnsupportedError):
            CipherContext(Cipher.TWOFISH256_CBC, os.urandom(32), os.urandom(16))

    def test_wrong_iv_size(self) -> None:
        """Test that a nonce of the wrong size is a header problem."""
        with pytest.raises(HeaderError, match="IV"):
            CipherContext(Cipher.CHACHA20, os.urandom(32), os.urandom(16))

    def test_cipher_metadata(self) -> None:
        """Test cipher properties and UUID lookup."""
        assert Cipher.from_uuid(Cipher.CHACHA20.value) is Cipher.CHACHA20
        assert Cipher.CHACHA20.iv_size == 12
        assert not Cipher.CHACHA20.is_block_cipher
        assert Cipher.AES256_CBC.display_name == "AES-256-CBC"
        with pytest.raises(HeaderError):
            Cipher.from_uuid(b"\x00" * 16)


class TestPrimitives:
    """Tests for HMAC and randomness helpers."""

    def test_verify_hmac(self) -> None:
        """Test that only the matching tag verifies."""
        tag = compute_hmac_sha256(b"key", b"data")
        assert verify_hmac_sha256(b"key", b"data", tag)
        assert not verify_hmac_sha256(b"key", b"datA", tag)
        assert not verify_hmac_sha256(b"other", b"data", tag)

    def test_secure_random_bytes(self) -> None:
        """Test that random output has the requested length and varies."""
        assert len(secure_random_bytes(32)) == 32
        assert secure_random_bytes(32) != secure_random_bytes(32)
