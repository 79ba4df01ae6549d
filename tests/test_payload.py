"""Tests for payload framing: padding, compression and block streams."""

import gzip
import hashlib
import struct

import pytest

from kdbxcore.exceptions import HeaderError, IntegrityError, PayloadError
from kdbxcore.parsing import CompressionType, KdbxHeader
from kdbxcore.parsing.compression import compress, decompress
from kdbxcore.parsing.kdbx3 import build_hashed_block_stream, read_hashed_block_stream
from kdbxcore.parsing.kdbx4 import (
    InnerHeader,
    Kdbx4Reader,
    add_pkcs7_padding,
    compute_block_hmac,
    derive_payload_keys,
    read_kdbx4,
    remove_pkcs7_padding,
    write_kdbx4,
)
from kdbxcore.policy import CodecPolicy
from kdbxcore.security import Cipher, InnerStreamId, SecureBytes
from kdbxcore.testing import fast_kdf_config, payload_offset

TRANSFORMED = SecureBytes(hashlib.sha256(b"transformed").digest())


def write_payload(
    xml: bytes = b"<KeePassFile/>",
    cipher: Cipher = Cipher.AES256_CBC,
    binaries: list[tuple[bool, bytes]] | None = None,
    policy: CodecPolicy | None = None,
) -> bytes:
    header = KdbxHeader.create(cipher, fast_kdf_config())
    inner = InnerHeader(
        random_stream_id=InnerStreamId.CHACHA20,
        random_stream_key=b"k" * 64,
        binaries=binaries or [],
    )
    return write_kdbx4(header, inner, xml, TRANSFORMED, policy=policy or CodecPolicy())


class TestPadding:
    """Tests for PKCS#7 padding."""

    @pytest.mark.parametrize("length", [0, 1, 15, 16, 17])
    def test_padding_roundtrip(self, length: int) -> None:
        """Test that padding always adds 1-16 bytes and is removable."""
        data = b"x" * length
        padded = add_pkcs7_padding(data)
        assert len(padded) % 16 == 0
        assert 1 <= len(padded) - length <= 16
        assert remove_pkcs7_padding(padded) == data

    @pytest.mark.parametrize(
        "data",
        [b"", b"x" * 15 + b"\x00", b"x" * 15 + b"\x11", b"x" * 14 + b"\x01\x02"],
    )
    def test_invalid_padding(self, data: bytes) -> None:
        """Test that malformed padding raises PayloadError."""
        with pytest.raises(PayloadError):
            remove_pkcs7_padding(data)


class TestCompression:
    """Tests for payload compression."""

    def test_gzip_roundtrip(self) -> None:
        """Test that GZip output is standard gzip."""
        data = b"<KeePassFile>" + b"a" * 1000 + b"</KeePassFile>"
        compressed = compress(data, CompressionType.GZIP)
        assert len(compressed) < len(data)
        assert gzip.decompress(compressed) == data
        assert decompress(compressed, CompressionType.GZIP) == data

    def test_gzip_deterministic(self) -> None:
        """Test that compression does not embed a timestamp."""
        assert compress(b"abc", CompressionType.GZIP) == compress(b"abc", CompressionType.GZIP)

    def test_none_passthrough(self) -> None:
        """Test that NONE leaves data untouched."""
        assert compress(b"abc", CompressionType.NONE) == b"abc"
        assert decompress(b"abc", CompressionType.NONE) == b"abc"

    @pytest.mark.parametrize("data", [b"not gzip at all", b"\x1f\x8b\x08\x00"])
    def test_corrupt_stream(self, data: bytes) -> None:
        """Test that corrupt or truncated gzip raises PayloadError."""
        with pytest.raises(PayloadError):
            decompress(data, CompressionType.GZIP)

    def test_truncated_stream(self) -> None:
        """Test that a gzip stream cut short raises PayloadError."""
        compressed = compress(b"x" * 5000, CompressionType.GZIP)
        with pytest.raises(PayloadError):
            decompress(compressed[:-6], CompressionType.GZIP)


class TestHashedBlockStream:
    """Tests for the KDBX3 hashed block stream."""

    def test_roundtrip_multiple_blocks(self) -> None:
        """Test data spanning several blocks."""
        data = bytes(range(256)) * 5
        assert read_hashed_block_stream(build_hashed_block_stream(data, 100)) == data

    def test_empty(self) -> None:
        """Test that an empty payload is a single terminator."""
        stream = build_hashed_block_stream(b"")
        assert len(stream) == 40
        assert read_hashed_block_stream(stream) == b""

    def test_hash_mismatch(self) -> None:
        """Test that a modified block raises IntegrityError."""
        stream = bytearray(build_hashed_block_stream(b"hello world"))
        stream[41] ^= 1
        with pytest.raises(IntegrityError, match="block 0"):
            read_hashed_block_stream(bytes(stream))

    def test_out_of_sequence(self) -> None:
        """Test that a wrong block index raises IntegrityError."""
        stream = bytearray(build_hashed_block_stream(b"hello"))
        struct.pack_into("<I", stream, 0, 5)
        with pytest.raises(IntegrityError, match="sequence"):
            read_hashed_block_stream(bytes(stream))

    def test_missing_terminator(self) -> None:
        """Test that a stream without its final block is rejected."""
        stream = build_hashed_block_stream(b"hello")
        with pytest.raises(IntegrityError, match="Truncated"):
            read_hashed_block_stream(stream[:-40])

    def test_block_size_validated(self) -> None:
        """Test that the block size must be positive."""
        with pytest.raises(ValueError):
            build_hashed_block_stream(b"x", 0)


class TestHmacBlockStream:
    """Tests for the KDBX4 HMAC block stream."""

    def test_block_layout(self) -> None:
        """Test that blocks split at the policy size and end with a terminator."""
        data = write_payload(
            b"<KeePassFile>" + b"x" * 300 + b"</KeePassFile>",
            cipher=Cipher.CHACHA20,
            policy=CodecPolicy(block_size=64, compression_level=0),
        )
        header, _ = KdbxHeader.parse(data)
        hmac_key, _ = derive_payload_keys(TRANSFORMED.data, header.master_seed)

        offset = payload_offset(data)
        index = 0
        while True:
            tag = data[offset : offset + 32]
            (length,) = struct.unpack_from("<I", data, offset + 32)
            block = data[offset + 36 : offset + 36 + length]
            assert tag == compute_block_hmac(hmac_key.data, index, block)
            offset += 36 + length
            if length == 0:
                break
            assert length <= 64
            index += 1

        assert index > 1
        assert offset == len(data)

    def test_roundtrip(self) -> None:
        """Test that write_kdbx4 output reads back."""
        binaries = [(True, b"secret bytes"), (False, b"")]
        data = write_payload(b"<KeePassFile><Meta/></KeePassFile>", binaries=binaries)

        payload = read_kdbx4(data, transformed_key=TRANSFORMED)

        assert payload.xml_data == b"<KeePassFile><Meta/></KeePassFile>"
        assert payload.inner_header.random_stream_id == InnerStreamId.CHACHA20
        assert payload.inner_header.random_stream_key == b"k" * 64
        assert payload.inner_header.binaries == binaries

    def test_no_compression(self) -> None:
        """Test payloads written without compression."""
        header = KdbxHeader.create(
            Cipher.CHACHA20, fast_kdf_config(), compression=CompressionType.NONE
        )
        inner = InnerHeader(random_stream_id=InnerStreamId.CHACHA20, random_stream_key=b"k")
        data = write_kdbx4(header, inner, b"<KeePassFile/>", TRANSFORMED)
        assert read_kdbx4(data, transformed_key=TRANSFORMED).xml_data == b"<KeePassFile/>"

    def test_binary_size_limit(self) -> None:
        """Test that oversized binaries are rejected on read."""
        data = write_payload(binaries=[(False, b"x" * 100)])
        with pytest.raises(PayloadError, match="too large"):
            read_kdbx4(data, transformed_key=TRANSFORMED, policy=CodecPolicy(max_binary_size=10))

    def test_requires_key(self) -> None:
        """Test that a key source is mandatory."""
        with pytest.raises(ValueError):
            Kdbx4Reader(write_payload()).decrypt()


class TestInnerHeader:
    """Tests for inner header parsing."""

    def _parse(self, data: bytes):
        return Kdbx4Reader(b"")._parse_inner_header(data)

    @staticmethod
    def _field(field_type: int, value: bytes) -> bytes:
        return struct.pack("<BI", field_type, len(value)) + value

    def test_xml_offset(self) -> None:
        """Test that the XML starts right after the END field."""
        data = (
            self._field(1, struct.pack("<I", 3))
            + self._field(2, b"key")
            + self._field(3, b"\x01abc")
            + self._field(0, b"")
            + b"<xml/>"
        )
        inner, offset = self._parse(data)
        assert data[offset:] == b"<xml/>"
        assert inner.binaries == [(True, b"abc")]

    def test_missing_stream_settings(self) -> None:
        """Test that the stream id and key are mandatory."""
        with pytest.raises(HeaderError, match="random stream"):
            self._parse(self._field(0, b""))

    def test_unknown_field(self) -> None:
        """Test that unknown inner header fields are rejected."""
        with pytest.raises(HeaderError, match="Unknown inner header"):
            self._parse(self._field(9, b"") + self._field(0, b""))

    def test_truncated(self) -> None:
        """Test that a cut-off inner header raises HeaderError."""
        with pytest.raises(HeaderError, match="Truncated"):
            self._parse(self._field(2, b"key")[:-1])

    def test_binary_without_flags(self) -> None:
        """Test that a binary field needs its flag byte."""
        with pytest.raises(HeaderError, match="flags"):
            self._parse(self._field(3, b"") + self._field(0, b""))
