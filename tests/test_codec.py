"""Tests for the base64url codec and HMAC signer."""

import hashlib
import hmac

import pytest

from quillpress.service import codec, signer


class TestEncode:
    """Unpadded URL-safe encoding."""

    def test_encode_strips_padding(self):
        """Encoded output never carries '=' padding."""
        assert codec.encode(b"a") == "YQ"
        assert codec.encode(b"ab") == "YWI"
        assert codec.encode(b"abc") == "YWJj"

    def test_encode_uses_url_safe_alphabet(self):
        """Bytes that map to '+' and '/' in standard base64 become '-' and '_'."""
        assert codec.encode(b"\xfb\xff") == "-_8"

    def test_empty_input(self):
        assert codec.encode(b"") == ""
        assert codec.decode("") == b""

    def test_every_byte_value_survives(self):
        """All 256 byte values decode back unchanged."""
        data = bytes(range(256))
        assert codec.decode(codec.encode(data)) == data


class TestDecode:
    """Rejection of input that encode() could never produce."""

    @pytest.mark.parametrize("segment", ["ab+c", "ab/c", "ab=c", "YQ==", "a b", "YQ\n"])
    def test_rejects_characters_outside_alphabet(self, segment):
        with pytest.raises(codec.DecodeError):
            codec.decode(segment)

    def test_rejects_impossible_length(self):
        """A length of 1 mod 4 cannot come from any byte string."""
        with pytest.raises(codec.DecodeError):
            codec.decode("abcde")

    def test_rejects_non_string(self):
        with pytest.raises(codec.DecodeError):
            codec.decode(b"YQ")  # type: ignore[arg-type]

    def test_decode_error_is_value_error(self):
        assert issubclass(codec.DecodeError, ValueError)


class TestJsonSegments:
    def test_encode_json_is_compact_and_ordered(self):
        segment = codec.encode_json({"b": 1, "a": [1, 2]})
        assert codec.decode(segment) == b'{"b":1,"a":[1,2]}'

    def test_decode_json_rejects_non_json(self):
        with pytest.raises(codec.DecodeError):
            codec.decode_json(codec.encode(b"not json"))

    def test_decode_json_rejects_invalid_utf8(self):
        with pytest.raises(codec.DecodeError):
            codec.decode_json(codec.encode(b"\xff\xfe"))


class TestSigner:
    """HMAC-SHA256 signing and constant-time verification."""

    def test_sign_matches_hmac_sha256(self):
        expected = hmac.new(b"key", b"message", hashlib.sha256).digest()
        assert signer.sign(b"key", b"message") == expected
        assert signer.sign("key", "message") == expected

    def test_signature_is_32_bytes(self):
        assert len(signer.sign(b"key", b"")) == 32

    def test_verify_accepts_matching_signature(self):
        signature = signer.sign(b"key", b"message")
        assert signer.verify(b"key", b"message", signature)

    def test_verify_rejects_other_key_or_message(self):
        signature = signer.sign(b"key", b"message")
        assert not signer.verify(b"other", b"message", signature)
        assert not signer.verify(b"key", b"messagE", signature)

    def test_verify_rejects_truncated_signature(self):
        signature = signer.sign(b"key", b"message")
        assert not signer.verify(b"key", b"message", signature[:-1])

    def test_verify_rejects_any_flipped_signature_bit(self):
        signature = signer.sign(b"key", b"message")
        for bit in range(len(signature) * 8):
            flipped = bytearray(signature)
            flipped[bit // 8] ^= 1 << (bit % 8)
            assert signer.verify(b"key", b"message", bytes(flipped)) is False, bit

    def test_verify_rejects_any_flipped_message_bit(self):
        message = b"header.payload"
        signature = signer.sign(b"key", message)
        for bit in range(len(message) * 8):
            flipped = bytearray(message)
            flipped[bit // 8] ^= 1 << (bit % 8)
            assert signer.verify(b"key", bytes(flipped), signature) is False, bit
