"""
Tests for digest parsing and the streaming verifying reader.
"""
from __future__ import annotations

import hashlib
import io

import pytest

from imagesync.digest import (
    SUPPORTED_DIGESTS,
    DigestVerifyingReader,
    VerificationFlag,
    digest_of,
    manifest_digest,
    parse_digest,
    register_digest_algorithm,
)
from imagesync.errors import DigestMismatch, InvalidDigestSpec, ValidationError

CONTENT = b"hello layer" * 1000
DIGEST = f"sha256:{hashlib.sha256(CONTENT).hexdigest()}"


class TestParseDigest:

    def test_valid_digest(self):
        algorithm, hex_value = parse_digest(DIGEST)
        assert algorithm == "sha256"
        assert hex_value == DIGEST.split(":", 1)[1]

    def test_uppercase_hex_normalized(self):
        _, hex_value = parse_digest(DIGEST.upper().replace("SHA256", "sha256"))
        assert hex_value == DIGEST.split(":", 1)[1]

    @pytest.mark.parametrize("value", [
        "no-separator",
        ":abcd",
        "md5:" + "0" * 32,
        "sha256:xyz",
        "sha256:" + "0" * 62,
        "sha256:" + "0" * 65,
    ])
    def test_invalid_digests_rejected(self, value):
        with pytest.raises(InvalidDigestSpec):
            parse_digest(value)

    def test_invalid_digest_is_validation_error(self):
        with pytest.raises(ValidationError):
            parse_digest("sha256:")

    def test_registered_algorithm_usable(self, monkeypatch):
        monkeypatch.setitem(SUPPORTED_DIGESTS, "sha512", hashlib.sha512)
        algorithm, _ = parse_digest("sha512:" + "ab" * 64)
        assert algorithm == "sha512"

    def test_register_rejects_bad_names(self):
        with pytest.raises(ValueError):
            register_digest_algorithm("bad:name", hashlib.sha256)


class TestDigestHelpers:

    def test_digest_of(self):
        assert digest_of(CONTENT) == DIGEST

    def test_manifest_digest_is_sha256_of_bytes(self):
        manifest = b'{"schemaVersion":2}'
        assert manifest_digest(manifest) == "sha256:" + hashlib.sha256(manifest).hexdigest()


class TestDigestVerifyingReader:

    def test_matching_content_fully_readable(self):
        flag = VerificationFlag()
        reader = DigestVerifyingReader(io.BytesIO(CONTENT), DIGEST, flag)

        data = b"".join(iter(lambda: reader.read(4096), b""))

        assert data == CONTENT
        assert reader.bytes_read == len(CONTENT)
        assert flag.failed is False
        assert reader.error is None

    def test_read_all_then_eof(self):
        flag = VerificationFlag()
        reader = DigestVerifyingReader(io.BytesIO(CONTENT), DIGEST, flag)
        assert reader.read() == CONTENT
        assert reader.read() == b""
        assert reader.read() == b""
        assert flag.failed is False

    def test_zero_size_read_is_not_end_of_stream(self):
        flag = VerificationFlag()
        reader = DigestVerifyingReader(io.BytesIO(CONTENT), DIGEST, flag)

        assert reader.read(0) == b""
        assert reader.read(10) == CONTENT[:10]
        assert reader.read(0) == b""
        assert reader.read() == CONTENT[10:]
        assert reader.read() == b""
        assert flag.failed is False
        assert reader.error is None

    def test_mismatch_raises_at_end_of_stream(self):
        flag = VerificationFlag()
        tampered = CONTENT[:-1] + b"X"
        reader = DigestVerifyingReader(io.BytesIO(tampered), DIGEST, flag)

        assert reader.read(len(tampered)) == tampered
        assert flag.failed is False
        with pytest.raises(DigestMismatch) as exc_info:
            reader.read(10)

        assert flag.failed is True
        assert exc_info.value.expected == DIGEST
        assert exc_info.value.actual == digest_of(tampered)
        assert "Digest did not match" in str(exc_info.value)

    def test_mismatch_is_sticky(self):
        flag = VerificationFlag()
        reader = DigestVerifyingReader(io.BytesIO(b"wrong"), DIGEST, flag)
        reader.read()
        with pytest.raises(DigestMismatch) as first:
            reader.read()
        with pytest.raises(DigestMismatch) as second:
            reader.read()
        assert first.value is second.value
        assert reader.error is first.value

    def test_flag_set_once_even_if_error_swallowed(self):
        flag = VerificationFlag()
        reader = DigestVerifyingReader(io.BytesIO(b"wrong"), DIGEST, flag)
        try:
            for _ in reader:
                pass
        except DigestMismatch:
            pass
        assert flag.failed is True

    def test_empty_content(self):
        flag = VerificationFlag()
        reader = DigestVerifyingReader(io.BytesIO(b""), digest_of(b""), flag)
        assert list(reader) == []
        assert flag.failed is False

    def test_invalid_expected_digest_rejected_at_construction(self):
        with pytest.raises(InvalidDigestSpec):
            DigestVerifyingReader(io.BytesIO(CONTENT), "sha256:nothex", VerificationFlag())
