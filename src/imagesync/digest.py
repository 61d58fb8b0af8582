"""
Digest parsing and streaming verification.

DigestVerifyingReader authenticates a blob while it is being consumed, so a
copier can stream a layer from source to destination without buffering it
and still refuse bytes that do not match the digest they were requested by.
"""
from __future__ import annotations

import binascii
import hashlib
import hmac
from dataclasses import dataclass
from typing import IO, Callable, Dict, Protocol, Tuple

from .errors import DigestMismatch, InvalidDigestSpec

__all__ = [
    "SUPPORTED_DIGESTS",
    "register_digest_algorithm",
    "parse_digest",
    "digest_of",
    "manifest_digest",
    "VerificationFlag",
    "DigestVerifyingReader",
]

CHUNK_SIZE = 1024 * 1024  # 1 MiB


class _Hash(Protocol):
    digest_size: int

    def update(self, data: bytes) -> None: ...

    def digest(self) -> bytes: ...


# Algorithm name -> hash factory. New algorithms register here; call sites
# only ever see the "<algorithm>:<hex>" string.
SUPPORTED_DIGESTS: Dict[str, Callable[[], _Hash]] = {
    "sha256": hashlib.sha256,
}


def register_digest_algorithm(name: str, factory: Callable[[], _Hash]) -> None:
    """Make `name` usable in digest strings."""
    if not name or ":" in name:
        raise ValueError(f"Invalid digest algorithm name: {name!r}")
    SUPPORTED_DIGESTS[name] = factory


def parse_digest(digest: str) -> Tuple[str, str]:
    """
    Split and validate a digest string.

    Args:
        digest: Digest in the form "<algorithm>:<hex>"

    Returns:
        (algorithm, lowercase hex)

    Raises:
        InvalidDigestSpec: If the algorithm is unknown, the hex cannot be
            decoded, or its length does not match the algorithm's output size
    """
    algorithm, sep, hex_value = digest.partition(":")
    if not sep or not algorithm:
        raise InvalidDigestSpec(f"Invalid digest specification {digest}")
    factory = SUPPORTED_DIGESTS.get(algorithm)
    if factory is None:
        raise InvalidDigestSpec(f"Invalid digest specification {digest}: unknown digest type {algorithm}")
    try:
        raw = binascii.unhexlify(hex_value)
    except (binascii.Error, ValueError) as e:
        raise InvalidDigestSpec(f"Invalid digest value {digest}: {e}") from e
    size = factory().digest_size
    if len(raw) != size:
        raise InvalidDigestSpec(
            f"Invalid digest specification {digest}: length {len(raw)} does not match {size}"
        )
    return algorithm, hex_value.lower()


def digest_of(data: bytes, algorithm: str = "sha256") -> str:
    """Digest string of an in-memory payload."""
    factory = SUPPORTED_DIGESTS.get(algorithm)
    if factory is None:
        raise InvalidDigestSpec(f"unknown digest type {algorithm}")
    h = factory()
    h.update(data)
    return f"{algorithm}:{h.digest().hex()}"


def manifest_digest(manifest: bytes) -> str:
    """Canonical digest of a manifest: sha256 over its exact bytes."""
    return digest_of(manifest, "sha256")


@dataclass
class VerificationFlag:
    """
    Caller-owned failure indicator.

    A consumer that stops reading early (for example because the destination
    already has the blob) never reaches end of stream, so verification never
    runs. Callers check `failed` after the consumer returns instead of trusting
    that an error would have surfaced.
    """
    failed: bool = False


class DigestVerifyingReader:
    """
    File-like wrapper that hashes everything read through it.

    At end of stream the running hash is compared, in constant time, with the
    expected digest. On mismatch the final read raises DigestMismatch instead
    of returning b"", the caller's flag is set, and every later read raises
    the same error.
    """

    def __init__(self, source: IO[bytes], expected_digest: str, failure: VerificationFlag):
        algorithm, hex_value = parse_digest(expected_digest)
        self._source = source
        self._algorithm = algorithm
        self._hash = SUPPORTED_DIGESTS[algorithm]()
        self._expected = binascii.unhexlify(hex_value)
        self._failure = failure
        self._error: DigestMismatch | None = None
        self._eof = False
        self.bytes_read = 0

    @property
    def error(self) -> DigestMismatch | None:
        """The mismatch raised at end of stream, if any."""
        return self._error

    @property
    def expected_digest(self) -> str:
        return f"{self._algorithm}:{self._expected.hex()}"

    def read(self, size: int = -1) -> bytes:
        if self._error is not None:
            raise self._error
        if self._eof or size == 0:
            return b""

        chunk = self._source.read(size)
        if chunk:
            self._hash.update(chunk)
            self.bytes_read += len(chunk)
            return chunk

        self._eof = True
        actual = self._hash.digest()
        if not hmac.compare_digest(actual, self._expected):
            self._failure.failed = True
            self._error = DigestMismatch(
                expected=self.expected_digest,
                actual=f"{self._algorithm}:{actual.hex()}",
            )
            raise self._error
        return b""

    def __iter__(self):
        while True:
            chunk = self.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk
