"""
Local directory image layout (dir: transport).

    <path>/
        manifest.json
        version            "Directory Transport Version: 1.1\\n"
        <hex>              one file per blob (config and layers)
        signature-1 ...    optional detached signatures

Blobs written here are streamed through a DigestVerifyingReader into a temp
file and renamed into place only after verification, so a failed or
interrupted copy never leaves a blob file with the wrong content.
"""
from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, List, Optional, Tuple, Union

from ..digest import CHUNK_SIZE, DigestVerifyingReader, VerificationFlag, parse_digest
from .media_types import guess_manifest_type

__all__ = ["DirectoryImage", "write_stream_atomically", "VERSION_CONTENT"]

MANIFEST_FILE = "manifest.json"
VERSION_FILE = "version"
VERSION_CONTENT = "Directory Transport Version: 1.1\n"
SIGNATURE_PREFIX = "signature-"


def _write_file_atomically(target_path: Path, content: bytes) -> None:
    temp_path = target_path.parent / f"{target_path.name}.tmp.{os.getpid()}"
    try:
        with open(temp_path, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def write_stream_atomically(target_path: Path, reader: IO[bytes]) -> int:
    """
    Stream content to a file with an atomic rename.

    The reader is consumed to end of stream before the rename, so a
    DigestVerifyingReader gets to compare its hash. Any error, including a
    digest mismatch raised by the reader, removes the temp file.

    Returns:
        Number of bytes written

    Raises:
        DigestMismatch: Propagated from a verifying reader
        OSError: If file operations fail
    """
    target_path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=".imagesync.tmp.", dir=target_path.parent)
    temp_path = Path(temp_name)
    written = 0
    try:
        with os.fdopen(fd, "wb", buffering=0) as out:
            while True:
                chunk = reader.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
                written += len(chunk)
            out.flush()
            os.fsync(out.fileno())
        os.replace(temp_path, target_path)
    except Exception:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise
    return written


class DirectoryImage:
    """
    Reader and writer for one image stored in a directory.

    Example:
        >>> image = DirectoryImage("/backup/busybox:latest")
        >>> manifest, media_type = image.read_manifest()
    """

    def __init__(self, path: Union[str, os.PathLike]):
        self.path = Path(path)

    # Layout

    @property
    def manifest_path(self) -> Path:
        return self.path / MANIFEST_FILE

    @property
    def version_path(self) -> Path:
        return self.path / VERSION_FILE

    def blob_path(self, digest: str) -> Path:
        _, hex_value = parse_digest(digest)
        return self.path / hex_value

    def _existing_blob_path(self, digest: str) -> Optional[Path]:
        path = self.blob_path(digest)
        if path.is_file():
            return path
        # Older writers stored layers with a .tar suffix.
        legacy = path.with_name(path.name + ".tar")
        if legacy.is_file():
            return legacy
        return None

    def signature_path(self, index: int) -> Path:
        """Path of the index-th signature (0-based; files are 1-based)."""
        return self.path / f"{SIGNATURE_PREFIX}{index + 1}"

    # Reading

    def read_manifest(self) -> Tuple[bytes, str]:
        """
        Returns:
            (raw manifest bytes, media type guessed from the body)

        Raises:
            FileNotFoundError: If the directory holds no manifest
        """
        manifest = self.manifest_path.read_bytes()
        return manifest, guess_manifest_type(manifest)

    def has_blob(self, digest: str) -> bool:
        return self._existing_blob_path(digest) is not None

    def blob_size(self, digest: str) -> int:
        path = self._existing_blob_path(digest)
        if path is None:
            raise FileNotFoundError(f"Blob {digest} not found in {self.path}")
        return path.stat().st_size

    @contextmanager
    def open_blob(self, digest: str) -> Iterator[IO[bytes]]:
        """Open a stored blob for reading (unverified)."""
        path = self._existing_blob_path(digest)
        if path is None:
            raise FileNotFoundError(f"Blob {digest} not found in {self.path}")
        with open(path, "rb") as f:
            yield f

    def read_signatures(self) -> List[bytes]:
        """All signatures, in order, stopping at the first missing index."""
        signatures = []
        index = 0
        while True:
            path = self.signature_path(index)
            if not path.is_file():
                return signatures
            signatures.append(path.read_bytes())
            index += 1

    # Writing

    def write_blob(self, digest: str, source: IO[bytes], failure: VerificationFlag) -> int:
        """
        Store a blob, verifying it against `digest` while streaming.

        Returns:
            Number of bytes written

        Raises:
            DigestMismatch: If the content does not match (nothing is written)
        """
        reader = DigestVerifyingReader(source, digest, failure)
        return write_stream_atomically(self.blob_path(digest), reader)

    def write_manifest(self, manifest: bytes) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        _write_file_atomically(self.manifest_path, manifest)

    def write_version(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        _write_file_atomically(self.version_path, VERSION_CONTENT.encode())

    def write_signatures(self, signatures: List[bytes]) -> None:
        for index, signature in enumerate(signatures):
            _write_file_atomically(self.signature_path(index), signature)
