"""
Error taxonomy for imagesync.

Every failure raised by the sync core derives from SyncError so the CLI can
map it to an exit code. The subclasses follow the phases of a sync job:
validation happens before any I/O, resolution builds the list of images,
copying moves blobs, and integrity errors mean the bytes themselves are wrong.
"""
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for all imagesync errors."""
    pass


class ValidationError(SyncError):
    """
    Malformed sync job.

    Raised when:
    - A transport is missing or not supported for its role
    - The requested source/destination combination is rejected (dir -> dir)
    - An option is not supported by the configured copier
    """
    pass


class UnsupportedTransport(ValidationError):
    """Transport name is not one of the supported set."""

    def __init__(self, transport: str, role: str = "source"):
        super().__init__(f"{transport!r} is not a valid {role} transport")
        self.transport = transport
        self.role = role


class InvalidDigestSpec(ValidationError):
    """Digest string is not `<algorithm>:<hex>` for a known algorithm."""
    pass


class InvalidReference(ValidationError):
    """Image or repository reference cannot be parsed."""
    pass


class ResolutionError(SyncError):
    """
    The sync source could not be expanded into images.

    Raised when:
    - The YAML source is unreadable or malformed
    - A directory source does not exist
    - Tag listing for a single repository source fails
    """
    pass


class NoImagesFound(ResolutionError):
    """Resolution completed but produced zero images."""

    def __init__(self, source: str):
        super().__init__(f"No images to sync found in {source!r}")
        self.source = source


class TagListingDenied(ResolutionError):
    """
    Registry refused to enumerate tags for a repository.

    Some registries block the "list all tags" endpoint; the resolver logs this
    and continues with whatever it could resolve.
    """

    def __init__(self, repository: str, status: Optional[int] = None):
        detail = f" (HTTP {status})" if status else ""
        super().__init__(f"Registry disallows tag list retrieval for {repository}{detail}")
        self.repository = repository
        self.status = status


class DestinationExists(SyncError):
    """Refusing to overwrite an existing destination directory."""

    def __init__(self, path: str):
        super().__init__(f"Refusing to overwrite destination directory {path!r}")
        self.path = path


class CopyError(SyncError):
    """
    Copying one image failed after all retries.

    Carries the repository, tag and number of attempts so the final message
    is self-explanatory without a traceback. The underlying error is chained
    as __cause__.
    """

    def __init__(self, message: str, *, repository: Optional[str] = None,
                 tag: Optional[str] = None, attempts: int = 1):
        super().__init__(message)
        self.repository = repository
        self.tag = tag
        self.attempts = attempts


class UnsupportedManifest(SyncError):
    """Manifest media type is not a single-image manifest the copier handles."""
    pass


class IntegrityError(SyncError):
    """Content does not match its declared digest. Never retried."""
    pass


class DigestMismatch(IntegrityError):
    """
    Content digest validation failed.

    Raised by DigestVerifyingReader at end of stream when the running hash
    differs from the expected digest.
    """

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Digest did not match, expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class RegistryError(SyncError):
    """
    Error code returned by a registry (OCI distribution error body).

    Codes follow the OCI distribution API: UNAUTHORIZED, DENIED, NAME_UNKNOWN,
    MANIFEST_UNKNOWN, BLOB_UNKNOWN, TOOMANYREQUESTS, UNKNOWN, ...
    """

    def __init__(self, code: str, message: str = "", status: Optional[int] = None):
        text = f"{code}: {message}" if message else code
        if status is not None:
            text = f"{text} (HTTP {status})"
        super().__init__(text)
        self.code = code
        self.message = message
        self.status = status


class OperationCancelled(SyncError):
    """The caller cancelled the operation."""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


class DeadlineExceeded(OperationCancelled):
    """The caller's deadline (command timeout) passed."""

    def __init__(self, message: str = "deadline exceeded"):
        super().__init__(message)


__all__ = [
    "SyncError",
    "ValidationError",
    "UnsupportedTransport",
    "InvalidDigestSpec",
    "InvalidReference",
    "ResolutionError",
    "NoImagesFound",
    "TagListingDenied",
    "DestinationExists",
    "CopyError",
    "UnsupportedManifest",
    "IntegrityError",
    "DigestMismatch",
    "RegistryError",
    "OperationCancelled",
    "DeadlineExceeded",
]
