"""
Collaborator protocols for the sync core.

The orchestrator and resolver never talk to a registry or the filesystem
image layout directly; they go through these two protocols. This keeps the
state machine testable with in-memory fakes and lets the copy engine be
swapped without touching resolution.
"""
from __future__ import annotations

from typing import List, Protocol, runtime_checkable

from .cancel import CancelContext
from .models import AuthContext, CopyOptions
from .reference import DockerReference, ImageReference

__all__ = ["ImageCopier", "TagLister"]


@runtime_checkable
class ImageCopier(Protocol):
    """
    Protocol for copying one image between two references.

    Implementations may expose a boolean `supports_signing` attribute; the
    orchestrator rejects a job that asks for signing when it is missing or
    False.
    """

    def copy(
        self,
        ctx: CancelContext,
        src_ref: ImageReference,
        dst_ref: ImageReference,
        options: CopyOptions,
    ) -> None:
        """
        Copy the image at src_ref to dst_ref.

        Called once per attempt; the orchestrator handles retries. An
        implementation must leave the destination in a state where a repeated
        call can succeed.

        Raises:
            Exception: Any failure. The retry classifier decides whether
                another attempt is made.
        """
        ...


@runtime_checkable
class TagLister(Protocol):
    """Protocol for enumerating the tags of a registry repository."""

    def list_tags(
        self,
        ctx: CancelContext,
        auth: AuthContext,
        repository: DockerReference,
    ) -> List[str]:
        """
        List all tags in `repository`, in registry order.

        Raises:
            TagListingDenied: If the registry refuses to enumerate tags
            Exception: Any other failure (network, protocol)
        """
        ...
