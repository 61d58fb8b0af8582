"""
Fake TagLister and ImageCopier implementations for testing.

These test doubles record every call so tests can assert on the exact
sequence of tag listings and copies the orchestrator performs.
"""
from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple

from imagesync.cancel import CancelContext
from imagesync.errors import TagListingDenied
from imagesync.models import AuthContext, CopyOptions
from imagesync.reference import DockerReference, ImageReference
from imagesync.runtime_types import ImageCopier, TagLister

__all__ = ["FakeTagLister", "FakeCopier"]


class FakeTagLister(TagLister):
    """
    In-memory tag lister keyed by normalized repository name.

    Repositories listed in `denied` raise TagListingDenied; `errors` maps a
    repository to an exception raised on every call.
    """

    def __init__(
        self,
        tags: Optional[Dict[str, List[str]]] = None,
        *,
        denied: Optional[List[str]] = None,
        errors: Optional[Dict[str, BaseException]] = None,
    ) -> None:
        self.tags = dict(tags or {})
        self.denied = set(denied or [])
        self.errors = dict(errors or {})
        self.calls: List[Tuple[str, AuthContext]] = []

    def list_tags(self, ctx: CancelContext, auth: AuthContext, repository: DockerReference) -> List[str]:
        self.calls.append((repository.name, auth))
        if repository.name in self.denied:
            raise TagListingDenied(repository.name, 401)
        if repository.name in self.errors:
            raise self.errors[repository.name]
        return list(self.tags.get(repository.name, []))


class FakeCopier(ImageCopier):
    """
    Copier that records (source, destination, options) instead of copying.

    `failures` is a list of exceptions raised by successive calls before the
    copier starts succeeding; `fail_for` maps a serialized source reference to
    an exception raised on every copy of that image.
    """

    supports_signing = False

    def __init__(
        self,
        *,
        failures: Optional[List[BaseException]] = None,
        fail_for: Optional[Dict[str, BaseException]] = None,
        on_copy: Optional[Callable[[ImageReference, ImageReference], None]] = None,
    ) -> None:
        self.failures = list(failures or [])
        self.fail_for = dict(fail_for or {})
        self.on_copy = on_copy
        self.calls: List[Tuple[ImageReference, ImageReference, CopyOptions]] = []

    def copy(self, ctx: CancelContext, src_ref: ImageReference, dst_ref: ImageReference, options: CopyOptions) -> None:
        self.calls.append((src_ref, dst_ref, options))
        if self.on_copy is not None:
            self.on_copy(src_ref, dst_ref)
        if str(src_ref) in self.fail_for:
            raise self.fail_for[str(src_ref)]
        if self.failures:
            raise self.failures.pop(0)

    @property
    def copied(self) -> List[Tuple[str, str]]:
        return [(str(src), str(dst)) for src, dst, _ in self.calls]
