"""
Expansion of a sync source into repository descriptors.

A source is one of:
- docker: a single image, or every tag of a repository
- dir: a directory tree; every directory holding a manifest.json is an image
- yaml: a document listing registries, each with explicit tag lists or
  tag regular expressions

Per-repository problems in a YAML source are logged and skipped so one bad
entry does not block the others. Problems with the source as a whole raise.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

import pydantic
import yaml

from .cancel import CancelContext
from .errors import (
    InvalidReference,
    NoImagesFound,
    ResolutionError,
    TagListingDenied,
    UnsupportedTransport,
)
from .models import (
    AuthContext,
    RegistrySyncEntry,
    RepositoryDescriptor,
    SourceConfig,
    Transport,
    auth_context_for_entry,
)
from .reference import DirectoryReference, DockerReference, ImageReference, parse_normalized_named, parse_repository_reference
from .retry import run_with_retry
from .runtime_types import TagLister

__all__ = ["SourceResolver", "MANIFEST_FILE", "dedupe_references"]

MANIFEST_FILE = "manifest.json"


def dedupe_references(refs: List[ImageReference]) -> List[ImageReference]:
    """Drop repeated references (by serialized form), keeping first occurrences."""
    seen = set()
    out = []
    for ref in refs:
        key = str(ref)
        if key not in seen:
            seen.add(key)
            out.append(ref)
    return out


class SourceResolver:
    """
    Turns (transport, source, auth) into a list of RepositoryDescriptors.

    Example:
        >>> resolver = SourceResolver(registry_clients)
        >>> descriptors = resolver.resolve(ctx, "docker", "busybox", AuthContext())
    """

    def __init__(self, tag_lister: TagLister, *, logger: Optional[logging.Logger] = None, retry_times: int = 0):
        self._tag_lister = tag_lister
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._retry_times = retry_times

    def resolve(
        self,
        ctx: CancelContext,
        source_transport: str,
        source: str,
        auth: AuthContext,
    ) -> List[RepositoryDescriptor]:
        """
        Expand `source` into descriptors, in source order.

        Raises:
            UnsupportedTransport: If source_transport is not docker, dir or yaml
            NoImagesFound: If nothing survives resolution
            ResolutionError: If the source as a whole cannot be read
        """
        if source_transport == Transport.DOCKER.value:
            return self._resolve_docker(ctx, source, auth)
        if source_transport == Transport.DIR.value:
            return self._resolve_dir(source, auth)
        if source_transport == Transport.YAML.value:
            return self._resolve_yaml(ctx, source)
        raise UnsupportedTransport(source_transport, role="source")

    def _list_tags(self, ctx: CancelContext, auth: AuthContext, repository: DockerReference) -> List[ImageReference]:
        tags = run_with_retry(
            ctx,
            lambda: self._tag_lister.list_tags(ctx, auth, repository),
            self._retry_times,
            description=f"listing tags of {repository.name}",
            logger=self._log,
        )
        refs: List[ImageReference] = []
        for tag in tags:
            try:
                refs.append(repository.with_tag(tag))
            except InvalidReference as e:
                self._log.error(f"Skipping tag {tag!r} of {repository.name}: {e}")
        return refs

    # docker

    def _resolve_docker(self, ctx: CancelContext, source: str, auth: AuthContext) -> List[RepositoryDescriptor]:
        try:
            ref = parse_normalized_named(source)
        except InvalidReference as e:
            raise ResolutionError(f"Cannot obtain a valid image reference for transport 'docker' and reference {source!r}: {e}") from e

        if not ref.is_name_only():
            self._log.info(f"Tag presence check: imagename={ref.name} tagged={bool(ref.tag)}")
            return [RepositoryDescriptor(images=(ref,), auth=auth)]

        self._log.info(f"Getting tags: image={ref.name}")
        try:
            images = self._list_tags(ctx, auth, ref)
        except TagListingDenied as e:
            self._log.warning(f"{e}; no tags resolved for {ref.name}")
            images = []
        except ResolutionError:
            raise
        except Exception as e:
            if ctx.done:
                raise
            raise ResolutionError(f"Error determining repository tags for repo {ref.name}: {e}") from e

        images = dedupe_references(images)
        if not images:
            raise NoImagesFound(source)
        return [RepositoryDescriptor(images=tuple(images), auth=auth)]

    # dir

    def _resolve_dir(self, source: str, auth: AuthContext) -> List[RepositoryDescriptor]:
        if not os.path.exists(source):
            raise ResolutionError(f"Checking source directory {source!r}: no such file or directory")
        base = os.path.realpath(source)
        if not os.path.isdir(base):
            raise ResolutionError(f"Source {source!r} is not a directory")

        images: List[ImageReference] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames.sort()
            if MANIFEST_FILE in filenames and os.path.isfile(os.path.join(dirpath, MANIFEST_FILE)):
                images.append(DirectoryReference.from_path(dirpath))
                # An image directory is a leaf: do not look for nested images.
                dirnames[:] = []

        if not images:
            raise NoImagesFound(source)
        self._log.debug(f"Found {len(images)} images under {base}")
        return [RepositoryDescriptor(images=tuple(images), auth=auth, dir_base_path=base)]

    # yaml

    def _load_config(self, source: str) -> SourceConfig:
        try:
            return SourceConfig.from_yaml_file(Path(source))
        except OSError as e:
            raise ResolutionError(f"Error reading YAML file {source!r}: {e}") from e
        except yaml.YAMLError as e:
            raise ResolutionError(f"Error parsing YAML file {source!r}: {e}") from e
        except pydantic.ValidationError as e:
            raise ResolutionError(f"Invalid sync configuration in {source!r}: {e}") from e

    def _resolve_yaml(self, ctx: CancelContext, source: str) -> List[RepositoryDescriptor]:
        config = self._load_config(source)

        descriptors: List[RepositoryDescriptor] = []
        for registry, entry in config.items():
            if not entry.has_images():
                self._log.warning(f"No images specified for registry {registry}")
                continue
            descriptors.extend(self._resolve_registry(ctx, registry, entry))

        if not descriptors:
            raise NoImagesFound(source)
        return descriptors

    def _resolve_registry(self, ctx: CancelContext, registry: str, entry: RegistrySyncEntry) -> List[RepositoryDescriptor]:
        # One AuthContext shared by every repository of this registry.
        auth = auth_context_for_entry(entry)
        self._log.info(f"Processing registry {registry}")

        by_repo: Dict[str, List[ImageReference]] = {}
        for image_name, tags in entry.images.items():
            refs = self._resolve_tagged(ctx, registry, image_name, tags, auth)
            if refs is not None:
                by_repo.setdefault(image_name, []).extend(refs)
        for image_name, pattern in entry.images_by_tag_regex.items():
            refs = self._resolve_regex(ctx, registry, image_name, pattern, auth)
            if refs is not None:
                by_repo.setdefault(image_name, []).extend(refs)

        descriptors = []
        for image_name, refs in by_repo.items():
            refs = dedupe_references(refs)
            if not refs:
                self._log.warning(f"No tags to sync found for {registry}/{image_name}")
                continue
            descriptors.append(RepositoryDescriptor(images=tuple(refs), auth=auth))
        return descriptors

    def _repository(self, registry: str, image_name: str) -> Optional[DockerReference]:
        try:
            return parse_repository_reference(f"{registry}/{image_name}")
        except InvalidReference as e:
            self._log.error(f"Error parsing repository name {registry}/{image_name}, skipping: {e}")
            return None

    def _resolve_tagged(
        self,
        ctx: CancelContext,
        registry: str,
        image_name: str,
        tags: List[str],
        auth: AuthContext,
    ) -> Optional[List[ImageReference]]:
        repository = self._repository(registry, image_name)
        if repository is None:
            return None

        if not tags:
            self._log.info(f"Querying registry for image tags: image={repository.name}")
            try:
                return self._list_tags(ctx, auth, repository)
            except Exception as e:
                if ctx.done:
                    raise
                self._log.error(f"Error determining repository tags for {repository.name}, skipping: {e}")
                return None

        refs: List[ImageReference] = []
        for tag in tags:
            try:
                refs.append(repository.with_tag(tag))
            except InvalidReference as e:
                self._log.error(f"Error parsing tag {tag!r} of {repository.name}, skipping: {e}")
        return refs

    def _resolve_regex(
        self,
        ctx: CancelContext,
        registry: str,
        image_name: str,
        pattern: str,
        auth: AuthContext,
    ) -> Optional[List[ImageReference]]:
        repository = self._repository(registry, image_name)
        if repository is None:
            return None

        try:
            regex = re.compile(pattern)
        except re.error as e:
            self._log.error(f"Error compiling regex {pattern!r} for {repository.name}, skipping: {e}")
            return None

        self._log.info(f"Querying registry for image tags: image={repository.name} regex={pattern}")
        try:
            all_refs = self._list_tags(ctx, auth, repository)
        except Exception as e:
            if ctx.done:
                raise
            self._log.error(f"Error determining repository tags for {repository.name}, skipping: {e}")
            return None

        return [ref for ref in all_refs if regex.search(ref.tag)]
