"""
Image inspection: manifest digest, repository tags and a config summary.

The config blob is read through a DigestVerifyingReader like every other
blob, so a registry serving the wrong bytes is reported as DigestMismatch.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .cancel import CancelContext
from .copier import SourceImage, manifest_blobs
from .digest import DigestVerifyingReader, VerificationFlag, manifest_digest
from .errors import UnsupportedManifest
from .models import AuthContext, CopyOptions
from .reference import DockerReference, ImageReference
from .storage.media_types import SUPPORTED_MANIFEST_TYPES
from .storage.registry_http import RegistryClients

__all__ = ["ImageInspection", "ImageInspector"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageInspection:
    """Summary of one image as printed by `inspect`."""
    digest: str
    name: Optional[str] = None
    repo_tags: List[str] = field(default_factory=list)
    created: Optional[str] = None
    docker_version: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    architecture: str = ""
    os: str = ""
    layers: List[str] = field(default_factory=list)
    env: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.name:
            out["Name"] = self.name
        out.update({
            "Digest": self.digest,
            "RepoTags": list(self.repo_tags),
            "Created": self.created,
            "DockerVersion": self.docker_version or "",
            "Labels": dict(self.labels),
            "Architecture": self.architecture,
            "Os": self.os,
            "Layers": list(self.layers),
            "Env": list(self.env),
        })
        return out


class ImageInspector:
    """
    Reads manifests and config blobs from registries or directories.

    Example:
        >>> with RegistryClients() as clients:
        ...     info = ImageInspector(clients).inspect(ctx, ref, AuthContext())
    """

    def __init__(self, clients: RegistryClients):
        self._clients = clients

    def _open(self, ctx: CancelContext, ref: ImageReference, auth: AuthContext) -> SourceImage:
        return SourceImage(self._clients, ctx, ref, CopyOptions(source_auth=auth))

    def raw_manifest(self, ctx: CancelContext, ref: ImageReference, auth: AuthContext) -> bytes:
        """Manifest bytes exactly as stored."""
        return self._open(ctx, ref, auth).manifest

    def raw_config(self, ctx: CancelContext, ref: ImageReference, auth: AuthContext) -> bytes:
        """
        Config blob bytes, verified against the manifest's config digest.

        Raises:
            UnsupportedManifest: If the manifest is a list or index
            DigestMismatch: If the config blob does not match its digest
        """
        return self._read_config(self._open(ctx, ref, auth))

    def inspect(self, ctx: CancelContext, ref: ImageReference, auth: AuthContext) -> ImageInspection:
        """
        Summarize an image.

        RepoTags is only filled for registry images; listing the tags is one
        extra request against the image's repository.
        """
        source = self._open(ctx, ref, auth)
        config = json.loads(self._read_config(source))
        body = json.loads(source.manifest)

        name = None
        repo_tags: List[str] = []
        if isinstance(ref, DockerReference):
            name = ref.name
            repo_tags = self._clients.list_tags(ctx, auth, ref.repository())

        container_config = config.get("config") or {}
        return ImageInspection(
            digest=manifest_digest(source.manifest),
            name=name,
            repo_tags=repo_tags,
            created=config.get("created"),
            docker_version=config.get("docker_version"),
            labels=container_config.get("Labels") or {},
            architecture=config.get("architecture", ""),
            os=config.get("os", ""),
            layers=[layer["digest"] for layer in body.get("layers") or []],
            env=container_config.get("Env") or [],
        )

    def _read_config(self, source: SourceImage) -> bytes:
        if source.media_type not in SUPPORTED_MANIFEST_TYPES:
            raise UnsupportedManifest(
                f"Cannot read the config of {source.ref}: manifest type {source.media_type or 'unknown'!r} "
                "is not a single-image manifest"
            )
        config_digest, _ = manifest_blobs(source.manifest)[0]
        logger.debug(f"Reading config blob {config_digest}")
        reader_flag = VerificationFlag()
        with source.open_blob(config_digest) as stream:
            return b"".join(DigestVerifyingReader(stream, config_digest, reader_flag))
