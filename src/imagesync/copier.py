"""
Reference ImageCopier: plain manifest + blob copy.

Supports docker -> docker, docker -> dir and dir -> docker for single-image
manifests (OCI image manifest, Docker v2 schema 2). Every blob is streamed
through a DigestVerifyingReader on its way to the destination; the manifest
is written last, so a destination never references a blob it does not hold.

Manifest conversion, layer recompression and signing are not implemented.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import IO, Dict, Iterator, List, Tuple

from .cancel import CancelContext
from .digest import DigestVerifyingReader, VerificationFlag, parse_digest
from .errors import CopyError, UnsupportedManifest
from .models import CopyOptions
from .reference import DirectoryReference, DockerReference, ImageReference
from .storage.directory import DirectoryImage
from .storage.media_types import SUPPORTED_MANIFEST_TYPES, guess_manifest_type
from .storage.registry_http import RegistryClients

__all__ = ["BlobCopier", "SourceImage", "manifest_blobs"]

logger = logging.getLogger(__name__)


def manifest_blobs(manifest: bytes) -> List[Tuple[str, int]]:
    """
    (digest, size) of the config and every layer, config first, each digest once.

    Raises:
        UnsupportedManifest: If the manifest is not valid JSON or lacks descriptors
        InvalidDigestSpec: If a descriptor carries a malformed digest
    """
    try:
        body = json.loads(manifest)
    except ValueError as e:
        raise UnsupportedManifest(f"Manifest is not valid JSON: {e}") from e
    if not isinstance(body, dict) or not isinstance(body.get("config"), dict):
        raise UnsupportedManifest("Manifest has no config descriptor")

    descriptors = [body["config"], *(body.get("layers") or [])]
    blobs: Dict[str, int] = {}
    for descriptor in descriptors:
        digest = descriptor.get("digest")
        if not isinstance(digest, str):
            raise UnsupportedManifest(f"Descriptor without digest in manifest: {descriptor}")
        parse_digest(digest)
        if digest not in blobs:
            blobs[digest] = int(descriptor.get("size", -1))
    return list(blobs.items())


class SourceImage:
    """Manifest, signatures and blob access for one source image."""

    def __init__(self, clients: RegistryClients, ctx: CancelContext, ref: ImageReference, options: CopyOptions):
        self.ref = ref
        self._ctx = ctx
        self.signatures: List[bytes] = []
        if isinstance(ref, DockerReference):
            self._client = clients.client_for(ref.domain, options.source_auth)
            self.manifest, media_type, _ = self._client.get_manifest(ctx, ref.path, ref.manifest_ref)
            if media_type not in SUPPORTED_MANIFEST_TYPES:
                # Some registries answer with a generic Content-Type.
                media_type = guess_manifest_type(self.manifest) or media_type
            self.media_type = media_type
        elif isinstance(ref, DirectoryReference):
            self._image = DirectoryImage(ref.path)
            self.manifest, self.media_type = self._image.read_manifest()
            self.signatures = self._image.read_signatures()
        else:
            raise CopyError(f"Unsupported source reference {ref!r}")

    @contextmanager
    def open_blob(self, digest: str) -> Iterator[IO[bytes]]:
        if isinstance(self.ref, DockerReference):
            with self._client.open_blob(self._ctx, self.ref.path, digest) as stream:
                yield stream
        else:
            with self._image.open_blob(digest) as f:
                yield f


class BlobCopier:
    """
    ImageCopier that copies manifests and blobs without modification.

    Example:
        >>> with RegistryClients() as clients:
        ...     BlobCopier(clients).copy(ctx, src, dst, CopyOptions())
    """

    supports_signing = False

    def __init__(self, clients: RegistryClients):
        self._clients = clients

    def copy(self, ctx: CancelContext, src_ref: ImageReference, dst_ref: ImageReference, options: CopyOptions) -> None:
        if isinstance(src_ref, DirectoryReference) and isinstance(dst_ref, DirectoryReference):
            raise CopyError("Copying between two directories is not supported")

        source = SourceImage(self._clients, ctx, src_ref, options)
        if source.media_type not in SUPPORTED_MANIFEST_TYPES:
            raise UnsupportedManifest(
                f"Unsupported manifest type {source.media_type or 'unknown'!r} for {src_ref}; "
                f"only single-image manifests ({', '.join(SUPPORTED_MANIFEST_TYPES)}) can be copied"
            )
        blobs = manifest_blobs(source.manifest)

        signatures = [] if options.remove_signatures else source.signatures
        if signatures and isinstance(dst_ref, DockerReference):
            raise CopyError(
                f"Cannot copy signatures of {src_ref} to registry destination {dst_ref}; "
                "use --remove-signatures to copy the image without them"
            )

        if isinstance(dst_ref, DockerReference):
            self._copy_to_registry(ctx, source, blobs, dst_ref, options)
        elif isinstance(dst_ref, DirectoryReference):
            self._copy_to_directory(ctx, source, blobs, dst_ref, signatures)
        else:
            raise CopyError(f"Unsupported destination reference {dst_ref!r}")

    def _copy_to_registry(
        self,
        ctx: CancelContext,
        source: SourceImage,
        blobs: List[Tuple[str, int]],
        dst_ref: DockerReference,
        options: CopyOptions,
    ) -> None:
        client = self._clients.client_for(dst_ref.domain, options.destination_auth)
        for digest, size in blobs:
            ctx.raise_if_done()
            if client.blob_exists(ctx, dst_ref.path, digest):
                logger.debug(f"Blob {digest} already present in {dst_ref.name}, skipping")
                continue
            logger.debug(f"Copying blob {digest}")
            flag = VerificationFlag()
            with source.open_blob(digest) as stream:
                reader = DigestVerifyingReader(stream, digest, flag)
                client.upload_blob(ctx, dst_ref.path, digest, reader, size if size >= 0 else None)
            # The upload may have swallowed the reader's error.
            if flag.failed:
                raise reader.error

        logger.debug(f"Writing manifest to {dst_ref}")
        client.put_manifest(ctx, dst_ref.path, dst_ref.manifest_ref, source.manifest, source.media_type)

    def _copy_to_directory(
        self,
        ctx: CancelContext,
        source: SourceImage,
        blobs: List[Tuple[str, int]],
        dst_ref: DirectoryReference,
        signatures: List[bytes],
    ) -> None:
        image = DirectoryImage(dst_ref.path)
        image.write_version()
        for digest, _ in blobs:
            ctx.raise_if_done()
            if image.has_blob(digest):
                logger.debug(f"Blob {digest} already present in {dst_ref.path}, skipping")
                continue
            logger.debug(f"Copying blob {digest}")
            flag = VerificationFlag()
            with source.open_blob(digest) as stream:
                image.write_blob(digest, stream, flag)

        logger.debug(f"Writing manifest to {dst_ref}")
        image.write_manifest(source.manifest)
        if signatures:
            image.write_signatures(signatures)
