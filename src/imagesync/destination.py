"""
Destination reference computation.

Each resolved source image maps to one destination reference:

    destination + "/" + suffix

where the suffix is the normalized source reference (docker sources) or the
image path relative to the source root (dir sources). Unscoped syncs keep only
the last path component of the suffix, so docker.io/library/busybox:latest
lands at <destination>/busybox:latest.
"""
from __future__ import annotations

import os
import posixpath
from typing import Optional

from .errors import DestinationExists, InvalidReference, UnsupportedTransport, ValidationError
from .models import Transport
from .reference import DirectoryReference, DockerReference, ImageReference, parse_normalized_named

__all__ = ["destination_suffix", "build_destination", "prepare_destination"]


def destination_suffix(source_ref: ImageReference, scoped: bool, dir_base_path: Optional[str] = None) -> str:
    """
    Suffix appended to the destination for one source image.

    Examples:
        >>> ref = parse_normalized_named("registry.example.com/team/busybox:latest")
        >>> destination_suffix(ref, scoped=False)
        'busybox:latest'
        >>> destination_suffix(ref, scoped=True)
        'registry.example.com/team/busybox:latest'
    """
    if isinstance(source_ref, DockerReference):
        suffix = source_ref.reference_string
    elif isinstance(source_ref, DirectoryReference):
        if dir_base_path is None:
            raise ValueError("dir_base_path is required for directory sources")
        base = os.path.realpath(dir_base_path)
        rel = os.path.relpath(source_ref.path, base)
        if rel == os.curdir:
            # The source directory itself is the image.
            suffix = os.path.basename(base.rstrip(os.sep))
        else:
            suffix = rel.replace(os.sep, "/")
    else:
        raise UnsupportedTransport(getattr(source_ref, "transport", type(source_ref).__name__), role="source")

    if not scoped:
        suffix = posixpath.basename(suffix)
    return suffix


def build_destination(
    source_ref: ImageReference,
    destination: str,
    transport: str,
    scoped: bool,
    *,
    dir_base_path: Optional[str] = None,
) -> ImageReference:
    """
    Compute the destination reference for `source_ref`.

    Raises:
        DestinationExists: If a dir destination already exists
        UnsupportedTransport: If transport is neither docker nor dir
        ValidationError: If the joined docker reference is not valid
    """
    suffix = destination_suffix(source_ref, scoped, dir_base_path)

    if transport == Transport.DOCKER.value:
        joined = posixpath.join(destination.rstrip("/"), suffix)
        try:
            return parse_normalized_named(joined).tag_name_only()
        except InvalidReference as e:
            raise ValidationError(f"Cannot obtain a valid image reference for transport 'docker' and reference {joined!r}: {e}") from e

    if transport == Transport.DIR.value:
        path = os.path.join(destination, *suffix.split("/"))
        if os.path.exists(path):
            raise DestinationExists(path)
        return DirectoryReference(path=os.path.abspath(path))

    raise UnsupportedTransport(transport, role="destination")


def prepare_destination(ref: ImageReference) -> None:
    """Create the directory for a dir destination; no-op for registries."""
    if isinstance(ref, DirectoryReference):
        os.makedirs(ref.path, exist_ok=True)
