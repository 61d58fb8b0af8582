"""
OCI and Docker media types and constants.

Single source of truth for the manifest types the copier understands.
"""
from __future__ import annotations

import json

# Single-image manifests
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_V2S2_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"

# Multi-image and legacy manifests (recognized so they can be rejected clearly)
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_V2S1_MANIFEST = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_V2S1_SIGNED_MANIFEST = "application/vnd.docker.distribution.manifest.v1+prettyjws"

SUPPORTED_MANIFEST_TYPES = (OCI_IMAGE_MANIFEST, DOCKER_V2S2_MANIFEST)

# Accept header for manifest GETs, in order of preference
ACCEPTED_MANIFEST_TYPES = [
    OCI_IMAGE_MANIFEST,
    DOCKER_V2S2_MANIFEST,
    OCI_IMAGE_INDEX,
    DOCKER_MANIFEST_LIST,
]


__all__ = [
    "OCI_IMAGE_MANIFEST",
    "DOCKER_V2S2_MANIFEST",
    "OCI_IMAGE_INDEX",
    "DOCKER_MANIFEST_LIST",
    "DOCKER_V2S1_MANIFEST",
    "DOCKER_V2S1_SIGNED_MANIFEST",
    "SUPPORTED_MANIFEST_TYPES",
    "ACCEPTED_MANIFEST_TYPES",
    "guess_manifest_type",
]


def guess_manifest_type(manifest: bytes) -> str:
    """
    Media type of a manifest from its body.

    Used where no Content-Type is available (dir transport) or a registry
    sent a generic one. OCI image manifests may omit mediaType; they are
    recognized by their config + layers shape.
    """
    try:
        body = json.loads(manifest)
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    media_type = body.get("mediaType")
    if isinstance(media_type, str) and media_type:
        return media_type
    if body.get("schemaVersion") == 1:
        return DOCKER_V2S1_SIGNED_MANIFEST if "signatures" in body else DOCKER_V2S1_MANIFEST
    if "manifests" in body:
        return OCI_IMAGE_INDEX
    if "config" in body and "layers" in body:
        return OCI_IMAGE_MANIFEST
    return ""
