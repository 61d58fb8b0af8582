"""
Image references for the docker and dir transports.

Docker references follow the distribution reference grammar and the usual
Docker Hub normalization ("busybox" -> "docker.io/library/busybox"). An image
reference is immutable; two references are only ever compared through their
serialized transport-qualified form.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from typing import Optional, Union

from .errors import InvalidReference, UnsupportedTransport

__all__ = [
    "DOCKER_TRANSPORT",
    "DIR_TRANSPORT",
    "DEFAULT_DOMAIN",
    "DEFAULT_TAG",
    "DockerReference",
    "DirectoryReference",
    "ImageReference",
    "parse_normalized_named",
    "parse_repository_reference",
    "parse_docker_repository_reference",
    "parse_image_reference",
    "validate_tag",
]

DOCKER_TRANSPORT = "docker"
DIR_TRANSPORT = "dir"

DEFAULT_DOMAIN = "docker.io"
LEGACY_DEFAULT_DOMAIN = "index.docker.io"
OFFICIAL_REPO_PREFIX = "library/"
DEFAULT_TAG = "latest"
NAME_TOTAL_LENGTH_MAX = 255

_ALPHANUMERIC = r"[a-z0-9]+"
_SEPARATOR = r"(?:[._]|__|[-]+)"
_PATH_COMPONENT = rf"{_ALPHANUMERIC}(?:{_SEPARATOR}{_ALPHANUMERIC})*"
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = rf"{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"
_NAME = rf"(?:{_DOMAIN}/)?{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*"

_REFERENCE_RE = re.compile(rf"^({_NAME})(?::({_TAG}))?(?:@({_DIGEST}))?$")
_TAG_RE = re.compile(rf"^{_TAG}$")


@dataclass(frozen=True)
class DockerReference:
    """
    Reference to an image (or repository) in a registry.

    `domain` and `path` are already normalized; `tag` and `digest` are
    optional. A reference with neither names a repository, not an image.
    """
    domain: str
    path: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    transport = DOCKER_TRANSPORT

    @property
    def name(self) -> str:
        """Repository name including the registry domain."""
        return f"{self.domain}/{self.path}"

    @property
    def reference_string(self) -> str:
        """Normalized reference without the transport prefix."""
        s = self.name
        if self.tag:
            s += f":{self.tag}"
        if self.digest:
            s += f"@{self.digest}"
        return s

    @property
    def string_within_transport(self) -> str:
        return f"//{self.reference_string}"

    def is_name_only(self) -> bool:
        return self.tag is None and self.digest is None

    def with_tag(self, tag: str) -> DockerReference:
        """Tagged image reference in this repository."""
        validate_tag(tag)
        return replace(self, tag=tag, digest=None)

    def tag_name_only(self) -> DockerReference:
        """Add the default tag to a name-only reference."""
        if self.is_name_only():
            return replace(self, tag=DEFAULT_TAG)
        return self

    def repository(self) -> DockerReference:
        """Name-only reference to the repository holding this image."""
        return DockerReference(domain=self.domain, path=self.path)

    @property
    def manifest_ref(self) -> str:
        """Tag or digest used to address the manifest (digest wins)."""
        return self.digest or self.tag or DEFAULT_TAG

    def __str__(self) -> str:
        return f"{self.transport}:{self.string_within_transport}"


@dataclass(frozen=True)
class DirectoryReference:
    """Reference to an image stored in a local directory (dir: transport)."""
    path: str

    transport = DIR_TRANSPORT

    @classmethod
    def from_path(cls, path: Union[str, os.PathLike]) -> DirectoryReference:
        """Reference with an absolute, symlink-resolved path."""
        return cls(path=os.path.realpath(os.fspath(path)))

    @property
    def string_within_transport(self) -> str:
        return self.path

    def __str__(self) -> str:
        return f"{self.transport}:{self.path}"


ImageReference = Union[DockerReference, DirectoryReference]


def _split_docker_domain(name: str) -> tuple[str, str]:
    i = name.find("/")
    if i == -1 or (
        not any(c in name[:i] for c in ".:")
        and name[:i] != "localhost"
        and name[:i].lower() == name[:i]
    ):
        domain, remainder = DEFAULT_DOMAIN, name
    else:
        domain, remainder = name[:i], name[i + 1:]
    if domain == LEGACY_DEFAULT_DOMAIN:
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in remainder:
        remainder = OFFICIAL_REPO_PREFIX + remainder
    return domain, remainder


def parse_normalized_named(value: str) -> DockerReference:
    """
    Parse a possibly-abbreviated image or repository name.

    Examples:
        >>> parse_normalized_named("busybox").reference_string
        'docker.io/library/busybox'

        >>> parse_normalized_named("quay.io/org/app:1.0").tag
        '1.0'

    Raises:
        InvalidReference: If the value is not a valid reference
    """
    if not value:
        raise InvalidReference("Invalid reference format: empty name")
    if value.startswith("//"):
        raise InvalidReference(f"Invalid reference format: {value!r} starts with '//'")

    # Split off tag/digest before normalizing so the domain heuristic only
    # looks at the name.
    name, digest = value, None
    if "@" in name:
        name, digest = name.split("@", 1)
    tag = None
    last_slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > last_slash:
        name, tag = name[:colon], name[colon + 1:]

    domain, remainder = _split_docker_domain(name)
    if remainder.lower() != remainder:
        raise InvalidReference(f"Invalid reference format: repository name must be lowercase: {value!r}")

    canonical = f"{domain}/{remainder}"
    full = canonical
    if tag is not None:
        full += f":{tag}"
    if digest is not None:
        full += f"@{digest}"
    m = _REFERENCE_RE.match(full)
    if not m:
        raise InvalidReference(f"Invalid reference format: {value!r}")
    if len(canonical) > NAME_TOTAL_LENGTH_MAX:
        raise InvalidReference(f"Repository name must not be more than {NAME_TOTAL_LENGTH_MAX} characters: {value!r}")

    return DockerReference(domain=domain, path=remainder, tag=tag, digest=digest)


def parse_repository_reference(value: str) -> DockerReference:
    """Parse a name that must refer to a repository, not to an image."""
    ref = parse_normalized_named(value)
    if not ref.is_name_only():
        raise InvalidReference(f"{value!r} names a reference, not a repository")
    return ref


def parse_docker_repository_reference(value: str) -> DockerReference:
    """
    Parse "docker://REPOSITORY" without defaulting a tag.

    Used by tag listing, where a tag or digest in the input is an error.
    """
    prefix = f"{DOCKER_TRANSPORT}://"
    if not value.startswith(prefix):
        raise InvalidReference(f"docker: image reference {value} does not start with {prefix}")
    ref = parse_normalized_named(value[len(prefix):])
    if not ref.is_name_only():
        raise InvalidReference("No tag or digest allowed in reference")
    return ref


def validate_tag(tag: str) -> str:
    if not _TAG_RE.match(tag or ""):
        raise InvalidReference(f"Invalid tag format: {tag!r}")
    return tag


def parse_image_reference(value: str) -> ImageReference:
    """
    Parse a transport-qualified image name: "docker://NAME" or "dir:PATH".

    A docker reference with neither tag nor digest gets the "latest" tag.

    Examples:
        >>> str(parse_image_reference("docker://busybox"))
        'docker://docker.io/library/busybox:latest'

    Raises:
        InvalidReference: If the value has no transport prefix or a bad name
        UnsupportedTransport: If the transport is neither docker nor dir
    """
    transport, sep, within = value.partition(":")
    if not sep:
        raise InvalidReference(f"Invalid image name {value!r}, expected colon-separated transport:reference")
    if transport == DOCKER_TRANSPORT:
        if not within.startswith("//"):
            raise InvalidReference(f"docker: image reference {within} does not start with //")
        return parse_normalized_named(within[2:]).tag_name_only()
    if transport == DIR_TRANSPORT:
        if not within:
            raise InvalidReference("dir: image reference must name a directory")
        return DirectoryReference.from_path(within)
    raise UnsupportedTransport(transport, role="image")
