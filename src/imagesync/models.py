"""
Data models for sync jobs and their sources.

Runtime values (AuthContext, RepositoryDescriptor, SyncJob) are frozen
dataclasses: they are built once and shared read-only. The YAML source
document is parsed with Pydantic models, then turned into runtime values by
pure functions.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator, model_validator

from .reference import ImageReference

__all__ = [
    "Transport",
    "SOURCE_TRANSPORTS",
    "DESTINATION_TRANSPORTS",
    "Credentials",
    "AuthContext",
    "RepositoryDescriptor",
    "SyncJob",
    "CopyOptions",
    "SyncResult",
    "SourceLoader",
    "load_source_document",
    "CredentialsSpec",
    "RegistrySyncEntry",
    "SourceConfig",
    "resolve_tls_verify",
    "auth_context_for_entry",
    "parse_creds",
]


class Transport(str, Enum):
    """Transport kinds understood by sync."""
    DOCKER = "docker"
    DIR = "dir"
    YAML = "yaml"


SOURCE_TRANSPORTS = (Transport.DOCKER, Transport.DIR, Transport.YAML)
DESTINATION_TRANSPORTS = (Transport.DOCKER, Transport.DIR)


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = ""

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class AuthContext:
    """
    Credentials and TLS policy for one registry's requests.

    tls_verify is tri-state: True/False when set explicitly, None when
    unspecified (the registry client then verifies certificates).
    """
    credentials: Optional[Credentials] = None
    tls_verify: Optional[bool] = None
    cert_dir: Optional[str] = None

    @property
    def anonymous(self) -> bool:
        return self.credentials is None

    @property
    def verify_tls(self) -> bool:
        return self.tls_verify is not False


@dataclass(frozen=True)
class RepositoryDescriptor:
    """
    Resolved group of tagged images sharing one AuthContext.

    dir_base_path is only set for directory sources; destination suffixes
    are computed relative to it.
    """
    images: Tuple[ImageReference, ...]
    auth: AuthContext
    dir_base_path: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.images:
            raise ValueError("RepositoryDescriptor requires at least one image")


@dataclass(frozen=True)
class SyncJob:
    """
    One sync request, as given by the user.

    Transport names are kept as plain strings; the orchestrator validates
    them before any I/O happens.
    """
    source_transport: str
    source: str
    destination_transport: str
    destination: str
    scoped: bool = False
    remove_signatures: bool = False
    sign_by: Optional[str] = None
    source_auth: AuthContext = field(default_factory=AuthContext)
    destination_auth: AuthContext = field(default_factory=AuthContext)


@dataclass(frozen=True)
class CopyOptions:
    """Options handed to the ImageCopier for one image."""
    remove_signatures: bool = False
    sign_by: Optional[str] = None
    source_auth: AuthContext = field(default_factory=AuthContext)
    destination_auth: AuthContext = field(default_factory=AuthContext)


@dataclass(frozen=True)
class SyncResult:
    images: int
    sources: int


# YAML source document


class SourceLoader(yaml.SafeLoader):
    """
    SafeLoader that leaves plain scalars as strings.

    Tags such as 1.10 or 010 must reach the resolver exactly as written, so
    the int, float, bool and timestamp resolvers are dropped. Pydantic still
    coerces "true"/"false" for boolean fields.
    """


_STRING_SCALAR_TAGS = {
    "tag:yaml.org,2002:bool",
    "tag:yaml.org,2002:int",
    "tag:yaml.org,2002:float",
    "tag:yaml.org,2002:timestamp",
}
SourceLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in _STRING_SCALAR_TAGS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def load_source_document(stream: Union[str, IO[str]]) -> Any:
    """Parse YAML source text with SourceLoader."""
    return yaml.load(stream, Loader=SourceLoader)


def _normalize_tags(tags: Any) -> Any:
    # "busybox:" means all tags, "busybox: latest" means one tag.
    if tags is None:
        return []
    if isinstance(tags, str):
        return [tags]
    return tags


class CredentialsSpec(BaseModel):
    """Registry credentials as written in the YAML source."""
    username: str = ""
    password: str = ""


class RegistrySyncEntry(BaseModel):
    """
    Sync configuration for one registry in the YAML source.

    Keys use the YAML spelling (images-by-tag-regex, tls-verify, cert-dir).
    tls_verify stays None when the key is absent; resolve_tls_verify() turns
    that into "verification enabled".
    """
    model_config = ConfigDict(populate_by_name=True)

    images: Dict[str, List[str]] = Field(default_factory=dict, description="Image name -> tags (empty list = all tags)")
    images_by_tag_regex: Dict[str, str] = Field(
        default_factory=dict, alias="images-by-tag-regex", description="Image name -> tag regular expression"
    )
    credentials: CredentialsSpec = Field(default_factory=CredentialsSpec)
    tls_verify: Optional[bool] = Field(default=None, alias="tls-verify")
    cert_dir: Optional[str] = Field(default=None, alias="cert-dir")

    @field_validator("images", mode="before")
    @classmethod
    def _normalize_images(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {name: _normalize_tags(tags) for name, tags in v.items()}
        return v

    @field_validator("images_by_tag_regex", mode="before")
    @classmethod
    def _normalize_regexes(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {name: str(regex) for name, regex in v.items()}
        return v

    @field_validator("credentials", mode="before")
    @classmethod
    def _normalize_credentials(cls, v: Any) -> Any:
        return {} if v is None else v

    def has_images(self) -> bool:
        return bool(self.images) or bool(self.images_by_tag_regex)


class SourceConfig(RootModel[Dict[str, RegistrySyncEntry]]):
    """YAML source document: registry host -> RegistrySyncEntry."""

    @model_validator(mode="before")
    @classmethod
    def _empty_entries(cls, data: Any) -> Any:
        # A registry key with no body is a valid (if useless) entry.
        if isinstance(data, dict):
            return {host: {} if entry is None else entry for host, entry in data.items()}
        return data

    @classmethod
    def from_yaml_file(cls, path: Path) -> SourceConfig:
        """
        Load and validate a YAML source file.

        Raises:
            OSError: If the file cannot be read
            yaml.YAMLError: If the document is not valid YAML
            pydantic.ValidationError: If the document does not match the schema
        """
        with open(path, "r") as f:
            data = load_source_document(f)
        return cls.model_validate(data or {})

    def items(self):
        return self.root.items()


def resolve_tls_verify(raw: Optional[bool]) -> bool:
    """An absent tls-verify key means verification enabled."""
    return True if raw is None else raw


def auth_context_for_entry(entry: RegistrySyncEntry) -> AuthContext:
    """Build the AuthContext shared by every repository of one registry entry."""
    credentials = None
    if entry.credentials.username or entry.credentials.password:
        credentials = Credentials(
            username=entry.credentials.username,
            password=entry.credentials.password,
        )
    return AuthContext(
        credentials=credentials,
        tls_verify=resolve_tls_verify(entry.tls_verify),
        cert_dir=entry.cert_dir or None,
    )


def parse_creds(creds: str) -> Credentials:
    """
    Parse a USERNAME[:PASSWORD] command-line value.

    Raises:
        ValueError: If the value or the username is empty
    """
    if not creds:
        raise ValueError("credentials can't be empty")
    username, sep, password = creds.partition(":")
    if not sep:
        return Credentials(username=username)
    if not username:
        raise ValueError("username can't be empty")
    return Credentials(username=username, password=password)
