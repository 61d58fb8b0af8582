"""
Registry HTTP Client for the OCI Distribution API.

Provides the handful of registry operations sync needs: tag listing, manifest
GET/PUT, and blob HEAD/GET/upload. Implements the Docker Registry v2 auth flow
(anonymous first, then Bearer token exchange or Basic auth on a 401
challenge) and per-registry TLS configuration from an AuthContext.

Registry error bodies are translated to RegistryError so the retry classifier
can decide on the error code rather than on HTTP details.
"""
from __future__ import annotations

import base64
import logging
import re
import ssl
import time
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Dict, Iterator, List, Optional, Tuple, Union
from urllib.parse import urlencode, urljoin

import httpx

from ..cancel import CancelContext
from ..digest import CHUNK_SIZE, manifest_digest, parse_digest
from ..errors import DigestMismatch, RegistryError, TagListingDenied
from ..models import AuthContext
from ..reference import DEFAULT_DOMAIN, DockerReference
from .media_types import ACCEPTED_MANIFEST_TYPES

__all__ = ["RegistryHTTP", "RegistryClients", "ResponseStream", "build_ssl_context", "DOCKER_HUB_API_HOST"]

logger = logging.getLogger(__name__)

USER_AGENT = "imagesync/0.1.0"

# docker.io is the name users see; the API lives elsewhere.
DOCKER_HUB_API_HOST = "registry-1.docker.io"

# Fallback error codes for responses without a JSON error body
_STATUS_CODES = {
    401: "UNAUTHORIZED",
    403: "DENIED",
    429: "TOOMANYREQUESTS",
}

# Tokens without expires_in are valid for 60 seconds (registry token auth default)
DEFAULT_TOKEN_LIFETIME_S = 60


def build_ssl_context(cert_dir: Optional[str]) -> ssl.SSLContext:
    """
    TLS context trusting the system CAs plus certificates from `cert_dir`.

    The directory layout follows /etc/docker/certs.d/<host>/:
    - *.crt: additional CA certificates
    - *.cert + *.key: client certificate and key pairs (same basename)

    A missing directory is ignored.

    Raises:
        ValueError: If a client certificate has no matching key or vice versa
    """
    context = ssl.create_default_context()
    if not cert_dir:
        return context
    directory = Path(cert_dir)
    if not directory.is_dir():
        logger.debug(f"Certificate directory {cert_dir} does not exist, using system CAs only")
        return context

    for path in sorted(directory.iterdir()):
        if path.suffix == ".crt":
            logger.debug(f"Trusting CA certificate {path}")
            context.load_verify_locations(cafile=str(path))
        elif path.suffix == ".cert":
            key = path.with_suffix(".key")
            if not key.exists():
                raise ValueError(f"Missing key {key.name} for client certificate {path.name}")
            logger.debug(f"Using client certificate {path}")
            context.load_cert_chain(certfile=str(path), keyfile=str(key))
        elif path.suffix == ".key":
            cert = path.with_suffix(".cert")
            if not cert.exists():
                raise ValueError(f"Missing client certificate {cert.name} for key {path.name}")
    return context


class ResponseStream:
    """Read-only file-like view over a streamed httpx response body."""

    def __init__(self, response: httpx.Response):
        self._chunks = response.iter_bytes()
        self._buffer = b""

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            data = self._buffer + b"".join(self._chunks)
            self._buffer = b""
            return data
        while len(self._buffer) < size:
            chunk = next(self._chunks, None)
            if chunk is None:
                break
            self._buffer += chunk
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data


def _read_chunks(reader: IO[bytes]) -> Iterator[bytes]:
    # Read to the empty chunk so wrapped readers see end of stream.
    while True:
        chunk = reader.read(CHUNK_SIZE)
        if not chunk:
            return
        yield chunk


class RegistryHTTP:
    """
    HTTP client for one registry host and one AuthContext.

    Example:
        >>> client = RegistryHTTP("quay.io", AuthContext())
        >>> client.list_tags(ctx, "org/app")
        ['1.0', '1.1']
    """

    def __init__(
        self,
        registry: str,
        auth: Optional[AuthContext] = None,
        *,
        timeout_s: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize registry HTTP client.

        Args:
            registry: Registry hostname (e.g., "localhost:5000", "quay.io")
            auth: Credentials and TLS policy (anonymous, verified TLS by default)
            timeout_s: Per-request timeout, capped by the context deadline
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.registry = registry
        self.auth = auth or AuthContext()
        host = DOCKER_HUB_API_HOST if registry == DEFAULT_DOMAIN else registry
        self.base_url = f"https://{host}"
        self._timeout_s = timeout_s
        # With verification off, a registry that only speaks plain HTTP is
        # tolerated: the first connection failure switches the scheme once.
        self._http_fallback = not self.auth.verify_tls

        verify: Union[bool, ssl.SSLContext] = False
        if self.auth.verify_tls:
            verify = build_ssl_context(self.auth.cert_dir)
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout_s),
            follow_redirects=True,
            verify=verify,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

        # Token cache: {service:scope: (token, expiry_timestamp)}
        self._token_cache: Dict[str, Tuple[str, float]] = {}
        # Authorization header per (repository, access)
        self._authorization: Dict[Tuple[str, str], str] = {}

    # Endpoints

    def list_tags(self, ctx: CancelContext, repository: str) -> List[str]:
        """
        List every tag of `repository`, following Link pagination.

        Raises:
            TagListingDenied: If the registry answers 401/403 after auth
            RegistryError: For other registry errors
        """
        tags: List[str] = []
        url: Optional[str] = f"/v2/{repository}/tags/list"
        while url:
            response = self._send(ctx, "GET", url, repository=repository, headers={"Accept": "application/json"})
            if response.status_code in (401, 403):
                raise TagListingDenied(f"{self.registry}/{repository}", response.status_code)
            self._raise_for_status(response)
            body = response.json()
            tags.extend(str(t) for t in (body.get("tags") or []))
            next_url = response.links.get("next", {}).get("url")
            url = urljoin(str(response.url), next_url) if next_url else None
        logger.debug(f"Listed {len(tags)} tags for {self.registry}/{repository}")
        return tags

    def get_manifest(self, ctx: CancelContext, repository: str, reference: str) -> Tuple[bytes, str, str]:
        """
        Fetch a manifest by tag or digest.

        Returns:
            (raw manifest bytes, media type, sha256 digest of the bytes)

        Raises:
            DigestMismatch: If fetched by digest and the bytes do not match it
            RegistryError: MANIFEST_UNKNOWN and other registry errors
        """
        response = self._send(
            ctx,
            "GET",
            f"/v2/{repository}/manifests/{reference}",
            repository=repository,
            headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)},
        )
        self._raise_for_status(response, not_found_code="MANIFEST_UNKNOWN")
        content = response.content
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        digest = manifest_digest(content)
        if ":" in reference:
            parse_digest(reference)
            if reference != digest:
                raise DigestMismatch(expected=reference, actual=digest)
        return content, media_type, digest

    def blob_exists(self, ctx: CancelContext, repository: str, digest: str) -> bool:
        response = self._send(ctx, "HEAD", f"/v2/{repository}/blobs/{digest}", repository=repository)
        if response.status_code == 404:
            return False
        self._raise_for_status(response, not_found_code="BLOB_UNKNOWN")
        return True

    @contextmanager
    def open_blob(self, ctx: CancelContext, repository: str, digest: str) -> Iterator[ResponseStream]:
        """
        Stream a blob without buffering it.

        The yielded stream is not verified; callers wrap it in a
        DigestVerifyingReader.
        """
        response = self._send(
            ctx, "GET", f"/v2/{repository}/blobs/{digest}", repository=repository, stream=True
        )
        try:
            self._raise_for_status(response, not_found_code="BLOB_UNKNOWN")
            yield ResponseStream(response)
        finally:
            response.close()

    def upload_blob(
        self,
        ctx: CancelContext,
        repository: str,
        digest: str,
        body: IO[bytes],
        size: Optional[int] = None,
    ) -> None:
        """
        Upload a blob with a POST to open a session and one monolithic PUT.

        The body is streamed; it is read to end of stream exactly once.
        """
        response = self._send(ctx, "POST", f"/v2/{repository}/blobs/uploads/", repository=repository, push=True)
        self._raise_for_status(response)
        location = response.headers.get("Location")
        if response.status_code != 202 or not location:
            raise RegistryError(
                "UNKNOWN", f"unexpected upload session response for {repository}", response.status_code
            )

        upload_url = urljoin(str(response.url), location)
        separator = "&" if "?" in upload_url else "?"
        put_url = f"{upload_url}{separator}{urlencode({'digest': digest})}"
        headers = {"Content-Type": "application/octet-stream"}
        if size is not None:
            headers["Content-Length"] = str(size)

        logger.debug(f"Uploading blob {digest} to {self.registry}/{repository}")
        response = self._send(
            ctx,
            "PUT",
            put_url,
            repository=repository,
            push=True,
            headers=headers,
            content=_read_chunks(body),
        )
        self._raise_for_status(response, not_found_code="BLOB_UPLOAD_UNKNOWN")

    def put_manifest(
        self,
        ctx: CancelContext,
        repository: str,
        reference: str,
        manifest: bytes,
        media_type: str,
    ) -> str:
        """Upload a manifest under a tag or digest; returns the manifest digest."""
        response = self._send(
            ctx,
            "PUT",
            f"/v2/{repository}/manifests/{reference}",
            repository=repository,
            push=True,
            headers={"Content-Type": media_type},
            content=manifest,
        )
        self._raise_for_status(response)
        return response.headers.get("Docker-Content-Digest") or manifest_digest(manifest)

    # Transport

    def _timeout(self, ctx: CancelContext) -> httpx.Timeout:
        ctx.raise_if_done()
        timeout = self._timeout_s
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        return httpx.Timeout(timeout)

    def _do(self, ctx: CancelContext, method: str, url: str, headers: Dict[str, str], content, stream: bool) -> httpx.Response:
        if not url.startswith(("http://", "https://")):
            url = self.base_url + url
        request = self.client.build_request(method, url, headers=headers, content=content, timeout=self._timeout(ctx))
        try:
            return self.client.send(request, stream=stream)
        except httpx.ConnectError:
            if not self._http_fallback or not url.startswith("https://"):
                raise
            self._http_fallback = False
            logger.warning(f"HTTPS connection to {self.registry} failed, falling back to HTTP")
            self.base_url = "http://" + self.base_url[len("https://"):]
            return self._do(ctx, method, "http://" + url[len("https://"):], headers, content, stream)

    def _send(
        self,
        ctx: CancelContext,
        method: str,
        url: str,
        *,
        repository: str,
        push: bool = False,
        headers: Optional[Dict[str, str]] = None,
        content: Union[bytes, Iterator[bytes], None] = None,
        stream: bool = False,
    ) -> httpx.Response:
        """
        Make HTTP request with transparent registry auth.

        Handles a 401 response by:
        1. Parsing the WWW-Authenticate challenge (Bearer or Basic)
        2. Exchanging credentials for a Bearer token, or building Basic auth
        3. Retrying the original request once with the Authorization header
        4. Remembering the header for later requests to the same repository

        Streamed bodies cannot be replayed; their 401 is returned as is.
        """
        key = (repository, "push" if push else "pull")
        request_headers = dict(headers or {})
        cached = self._authorization.get(key)
        if cached:
            request_headers["Authorization"] = cached

        logger.debug(f"{method} {url}")
        response = self._do(ctx, method, url, request_headers, content, stream)
        replayable = content is None or isinstance(content, bytes)
        if response.status_code != 401 or not replayable:
            return response

        challenge = response.headers.get("WWW-Authenticate", "")
        authorization = self._authorize(ctx, challenge)
        if not authorization or authorization == cached:
            return response
        response.close()
        self._authorization[key] = authorization
        request_headers["Authorization"] = authorization
        return self._do(ctx, method, url, request_headers, content, stream)

    def _authorize(self, ctx: CancelContext, challenge: str) -> Optional[str]:
        scheme, _, rest = challenge.partition(" ")
        params = dict(re.findall(r'(\w+)="([^"]*)"', rest))
        credentials = self.auth.credentials

        if scheme.lower() == "basic":
            if credentials is None:
                return None
            raw = f"{credentials.username}:{credentials.password}".encode()
            return "Basic " + base64.b64encode(raw).decode()

        if scheme.lower() == "bearer" and params.get("realm"):
            token = self._bearer_token(ctx, params["realm"], params.get("service"), params.get("scope"))
            return f"Bearer {token}"

        return None

    def _bearer_token(self, ctx: CancelContext, realm: str, service: Optional[str], scope: Optional[str]) -> str:
        cache_key = f"{service or ''}:{scope or ''}"
        if cache_key in self._token_cache:
            token, expiry = self._token_cache[cache_key]
            if time.time() < expiry - 5:
                return token

        query = {k: v for k, v in (("service", service), ("scope", scope)) if v}
        credentials = self.auth.credentials
        auth = (credentials.username, credentials.password) if credentials is not None else None
        response = self.client.get(realm, params=query, auth=auth, timeout=self._timeout(ctx))
        self._raise_for_status(response)

        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryError("UNAUTHORIZED", f"token endpoint {realm} returned no token", response.status_code)
        expires_in = body.get("expires_in") or DEFAULT_TOKEN_LIFETIME_S
        self._token_cache[cache_key] = (token, time.time() + float(expires_in))
        return token

    @staticmethod
    def _raise_for_status(response: httpx.Response, not_found_code: str = "NAME_UNKNOWN") -> None:
        """
        Translate an error response into RegistryError.

        Several errors in one body become an ExceptionGroup so the retry
        classifier can look at each of them.
        """
        status = response.status_code
        if status < 400:
            return
        response.read()

        errors: List[RegistryError] = []
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("errors"), list):
            for item in body["errors"]:
                if isinstance(item, dict) and item.get("code"):
                    errors.append(RegistryError(str(item["code"]), str(item.get("message") or ""), status))

        if not errors:
            code = not_found_code if status == 404 else _STATUS_CODES.get(status, "UNKNOWN")
            errors.append(RegistryError(code, response.reason_phrase, status))

        if len(errors) == 1:
            raise errors[0]
        raise ExceptionGroup(f"registry returned {len(errors)} errors (HTTP {status})", errors)

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class RegistryClients:
    """
    One RegistryHTTP per (registry host, AuthContext), created on demand.

    Implements the TagLister protocol, so it can be handed straight to the
    resolver and the orchestrator.
    """

    def __init__(self, *, timeout_s: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self._timeout_s = timeout_s
        self._transport = transport
        self._clients: Dict[Tuple[str, AuthContext], RegistryHTTP] = {}

    def client_for(self, registry: str, auth: AuthContext) -> RegistryHTTP:
        key = (registry, auth)
        client = self._clients.get(key)
        if client is None:
            client = RegistryHTTP(registry, auth, timeout_s=self._timeout_s, transport=self._transport)
            self._clients[key] = client
        return client

    def list_tags(self, ctx: CancelContext, auth: AuthContext, repository: DockerReference) -> List[str]:
        return self.client_for(repository.domain, auth).list_tags(ctx, repository.path)

    def close(self) -> None:
        for client in self._clients.values():
            client.close()
        self._clients.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
