"""
Tests for the registry HTTP client against an in-memory registry.
"""
from __future__ import annotations

import io

import httpx
import pytest

from imagesync.cancel import CancelContext
from imagesync.digest import digest_of
from imagesync.errors import DigestMismatch, OperationCancelled, RegistryError, TagListingDenied
from imagesync.models import AuthContext, Credentials
from imagesync.reference import parse_normalized_named
from imagesync.storage.registry_http import (
    DOCKER_HUB_API_HOST,
    RegistryClients,
    RegistryHTTP,
    ResponseStream,
    build_ssl_context,
)
from tests.storage.fakes.fake_registry_server import OCI_MANIFEST, FakeRegistryServer

REPO = "team/busybox"


@pytest.fixture
def ctx():
    return CancelContext.background()


def _client(server: FakeRegistryServer, auth: AuthContext = None) -> RegistryHTTP:
    return RegistryHTTP(server.host, auth, timeout_s=5.0, transport=server.transport())


class TestListTags:

    def test_lists_tags(self, ctx, registry_server):
        registry_server.push_image(REPO, "1.0", [b"layer"])
        registry_server.push_image(REPO, "latest", [b"layer"])
        with _client(registry_server) as client:
            assert client.list_tags(ctx, REPO) == ["1.0", "latest"]

    def test_follows_pagination(self, ctx):
        server = FakeRegistryServer(page_size=2)
        for tag in ["a", "b", "c", "d", "e"]:
            server.push_image(REPO, tag, [b"layer"])
        with _client(server) as client:
            assert client.list_tags(ctx, REPO) == ["a", "b", "c", "d", "e"]
        assert len(server.requests) == 3

    def test_unknown_repository(self, ctx, registry_server):
        with _client(registry_server) as client:
            with pytest.raises(RegistryError) as exc_info:
                client.list_tags(ctx, "missing/repo")
        assert exc_info.value.code == "NAME_UNKNOWN"
        assert exc_info.value.status == 404

    def test_denied(self, ctx, registry_server):
        registry_server.push_image(REPO, "1.0", [b"layer"])
        registry_server.denied_tag_listing.add(REPO)
        with _client(registry_server) as client:
            with pytest.raises(TagListingDenied) as exc_info:
                client.list_tags(ctx, REPO)
        assert exc_info.value.repository == f"registry.example.com/{REPO}"
        assert exc_info.value.status == 401

    def test_server_error(self, ctx, registry_server):
        registry_server.push_image(REPO, "1.0", [b"layer"])
        registry_server.fail_next.append(503)
        with _client(registry_server) as client:
            with pytest.raises(RegistryError) as exc_info:
                client.list_tags(ctx, REPO)
            assert exc_info.value.code == "UNKNOWN"
            # The failure was one-off.
            assert client.list_tags(ctx, REPO) == ["1.0"]

    def test_cancelled_context_sends_nothing(self, registry_server):
        ctx = CancelContext.background()
        ctx.cancel()
        with _client(registry_server) as client:
            with pytest.raises(OperationCancelled):
                client.list_tags(ctx, REPO)
        assert registry_server.requests == []


class TestAuth:

    def test_bearer_token_flow(self, ctx):
        server = FakeRegistryServer(token_auth=True)
        server.push_image(REPO, "1.0", [b"layer"])
        with _client(server) as client:
            assert client.list_tags(ctx, REPO) == ["1.0"]
            client.get_manifest(ctx, REPO, "1.0")
        # One token, cached for the repository.
        assert len(server.token_requests) == 1
        assert server.token_requests[0].url.params["scope"] == f"repository:{REPO}:pull,push"
        assert server.token_requests[0].url.params["service"] == "registry.example.com"

    def test_token_request_sends_credentials(self, ctx):
        server = FakeRegistryServer(token_auth=True, credentials=("john", "secret"))
        server.push_image(REPO, "1.0", [b"layer"])
        auth = AuthContext(credentials=Credentials("john", "secret"))
        with _client(server, auth) as client:
            assert client.list_tags(ctx, REPO) == ["1.0"]

    def test_wrong_credentials(self, ctx):
        server = FakeRegistryServer(token_auth=True, credentials=("john", "secret"))
        server.push_image(REPO, "1.0", [b"layer"])
        auth = AuthContext(credentials=Credentials("john", "wrong"))
        with _client(server, auth) as client:
            with pytest.raises(RegistryError) as exc_info:
                client.list_tags(ctx, REPO)
        assert exc_info.value.code == "UNAUTHORIZED"

    def test_basic_challenge(self, ctx):
        seen = []

        def handler(request):
            seen.append(request.headers.get("Authorization"))
            if request.headers.get("Authorization") is None:
                return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="registry"'})
            return httpx.Response(200, json={"name": REPO, "tags": ["1.0"]})

        auth = AuthContext(credentials=Credentials("john", "secret"))
        with RegistryHTTP("registry.example.com", auth, transport=httpx.MockTransport(handler)) as client:
            assert client.list_tags(ctx, REPO) == ["1.0"]
            assert client.list_tags(ctx, REPO) == ["1.0"]
        assert seen[0] is None
        assert seen[1].startswith("Basic ")
        # The header is reused without another challenge.
        assert seen[2] == seen[1]


class TestManifests:

    def test_get_manifest(self, ctx, registry_server):
        raw = registry_server.push_image(REPO, "1.0", [b"layer"])
        with _client(registry_server) as client:
            manifest, media_type, digest = client.get_manifest(ctx, REPO, "1.0")
        assert manifest == raw
        assert media_type == OCI_MANIFEST
        assert digest == digest_of(raw)

    def test_get_manifest_by_digest(self, ctx, registry_server):
        raw = registry_server.push_image(REPO, "1.0", [b"layer"])
        with _client(registry_server) as client:
            manifest, _, _ = client.get_manifest(ctx, REPO, digest_of(raw))
        assert manifest == raw

    def test_get_manifest_by_digest_mismatch(self, ctx, registry_server):
        claimed = "sha256:" + "0" * 64
        registry_server.manifests.setdefault(REPO, {})[claimed] = (b'{"schemaVersion": 2}', OCI_MANIFEST)
        with _client(registry_server) as client:
            with pytest.raises(DigestMismatch) as exc_info:
                client.get_manifest(ctx, REPO, claimed)
        assert exc_info.value.expected == claimed

    def test_missing_manifest(self, ctx, registry_server):
        with _client(registry_server) as client:
            with pytest.raises(RegistryError) as exc_info:
                client.get_manifest(ctx, REPO, "nope")
        assert exc_info.value.code == "MANIFEST_UNKNOWN"

    def test_put_manifest(self, ctx, registry_server):
        manifest = b'{"schemaVersion": 2, "config": {}, "layers": []}'
        with _client(registry_server) as client:
            digest = client.put_manifest(ctx, REPO, "2.0", manifest, OCI_MANIFEST)
        assert digest == digest_of(manifest)
        assert registry_server.manifests[REPO]["2.0"] == (manifest, OCI_MANIFEST)


class TestBlobs:

    def test_blob_exists(self, ctx, registry_server):
        digest = registry_server.add_blob(REPO, b"content")
        with _client(registry_server) as client:
            assert client.blob_exists(ctx, REPO, digest) is True
            assert client.blob_exists(ctx, REPO, digest_of(b"other")) is False

    def test_open_blob_streams(self, ctx, registry_server):
        digest = registry_server.add_blob(REPO, b"0123456789")
        with _client(registry_server) as client:
            with client.open_blob(ctx, REPO, digest) as stream:
                assert stream.read(4) == b"0123"
                assert stream.read() == b"456789"

    def test_open_missing_blob(self, ctx, registry_server):
        with _client(registry_server) as client:
            with pytest.raises(RegistryError) as exc_info:
                with client.open_blob(ctx, REPO, digest_of(b"missing")):
                    pass
        assert exc_info.value.code == "BLOB_UNKNOWN"

    def test_upload_blob(self, ctx, registry_server):
        data = b"layer content" * 1000
        digest = digest_of(data)
        with _client(registry_server) as client:
            client.upload_blob(ctx, REPO, digest, io.BytesIO(data), len(data))
        assert registry_server.blobs[REPO][digest] == data
        assert registry_server.uploads == {}

    def test_upload_rejected_digest(self, ctx, registry_server):
        with _client(registry_server) as client:
            with pytest.raises(RegistryError) as exc_info:
                client.upload_blob(ctx, REPO, digest_of(b"expected"), io.BytesIO(b"actual"))
        assert exc_info.value.code == "DIGEST_INVALID"

    def test_upload_with_token_auth(self, ctx):
        server = FakeRegistryServer(token_auth=True)
        data = b"pushed"
        with _client(server) as client:
            client.upload_blob(ctx, REPO, digest_of(data), io.BytesIO(data))
        assert server.blobs[REPO][digest_of(data)] == data


class TestErrorBodies:

    def test_multiple_errors_become_group(self, ctx):
        def handler(request):
            return httpx.Response(400, json={"errors": [
                {"code": "TOOMANYREQUESTS", "message": "slow down"},
                {"code": "DENIED", "message": "no"},
            ]})

        with RegistryHTTP("registry.example.com", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ExceptionGroup) as exc_info:
                client.get_manifest(ctx, REPO, "1.0")
        codes = [e.code for e in exc_info.value.exceptions]
        assert codes == ["TOOMANYREQUESTS", "DENIED"]

    def test_error_without_body(self, ctx):
        def handler(request):
            return httpx.Response(429)

        with RegistryHTTP("registry.example.com", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(RegistryError) as exc_info:
                client.get_manifest(ctx, REPO, "1.0")
        assert exc_info.value.code == "TOOMANYREQUESTS"
        assert exc_info.value.status == 429


class TestTransport:

    def test_docker_hub_api_host(self):
        with RegistryHTTP("docker.io") as client:
            assert client.base_url == f"https://{DOCKER_HUB_API_HOST}"

    def test_http_fallback_without_tls_verification(self, ctx):
        def handler(request):
            if request.url.scheme == "https":
                raise httpx.ConnectError("TLS handshake failed", request=request)
            return httpx.Response(200, json={"name": REPO, "tags": ["1.0"]})

        auth = AuthContext(tls_verify=False)
        with RegistryHTTP("localhost:5000", auth, transport=httpx.MockTransport(handler)) as client:
            assert client.list_tags(ctx, REPO) == ["1.0"]
            assert client.base_url == "http://localhost:5000"

    def test_no_fallback_with_tls_verification(self, ctx):
        def handler(request):
            raise httpx.ConnectError("TLS handshake failed", request=request)

        with RegistryHTTP("localhost:5000", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(httpx.ConnectError):
                client.list_tags(ctx, REPO)

    def test_response_stream(self):
        stream = ResponseStream(httpx.Response(200, content=b"abcdef"))
        assert stream.read(2) == b"ab"
        assert stream.read(10) == b"cdef"
        assert stream.read(1) == b""


class TestBuildSSLContext:

    def test_no_directory(self):
        assert build_ssl_context(None) is not None

    def test_missing_directory_ignored(self, tmp_path):
        assert build_ssl_context(str(tmp_path / "missing")) is not None

    def test_cert_without_key(self, tmp_path):
        (tmp_path / "client.cert").write_text("not a real cert")
        with pytest.raises(ValueError, match="Missing key client.key"):
            build_ssl_context(str(tmp_path))

    def test_key_without_cert(self, tmp_path):
        (tmp_path / "client.key").write_text("not a real key")
        with pytest.raises(ValueError, match="Missing client certificate client.cert"):
            build_ssl_context(str(tmp_path))


class TestRegistryClients:

    def test_one_client_per_registry_and_auth(self):
        with RegistryClients(timeout_s=5.0) as clients:
            auth = AuthContext()
            first = clients.client_for("quay.io", auth)
            assert clients.client_for("quay.io", AuthContext()) is first
            assert clients.client_for("quay.io", AuthContext(tls_verify=False)) is not first
            assert clients.client_for("ghcr.io", auth) is not first

    def test_list_tags_by_reference(self, ctx, registry_server, registry_clients):
        registry_server.push_image(REPO, "1.0", [b"layer"])
        ref = parse_normalized_named(f"registry.example.com/{REPO}")
        assert registry_clients.list_tags(ctx, AuthContext(), ref) == ["1.0"]
