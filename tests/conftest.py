"""Root pytest configuration for imagesync tests."""
import pytest

from imagesync.settings import Settings
from imagesync.storage.registry_http import RegistryClients

from .fakes.fake_registry import FakeCopier, FakeTagLister
from .storage.fakes.fake_registry_server import FakeRegistryServer


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (may take significant time)"
    )


# Keep the developer's environment out of the tests
@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Automatically clear imagesync environment variables."""
    for name in ("IMAGESYNC_RETRY_TIMES", "IMAGESYNC_COMMAND_TIMEOUT", "IMAGESYNC_HTTP_TIMEOUT", "IMAGESYNC_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def no_sleep(monkeypatch):
    """Make retry backoff instantaneous, recording the requested waits."""
    waits = []

    def _wait(self, seconds):
        waits.append(seconds)
        return self.done

    monkeypatch.setattr("imagesync.cancel.CancelContext.wait", _wait)
    return waits


# Standardized test fixtures
@pytest.fixture
def settings():
    """Standard test settings."""
    return Settings(retry_times=0, http_timeout_s=5.0)


@pytest.fixture
def tag_lister():
    """Empty fake tag lister."""
    return FakeTagLister()


@pytest.fixture
def copier():
    """Recording fake copier."""
    return FakeCopier()


@pytest.fixture
def registry_server():
    """In-memory registry at registry.example.com."""
    return FakeRegistryServer()


@pytest.fixture
def registry_clients(registry_server):
    """RegistryClients wired to the in-memory registry."""
    clients = RegistryClients(timeout_s=5.0, transport=registry_server.transport())
    yield clients
    clients.close()
