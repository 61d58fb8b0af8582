# Fake implementations for testing

from .fake_registry_server import FakeRegistryServer

__all__ = ["FakeRegistryServer"]
