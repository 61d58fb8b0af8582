# Fake collaborators for testing

from .fake_registry import FakeCopier, FakeTagLister

__all__ = ["FakeCopier", "FakeTagLister"]
