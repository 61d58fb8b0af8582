"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings and the
registry clients, avoiding global state and enabling proper dependency injection.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Optional

from .copier import BlobCopier
from .settings import Settings, create_settings_from_env
from .storage.registry_http import RegistryClients


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Manages application-level dependencies (settings, registry clients, copier)
    that are initialized once and shared across a CLI command execution.
    Usable as a context manager so every HTTP client is closed on exit.
    """
    settings: Settings
    _clients: Optional[RegistryClients] = None
    _copier: Optional[BlobCopier] = None

    @classmethod
    def from_env(cls, **overrides: Any) -> CLIContext:
        """
        Create CLI context from environment variables.

        Args:
            **overrides: Settings fields set from command-line flags; None
                values leave the environment value in place

        Returns:
            CLIContext with settings loaded from environment
        """
        settings = create_settings_from_env()
        changes = {k: v for k, v in overrides.items() if v is not None}
        if changes:
            settings = replace(settings, **changes)
        return cls(settings=settings)

    @property
    def clients(self) -> RegistryClients:
        """Get or create the registry client cache (lazy initialization)."""
        if self._clients is None:
            self._clients = RegistryClients(timeout_s=self.settings.http_timeout_s)
        return self._clients

    @property
    def copier(self) -> BlobCopier:
        if self._copier is None:
            self._copier = BlobCopier(self.clients)
        return self._copier

    def close(self) -> None:
        if self._clients is not None:
            self._clients.close()

    def __enter__(self) -> CLIContext:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
