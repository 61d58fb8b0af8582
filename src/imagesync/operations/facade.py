"""
Operations Facade - Application service layer.

Provides a clean interface between the CLI and the sync core, centralizing
command orchestration and configuration policy (retries, command timeout)
while keeping CLI commands thin and testable.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from ..cancel import CancelContext
from ..digest import manifest_digest
from ..errors import CopyError, IntegrityError, OperationCancelled, ValidationError
from ..inspection import ImageInspection, ImageInspector
from ..models import AuthContext, CopyOptions, SyncJob, SyncResult
from ..orchestrator import SyncOrchestrator
from ..reference import DirectoryReference, parse_docker_repository_reference, parse_image_reference
from ..retry import run_with_retry
from ..runtime_types import ImageCopier, TagLister
from ..settings import Settings
from ..storage.registry_http import RegistryClients

logger = logging.getLogger(__name__)


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb. Collaborators are injected so tests can run the
    real orchestration against fakes. Every command runs under one
    CancelContext carrying the configured command timeout; exceptions bubble
    up for central mapping to exit codes.
    """

    def __init__(
        self,
        copier: Optional[ImageCopier] = None,
        tag_lister: Optional[TagLister] = None,
        settings: Optional[Settings] = None,
        clients: Optional[RegistryClients] = None,
    ):
        """
        Initialize Operations facade.

        Args:
            copier: Image copier for sync and copy (None for commands that do not copy)
            tag_lister: Tag lister for sync and list-tags
            settings: Optional settings (if None, loaded from environment)
            clients: Registry clients for inspect
        """
        self.copier = copier
        self.tag_lister = tag_lister
        self.clients = clients

        if settings is None:
            from ..settings import create_settings_from_env
            settings = create_settings_from_env()
        self.settings = settings

    def _command_context(self) -> CancelContext:
        return CancelContext.background().with_timeout(self.settings.command_timeout_s)

    def sync(self, job: SyncJob) -> SyncResult:
        """
        Synchronize images from job.source to job.destination.

        Raises:
            ValueError: If no copier or tag lister is configured
        """
        if self.copier is None or self.tag_lister is None:
            raise ValueError("A copier and a tag lister are required for sync")
        orchestrator = SyncOrchestrator(
            self.copier,
            self.tag_lister,
            logger=logging.getLogger("imagesync.sync"),
            retry_times=self.settings.retry_times,
        )
        return orchestrator.run(job, self._command_context())

    def copy(self, source: str, destination: str, options: Optional[CopyOptions] = None) -> None:
        """
        Copy one image between transport-qualified names.

        Args:
            source: docker://NAME[:TAG] or dir:PATH
            destination: docker://NAME[:TAG] or dir:PATH
            options: Auth and signature options (defaults to anonymous)

        Raises:
            ValidationError: Bad names, dir -> dir, or signing requested
            IntegrityError: A blob did not match its digest
            CopyError: Any other failure, after retries
        """
        if self.copier is None:
            raise ValueError("A copier is required for copy")
        options = options or CopyOptions()
        src_ref = parse_image_reference(source)
        dst_ref = parse_image_reference(destination)
        if isinstance(src_ref, DirectoryReference) and isinstance(dst_ref, DirectoryReference):
            raise ValidationError("copy from 'dir' to 'dir' not implemented, consider using cp instead")
        if options.sign_by and not getattr(self.copier, "supports_signing", False):
            raise ValidationError(f"Signing with {options.sign_by!r} is not supported by {type(self.copier).__name__}")

        ctx = self._command_context()
        logger.info(f"Copying image from={src_ref} to={dst_ref}")
        try:
            run_with_retry(
                ctx,
                lambda: self.copier.copy(ctx, src_ref, dst_ref, options),
                self.settings.retry_times,
                description=f"copying {src_ref}",
            )
        except (OperationCancelled, IntegrityError, ValidationError):
            raise
        except Exception as e:
            raise CopyError(f"Error copying {str(src_ref)!r} to {str(dst_ref)!r}") from e

    def list_tags(self, repository: str, auth: Optional[AuthContext] = None) -> Tuple[str, List[str]]:
        """
        List the tags of a docker://REPOSITORY.

        Returns:
            (normalized repository name, tags in registry order)
        """
        if self.tag_lister is None:
            raise ValueError("A tag lister is required for list-tags")
        ref = parse_docker_repository_reference(repository)
        auth = auth or AuthContext()
        ctx = self._command_context()
        tags = run_with_retry(
            ctx,
            lambda: self.tag_lister.list_tags(ctx, auth, ref),
            self.settings.retry_times,
            description=f"listing tags of {ref.name}",
        )
        return ref.name, tags

    def inspect(self, image: str, auth: Optional[AuthContext] = None) -> ImageInspection:
        """Summarize a docker:// or dir: image."""
        ref, inspector = self._inspect_target(image)
        ctx = self._command_context()
        return run_with_retry(
            ctx,
            lambda: inspector.inspect(ctx, ref, auth or AuthContext()),
            self.settings.retry_times,
            description=f"inspecting {ref}",
        )

    def inspect_raw(self, image: str, auth: Optional[AuthContext] = None, *, config: bool = False) -> bytes:
        """Raw manifest bytes, or the config blob when config is True."""
        ref, inspector = self._inspect_target(image)
        ctx = self._command_context()
        read = inspector.raw_config if config else inspector.raw_manifest
        return run_with_retry(
            ctx,
            lambda: read(ctx, ref, auth or AuthContext()),
            self.settings.retry_times,
            description=f"inspecting {ref}",
        )

    def _inspect_target(self, image: str):
        if self.clients is None:
            raise ValueError("Registry clients are required for inspect")
        return parse_image_reference(image), ImageInspector(self.clients)

    def manifest_digest(self, path: str) -> str:
        """Compute the digest of a manifest file."""
        return manifest_digest(Path(path).read_bytes())
