"""
Sync job state machine.

    VALIDATING -> RESOLVING -> COPYING -> DONE
         |            |
         v            v
       FAILED       FAILED

Validation happens before any I/O. Resolution runs once. Copying walks the
resolved descriptors in order and stops at the first image that cannot be
copied after retries; the job is all-or-nothing and a failed copy leaves the
state at COPYING with the error propagating to the caller.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional

from .cancel import CancelContext
from .destination import build_destination, prepare_destination
from .errors import CopyError, OperationCancelled, SyncError, UnsupportedTransport, ValidationError
from .models import (
    DESTINATION_TRANSPORTS,
    SOURCE_TRANSPORTS,
    CopyOptions,
    RepositoryDescriptor,
    SyncJob,
    SyncResult,
    Transport,
)
from .reference import DockerReference
from .resolver import SourceResolver
from .retry import run_with_retry
from .runtime_types import ImageCopier, TagLister

__all__ = ["SyncState", "SyncOrchestrator", "validate_job"]


class SyncState(str, Enum):
    VALIDATING = "validating"
    RESOLVING = "resolving"
    COPYING = "copying"
    DONE = "done"
    FAILED = "failed"


def validate_job(job: SyncJob, copier: ImageCopier) -> None:
    """
    Check a job before anything touches the network or the filesystem.

    Raises:
        ValidationError: If a transport is missing, the combination is not
            supported, or signing is requested from a copier that cannot sign
        UnsupportedTransport: If a transport name is unknown
    """
    if not job.source_transport:
        raise ValidationError("A source transport must be specified")
    if job.source_transport not in {t.value for t in SOURCE_TRANSPORTS}:
        raise UnsupportedTransport(job.source_transport, role="source")

    if not job.destination_transport:
        raise ValidationError("A destination transport must be specified")
    if job.destination_transport not in {t.value for t in DESTINATION_TRANSPORTS}:
        raise UnsupportedTransport(job.destination_transport, role="destination")

    if job.source_transport == Transport.DIR.value and job.destination_transport == Transport.DIR.value:
        raise ValidationError("sync from 'dir' to 'dir' not implemented, consider using rsync instead")

    if not job.source:
        raise ValidationError("A source must be specified")
    if not job.destination:
        raise ValidationError("A destination must be specified")

    if job.sign_by and not getattr(copier, "supports_signing", False):
        raise ValidationError(f"Signing with {job.sign_by!r} is not supported by {type(copier).__name__}")


class SyncOrchestrator:
    """
    Runs one SyncJob through validation, resolution and copying.

    Example:
        >>> orchestrator = SyncOrchestrator(copier, registry_clients, retry_times=3)
        >>> result = orchestrator.run(job, ctx)
        >>> result.images
        4
    """

    def __init__(
        self,
        copier: ImageCopier,
        tag_lister: TagLister,
        *,
        logger: Optional[logging.Logger] = None,
        retry_times: int = 0,
    ):
        if retry_times < 0:
            raise ValueError(f"retry_times must be non-negative, got {retry_times}")
        self._copier = copier
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._retry_times = retry_times
        self._resolver = SourceResolver(tag_lister, logger=self._log, retry_times=retry_times)
        self.state = SyncState.VALIDATING
        self.history: List[SyncState] = [SyncState.VALIDATING]

    def _transition(self, state: SyncState) -> None:
        self._log.debug(f"Sync state {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def run(self, job: SyncJob, ctx: Optional[CancelContext] = None) -> SyncResult:
        """
        Execute the job.

        Returns:
            SyncResult with the number of images copied and sources resolved

        Raises:
            ValidationError: Job rejected before any I/O
            ResolutionError: Source could not be expanded
            DestinationExists: A dir destination is already present
            CopyError: An image failed to copy after retries
            OperationCancelled: The context was cancelled or timed out
        """
        if self.state is not SyncState.VALIDATING or len(self.history) > 1:
            raise RuntimeError("SyncOrchestrator.run() may only be called once")
        ctx = ctx or CancelContext.background()

        try:
            validate_job(job, self._copier)
        except SyncError:
            self._transition(SyncState.FAILED)
            raise

        self._transition(SyncState.RESOLVING)
        try:
            ctx.raise_if_done()
            descriptors = self._resolver.resolve(ctx, job.source_transport, job.source, job.source_auth)
        except Exception:
            self._transition(SyncState.FAILED)
            raise

        self._transition(SyncState.COPYING)
        images = 0
        for descriptor in descriptors:
            images += self._copy_descriptor(ctx, job, descriptor)

        self._transition(SyncState.DONE)
        self._log.info(f"Synced {images} images from {len(descriptors)} sources")
        return SyncResult(images=images, sources=len(descriptors))

    def _copy_descriptor(self, ctx: CancelContext, job: SyncJob, descriptor: RepositoryDescriptor) -> int:
        # Per-repository auth from a YAML source overrides the job's source auth.
        source_auth = descriptor.auth
        options = CopyOptions(
            remove_signatures=job.remove_signatures,
            sign_by=job.sign_by,
            source_auth=source_auth,
            destination_auth=job.destination_auth,
        )

        total = len(descriptor.images)
        for counter, src_ref in enumerate(descriptor.images):
            ctx.raise_if_done()
            dst_ref = build_destination(
                src_ref,
                job.destination,
                job.destination_transport,
                job.scoped,
                dir_base_path=descriptor.dir_base_path,
            )
            prepare_destination(dst_ref)

            self._log.info(f"Copying image tag {counter + 1}/{total} from={src_ref} to={dst_ref}")
            attempts = 0

            def attempt(src_ref=src_ref, dst_ref=dst_ref) -> None:
                nonlocal attempts
                attempts += 1
                self._copier.copy(ctx, src_ref, dst_ref, options)

            try:
                run_with_retry(
                    ctx,
                    attempt,
                    self._retry_times,
                    description=f"copying {src_ref}",
                    logger=self._log,
                )
            except OperationCancelled:
                raise
            except Exception as e:
                repository = src_ref.name if isinstance(src_ref, DockerReference) else src_ref.path
                tag = src_ref.tag if isinstance(src_ref, DockerReference) else None
                raise CopyError(
                    f"Error copying tag {str(src_ref)!r}",
                    repository=repository,
                    tag=tag,
                    attempts=attempts,
                ) from e
        return total
