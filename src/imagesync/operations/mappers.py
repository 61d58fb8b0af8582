"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Type, TypeVar

import typer

from ..errors import (
    CopyError,
    DeadlineExceeded,
    DestinationExists,
    IntegrityError,
    OperationCancelled,
    ResolutionError,
    ValidationError,
)

T = TypeVar('T')

logger = logging.getLogger(__name__)

EXIT_CODES: Dict[Type[BaseException], int] = {
    ValidationError: 2,
    ValueError: 2,
    CopyError: 3,
    ResolutionError: 4,
    DestinationExists: 5,
    IntegrityError: 6,
    OperationCancelled: 7,
    DeadlineExceeded: 7,
}

FALLBACK_EXIT_CODE = 1


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    The exception's class hierarchy is searched from most to least specific,
    so subclasses (NoImagesFound, DigestMismatch, ...) inherit the code of
    their family:
    - 0: Success
    - 1: Anything not listed below
    - 2: Validation error (ValidationError, ValueError)
    - 3: Copy failed after retries (CopyError)
    - 4: Source could not be resolved (ResolutionError)
    - 5: Destination directory exists (DestinationExists)
    - 6: Content integrity failure (IntegrityError)
    - 7: Cancelled or timed out (OperationCancelled, DeadlineExceeded)
    """
    for cls in type(exc).__mro__:
        if cls in EXIT_CODES:
            return EXIT_CODES[cls]
    return FALLBACK_EXIT_CODE


def run_and_exit(func: Callable[[], T], *, debug: bool = False) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function, prints the error's cause chain on stderr
    and maps any exception to an exit code using typer.Exit. This centralizes
    error handling so CLI commands don't need individual try/except blocks.

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        from .printers import print_error

        if debug:
            logger.debug("Command failed", exc_info=e)
        print_error(e)
        raise typer.Exit(code=exit_code_for(e)) from e
