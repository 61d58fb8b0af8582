"""
Human-readable output formatting.

Centralizes all CLI output: results go to stdout, errors to stderr through a
rich console.
"""
from __future__ import annotations

import json
from typing import List

import typer
from rich.console import Console
from rich.markup import escape

from ..inspection import ImageInspection
from ..models import SyncResult

_err_console = Console(stderr=True)


def format_error_chain(exc: BaseException) -> str:
    """
    Join an exception and its causes as "outer: inner: root".

    Messages already contained in the previous one are skipped, and the
    members of an exception group are listed after the group's message.
    """
    parts: List[str] = []
    seen = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, BaseExceptionGroup):
            message = f"{current.message}: " + "; ".join(str(e) for e in current.exceptions)
        else:
            message = str(current) or type(current).__name__
        if not parts or message not in parts[-1]:
            parts.append(message)
        current = current.__cause__
    return ": ".join(parts)


def print_error(exc: BaseException) -> None:
    _err_console.print(f"[bold red]Error:[/] {escape(format_error_chain(exc))}", soft_wrap=True)


def print_sync_summary(result: SyncResult) -> None:
    """
    Print sync summary.

    Args:
        result: Counts reported by the orchestrator
    """
    typer.echo(f"Synced {result.images} images from {result.sources} sources")


def print_tags(repository: str, tags: List[str]) -> None:
    """Print tags as the JSON document list-tags promises."""
    typer.echo(json.dumps({"Repository": repository, "Tags": tags}, indent=4))


def print_digest(digest: str) -> None:
    typer.echo(digest)


def print_inspection(info: ImageInspection) -> None:
    typer.echo(json.dumps(info.to_dict(), indent=4))


def print_raw(data: bytes) -> None:
    """Write bytes to stdout unchanged (no trailing newline)."""
    typer.echo(data, nl=False)
