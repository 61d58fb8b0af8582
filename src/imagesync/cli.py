"""
imagesync CLI

Implements 5 CLI verbs with Operations facade integration:
- sync: Synchronize images between registries and directories
- copy: Copy one image between a registry and a directory
- inspect: Show the digest, tags and config summary of an image
- list-tags: List the tags of a registry repository
- manifest-digest: Compute the digest of a manifest file
"""
from __future__ import annotations

import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from .cli_context import CLIContext
from .models import AuthContext, CopyOptions, SyncJob, parse_creds
from .operations import Operations, run_and_exit
from .operations.printers import print_digest, print_inspection, print_raw, print_sync_summary, print_tags
from .settings import Settings

app = typer.Typer(name="imagesync", help="Synchronize container images between registries and directories")


def _configure_logging(settings: Settings, debug: bool) -> None:
    level = logging.DEBUG if debug else settings.log_level_value
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _auth_context(creds: Optional[str], tls_verify: Optional[bool], cert_dir: Optional[str]) -> AuthContext:
    """
    Build an AuthContext from command-line flags.

    Raises:
        ValueError: If creds is given but malformed
    """
    credentials = parse_creds(creds) if creds is not None else None
    return AuthContext(credentials=credentials, tls_verify=tls_verify, cert_dir=cert_dir)


@app.command()
def sync(
    source: str = typer.Argument(..., help="Source repository, directory or YAML file"),
    destination: str = typer.Argument(..., help="Destination registry (host[/namespace]) or directory"),
    src: str = typer.Option("", "--src", "-s", help="SOURCE transport type: docker, dir or yaml"),
    dest: str = typer.Option("", "--dest", "-d", help="DESTINATION transport type: docker or dir"),
    scoped: bool = typer.Option(False, "--scoped", help="Images at DESTINATION are prefixed using the full source image path as scope"),
    remove_signatures: bool = typer.Option(False, "--remove-signatures", help="Do not copy signatures from SOURCE images"),
    sign_by: Optional[str] = typer.Option(None, "--sign-by", help="Sign the image using a GPG key with the specified FINGERPRINT"),
    src_creds: Optional[str] = typer.Option(None, "--src-creds", help="Use USERNAME[:PASSWORD] for accessing the source registry"),
    dest_creds: Optional[str] = typer.Option(None, "--dest-creds", help="Use USERNAME[:PASSWORD] for accessing the destination registry"),
    src_tls_verify: Optional[bool] = typer.Option(None, "--src-tls-verify/--src-no-tls-verify", help="Require HTTPS and verify certificates when talking to the source registry"),
    dest_tls_verify: Optional[bool] = typer.Option(None, "--dest-tls-verify/--dest-no-tls-verify", help="Require HTTPS and verify certificates when talking to the destination registry"),
    src_cert_dir: Optional[str] = typer.Option(None, "--src-cert-dir", help="Use certificates at PATH (*.crt, *.cert, *.key) to connect to the source registry"),
    dest_cert_dir: Optional[str] = typer.Option(None, "--dest-cert-dir", help="Use certificates at PATH (*.crt, *.cert, *.key) to connect to the destination registry"),
    retry_times: Optional[int] = typer.Option(None, "--retry-times", min=0, help="Number of times to retry a failed tag listing or image copy"),
    command_timeout: Optional[float] = typer.Option(None, "--command-timeout", help="Timeout for the whole command, in seconds"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug output"),
) -> None:
    """Synchronize images between registry repositories and local directories."""

    def _sync() -> None:
        with CLIContext.from_env(retry_times=retry_times, command_timeout_s=command_timeout) as context:
            _configure_logging(context.settings, debug)
            job = SyncJob(
                source_transport=src,
                source=source,
                destination_transport=dest,
                destination=destination,
                scoped=scoped,
                remove_signatures=remove_signatures,
                sign_by=sign_by,
                source_auth=_auth_context(src_creds, src_tls_verify, src_cert_dir),
                destination_auth=_auth_context(dest_creds, dest_tls_verify, dest_cert_dir),
            )
            ops = Operations(copier=context.copier, tag_lister=context.clients, settings=context.settings)
            result = ops.sync(job)
            print_sync_summary(result)

    run_and_exit(_sync, debug=debug)


@app.command()
def copy(
    source: str = typer.Argument(..., help="Source image as docker://NAME[:TAG] or dir:PATH"),
    destination: str = typer.Argument(..., help="Destination image as docker://NAME[:TAG] or dir:PATH"),
    remove_signatures: bool = typer.Option(False, "--remove-signatures", help="Do not copy signatures from SOURCE"),
    sign_by: Optional[str] = typer.Option(None, "--sign-by", help="Sign the image using a GPG key with the specified FINGERPRINT"),
    src_creds: Optional[str] = typer.Option(None, "--src-creds", help="Use USERNAME[:PASSWORD] for accessing the source registry"),
    dest_creds: Optional[str] = typer.Option(None, "--dest-creds", help="Use USERNAME[:PASSWORD] for accessing the destination registry"),
    src_tls_verify: Optional[bool] = typer.Option(None, "--src-tls-verify/--src-no-tls-verify", help="Require HTTPS and verify certificates when talking to the source registry"),
    dest_tls_verify: Optional[bool] = typer.Option(None, "--dest-tls-verify/--dest-no-tls-verify", help="Require HTTPS and verify certificates when talking to the destination registry"),
    src_cert_dir: Optional[str] = typer.Option(None, "--src-cert-dir", help="Use certificates at PATH (*.crt, *.cert, *.key) to connect to the source registry"),
    dest_cert_dir: Optional[str] = typer.Option(None, "--dest-cert-dir", help="Use certificates at PATH (*.crt, *.cert, *.key) to connect to the destination registry"),
    retry_times: Optional[int] = typer.Option(None, "--retry-times", min=0, help="Number of times to retry a failed copy"),
    command_timeout: Optional[float] = typer.Option(None, "--command-timeout", help="Timeout for the whole command, in seconds"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug output"),
) -> None:
    """Copy one image from SOURCE to DESTINATION."""

    def _copy() -> None:
        with CLIContext.from_env(retry_times=retry_times, command_timeout_s=command_timeout) as context:
            _configure_logging(context.settings, debug)
            options = CopyOptions(
                remove_signatures=remove_signatures,
                sign_by=sign_by,
                source_auth=_auth_context(src_creds, src_tls_verify, src_cert_dir),
                destination_auth=_auth_context(dest_creds, dest_tls_verify, dest_cert_dir),
            )
            ops = Operations(copier=context.copier, settings=context.settings)
            ops.copy(source, destination, options)

    run_and_exit(_copy, debug=debug)


@app.command()
def inspect(
    image: str = typer.Argument(..., help="Image as docker://NAME[:TAG] or dir:PATH"),
    raw: bool = typer.Option(False, "--raw", help="Output the raw manifest"),
    config: bool = typer.Option(False, "--config", help="Output the image config instead of the manifest summary"),
    creds: Optional[str] = typer.Option(None, "--creds", help="Use USERNAME[:PASSWORD] for accessing the registry"),
    tls_verify: Optional[bool] = typer.Option(None, "--tls-verify/--no-tls-verify", help="Require HTTPS and verify certificates"),
    cert_dir: Optional[str] = typer.Option(None, "--cert-dir", help="Use certificates at PATH (*.crt, *.cert, *.key) to connect to the registry"),
    retry_times: Optional[int] = typer.Option(None, "--retry-times", min=0, help="Number of times to retry a failed request"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug output"),
) -> None:
    """Show the manifest digest, repository tags and config summary of an image."""

    def _inspect() -> None:
        with CLIContext.from_env(retry_times=retry_times) as context:
            _configure_logging(context.settings, debug)
            ops = Operations(clients=context.clients, settings=context.settings)
            auth = _auth_context(creds, tls_verify, cert_dir)
            if raw or config:
                print_raw(ops.inspect_raw(image, auth, config=config))
            else:
                print_inspection(ops.inspect(image, auth))

    run_and_exit(_inspect, debug=debug)


@app.command("list-tags")
def list_tags(
    repository: str = typer.Argument(..., help="Repository as docker://REPOSITORY"),
    creds: Optional[str] = typer.Option(None, "--creds", help="Use USERNAME[:PASSWORD] for accessing the registry"),
    tls_verify: Optional[bool] = typer.Option(None, "--tls-verify/--no-tls-verify", help="Require HTTPS and verify certificates"),
    cert_dir: Optional[str] = typer.Option(None, "--cert-dir", help="Use certificates at PATH (*.crt, *.cert, *.key) to connect to the registry"),
    retry_times: Optional[int] = typer.Option(None, "--retry-times", min=0, help="Number of times to retry a failed tag listing"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug output"),
) -> None:
    """List the tags of a registry repository."""

    def _list_tags() -> None:
        with CLIContext.from_env(retry_times=retry_times) as context:
            _configure_logging(context.settings, debug)
            ops = Operations(tag_lister=context.clients, settings=context.settings)
            name, tags = ops.list_tags(repository, _auth_context(creds, tls_verify, cert_dir))
            print_tags(name, tags)

    run_and_exit(_list_tags, debug=debug)


@app.command("manifest-digest")
def manifest_digest(
    manifest: str = typer.Argument(..., help="Path to a manifest file"),
) -> None:
    """Compute the digest of a manifest file."""

    def _manifest_digest() -> None:
        ops = Operations(settings=Settings())
        print_digest(ops.manifest_digest(manifest))

    run_and_exit(_manifest_digest)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
