"""CLI entry point for the RemoCloud transfer client.

Provides commands:
  - upload: Upload one or more files to a bucket with live progress
  - url: Fetch a signed download/preview/stream URL for a stored file
  - public-url: Fetch the CDN URL of a public file
  - status: Show the server-side status of an upload session
  - cancel: Release a server-side upload session
  - transform: Get a transformed image URL (preset or explicit size)
  - config: Manage configuration (API keys)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Optional

import keyring
import typer
from keyring.errors import KeyringError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from remocloud.config import ENV_VAR, KEY_NAME, SERVICE_NAME, get_api_key, load_config
from remocloud.models import ClientConfig, DuplicateAction, FileRef, UploadStatus, UrlPurpose
from remocloud.transfer.errors import TransferError
from remocloud.transfer.validation import format_file_size

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="RemoCloud - upload files and manage signed URLs",
    rich_markup_mode="rich",
)
config_app = typer.Typer(help="Manage configuration (API keys)")
app.add_typer(config_app, name="config")
console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def app_callback(
    ctx: typer.Context,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to JSON client configuration"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration shared by every command."""
    _setup_logging(verbose)
    ctx.obj = {"config_path": config_path}


def _load_client_config(ctx: typer.Context) -> ClientConfig:
    """Load config and require an API key, exiting with instructions if absent."""
    try:
        config = load_config((ctx.obj or {}).get("config_path"))
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/red] Invalid configuration: {e}")
        raise typer.Exit(code=1)

    if config.api_key is None:
        try:
            config.api_key = get_api_key()
        except RuntimeError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)
    return config


def _run(config: ClientConfig, action: Callable[[Any], Awaitable[Any]]) -> Any:
    """Run *action(cloud)* against a fresh client, mapping errors to exit codes."""
    from remocloud.client import RemoCloud

    async def _main() -> Any:
        async with RemoCloud(config) as cloud:
            return await action(cloud)

    try:
        return asyncio.run(_main())
    except TransferError as e:
        console.print(f"[red]Error:[/red] {e.kind.value}: {e.message}")
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Uploads
# ----------------------------------------------------------------------


@app.command()
def upload(
    ctx: typer.Context,
    files: Annotated[
        list[Path],
        typer.Argument(help="Files to upload", exists=True, dir_okay=False),
    ],
    bucket: Annotated[
        str,
        typer.Option("--bucket", "-b", help="Target bucket id"),
    ],
    skip_duplicate_check: Annotated[
        bool,
        typer.Option("--skip-dedup", help="Upload without hashing or duplicate lookup"),
    ] = False,
    on_duplicate: Annotated[
        DuplicateAction,
        typer.Option("--on-duplicate", help="What to do when identical content exists"),
    ] = DuplicateAction.REUSE,
    max_concurrent: Annotated[
        Optional[int],
        typer.Option("--concurrency", "-n", help="Max concurrent uploads"),
    ] = None,
) -> None:
    """Upload files to a bucket with progress tracking and deduplication."""
    config = _load_client_config(ctx)
    if max_concurrent is not None:
        config.max_concurrent_uploads = max(1, max_concurrent)

    refs = [FileRef.from_path(path) for path in files]
    total_bytes = sum(ref.size for ref in refs)
    console.print(
        Panel(
            f"Uploading [bold]{len(refs)}[/bold] file(s) "
            f"({format_file_size(total_bytes)}) to [bold]{bucket}[/bold]\n"
            f"Concurrency: {config.max_concurrent_uploads} | "
            f"Duplicates: {on_duplicate.value}",
            title="Upload",
        )
    )

    from remocloud.transfer.progress import UploadProgressTracker

    progress = UploadProgressTracker(total_files=len(refs))

    async def _upload(cloud: Any) -> list[Any]:
        unsubscribe = cloud.uploads.subscribe(progress.on_session)
        try:
            with progress:
                results = await cloud.uploads.upload_batch(
                    bucket, refs, skip_duplicate_check=skip_duplicate_check
                )
            resolved = []
            for result in results:
                if (
                    not isinstance(result, TransferError)
                    and result.status is UploadStatus.DUPLICATE_FOUND
                ):
                    try:
                        if on_duplicate is DuplicateAction.CONTINUE:
                            result = await cloud.uploads.continue_upload(result.id)
                        elif on_duplicate is DuplicateAction.REUSE:
                            result = cloud.uploads.reuse_existing(result.id)
                        else:
                            await cloud.uploads.cancel(result.id)
                            result = cloud.uploads.get(result.id) or result
                    except TransferError as e:
                        result = e
                resolved.append(result)
            return resolved
        finally:
            unsubscribe()

    results = _run(config, _upload)

    table = Table(title="Upload Summary")
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("Size", justify="right")
    table.add_column("Result", style="bold")
    table.add_column("Detail")

    failed = 0
    for ref, result in zip(refs, results):
        if isinstance(result, TransferError):
            failed += 1
            table.add_row(
                ref.name,
                format_file_size(ref.size),
                "[red]failed[/red]",
                f"{result.kind.value}: {result.message}",
            )
            continue
        detail = ""
        if result.result and result.result.get("reused"):
            label = "[yellow]reused[/yellow]"
            detail = f"existing file {result.result['file']['id']}"
        elif result.status is UploadStatus.COMPLETED:
            label = "[green]uploaded[/green]"
            detail = f"{result.retry_count} retr(ies)" if result.retry_count else ""
        elif result.duplicate_info is not None and result.status is UploadStatus.ERROR:
            label = "[yellow]skipped[/yellow]"
            detail = result.duplicate_info.recommendation
        else:
            if result.status is UploadStatus.ERROR:
                failed += 1
            label = f"[yellow]{result.status.value}[/yellow]"
        table.add_row(ref.name, format_file_size(ref.size), label, detail)

    console.print(Panel(table, title="Upload Complete"))
    if failed:
        raise typer.Exit(code=1)


@app.command()
def status(
    ctx: typer.Context,
    upload_id: Annotated[str, typer.Argument(help="Server upload session id")],
) -> None:
    """Show the server-side status of an upload session."""
    config = _load_client_config(ctx)
    response = _run(config, lambda cloud: cloud.api.get_upload_status(upload_id))
    console.print(f"[bold]{upload_id}[/bold]: {response.status}")
    if response.expires_at is not None:
        console.print(f"[dim]expires {response.expires_at.isoformat()}[/dim]")


@app.command()
def cancel(
    ctx: typer.Context,
    upload_id: Annotated[str, typer.Argument(help="Server upload session id")],
) -> None:
    """Release a server-side upload session."""
    config = _load_client_config(ctx)
    _run(config, lambda cloud: cloud.api.cancel_upload(upload_id))
    console.print(f"[green]✓[/green] Upload {upload_id} cancelled")


# ----------------------------------------------------------------------
# URLs
# ----------------------------------------------------------------------


@app.command()
def url(
    ctx: typer.Context,
    file_id: Annotated[str, typer.Argument(help="Stored file id")],
    purpose: Annotated[
        UrlPurpose,
        typer.Option("--purpose", "-p", help="download, preview or stream"),
    ] = UrlPurpose.DOWNLOAD,
    expiry: Annotated[
        Optional[int],
        typer.Option("--expiry", "-e", help="Expiry window in seconds"),
    ] = None,
) -> None:
    """Print a signed URL for a stored file."""
    config = _load_client_config(ctx)
    entry = _run(config, lambda cloud: cloud.urls.get(file_id, purpose, expiry=expiry))
    console.print(entry.url, soft_wrap=True)
    if entry.expires_at is not None:
        console.print(f"[dim]expires {entry.expires_at.isoformat()}[/dim]")


@app.command("public-url")
def public_url(
    ctx: typer.Context,
    file_id: Annotated[str, typer.Argument(help="Stored file id")],
) -> None:
    """Print the CDN URL of a public file."""
    config = _load_client_config(ctx)
    console.print(_run(config, lambda cloud: cloud.urls.get_public_url(file_id)), soft_wrap=True)


@app.command()
def transform(
    ctx: typer.Context,
    file_id: Annotated[str, typer.Argument(help="Stored image file id")],
    preset: Annotated[
        Optional[str],
        typer.Option("--preset", help="Named preset, e.g. thumbnail or medium-jpg"),
    ] = None,
    width: Annotated[Optional[int], typer.Option("--width")] = None,
    height: Annotated[Optional[int], typer.Option("--height")] = None,
    quality: Annotated[Optional[int], typer.Option("--quality")] = None,
    fmt: Annotated[Optional[str], typer.Option("--format")] = None,
) -> None:
    """Print a transformed image URL."""
    config = _load_client_config(ctx)
    response = _run(
        config,
        lambda cloud: cloud.api.get_transformed_url(
            file_id, w=width, h=height, q=quality, format=fmt, preset=preset
        ),
    )
    console.print(response.url, soft_wrap=True)


# ----------------------------------------------------------------------
# Config
# ----------------------------------------------------------------------


@config_app.command("set-api-key")
def set_api_key(
    key: Annotated[
        str,
        typer.Argument(help="RemoCloud API key to store in system keyring"),
    ],
) -> None:
    """Store the RemoCloud API key in the system keyring (service: remocloud)."""
    if not key or key.strip() == "":
        console.print("[red]Error:[/red] API key cannot be empty")
        raise typer.Exit(code=1)

    try:
        keyring.set_password(SERVICE_NAME, KEY_NAME, key)
        console.print(
            "[green]✓[/green] API key stored successfully in system keyring "
            f"(service: {SERVICE_NAME})"
        )
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to store API key: {e}")
        raise typer.Exit(code=1)


@config_app.command("get-api-key")
def show_api_key() -> None:
    """Retrieve and display the stored RemoCloud API key (masked)."""
    api_key = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if not api_key:
        console.print(
            "[yellow]No API key found in keyring.[/yellow]\n"
            "Set it with: [bold]remocloud config set-api-key YOUR_KEY[/bold]\n"
            f"Or export {ENV_VAR}"
        )
        raise typer.Exit(code=1)

    # Mask all but first 8 characters
    if len(api_key) > 8:
        masked = api_key[:8] + "*" * (len(api_key) - 8)
    else:
        masked = api_key[:2] + "*" * max(1, len(api_key) - 2)

    console.print(f"[green]API key:[/green] {masked}")
    console.print(f"[dim](stored in service: {SERVICE_NAME})[/dim]")


@config_app.command("remove-api-key")
def remove_api_key() -> None:
    """Delete the stored RemoCloud API key from the system keyring."""
    try:
        existing = keyring.get_password(SERVICE_NAME, KEY_NAME)
        if not existing:
            console.print(
                "[yellow]Warning:[/yellow] No API key found in keyring.\n"
                "Nothing to remove."
            )
            return

        keyring.delete_password(SERVICE_NAME, KEY_NAME)
        console.print(
            "[green]✓[/green] API key removed from system keyring "
            f"(service: {SERVICE_NAME})"
        )
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Failed to remove API key: {e}")
        raise typer.Exit(code=1)
