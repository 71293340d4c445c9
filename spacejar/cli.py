"""Thin CLI wrapper for spacejar.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from spacejar import __version__
from spacejar.config import Settings, get_settings, print_settings_json
from spacejar.errors import SpacejarError

app = typer.Typer(
    name="spacejar",
    help="spacejar - build OCI images for Python applications without a daemon",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route stdlib logging through a Rich handler on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"spacejar version {__version__}")
        raise typer.Exit()


def fail(error: SpacejarError) -> NoReturn:
    """Report a spacejar error and exit with its exit code."""
    err_console.print(f"[red]Error ({error.code}):[/red] {error}")
    raise typer.Exit(code=error.exit_code) from error


def _settings(cache_dir: Path | None = None) -> Settings:
    settings = get_settings()
    if cache_dir is not None:
        settings = settings.model_copy(update={"cache_dir": cache_dir})
    return settings


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """spacejar - build OCI images for Python applications without a daemon."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Image:[/bold]")
        console.print(f"  Base image:          {settings.base_image}")
        console.print(f"  Compression level:   {settings.compression_level}")
        console.print(f"  Python executable:   {settings.python_executable}")
        console.print(f"  Upgrade pip:         {settings.upgrade_pip}")
        console.print()
        console.print("[bold]Registry:[/bold]")
        console.print(f"  Username:            {settings.registry_username or '-'}")
        console.print(f"  Max downloads:       {settings.max_concurrent_downloads}")
        console.print(f"  Idle connections:    {settings.max_idle_connections}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Connect timeout:     {settings.connect_timeout}")
        console.print(f"  Request timeout:     {settings.request_timeout}")
        console.print(f"  Pool idle timeout:   {settings.pool_idle_timeout}")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print()
        console.print(f"Log level: {settings.log_level}")


@app.command()
def build(
    project: Annotated[Path, typer.Argument(help="Python project directory")],
    output: Annotated[Path, typer.Argument(help="Output OCI layout directory")],
    base_image: Annotated[
        str | None,
        typer.Option("--base-image", "-b", help="Base image reference"),
    ] = None,
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Cache directory"),
    ] = None,
    lock_timeout: Annotated[
        float | None,
        typer.Option("--lock-timeout", help="Seconds to wait for the cache lock"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build an OCI image layout for a Python project."""
    from spacejar.builds.service import BuildOrchestrator
    from spacejar.cache.store import cache_lock

    settings = _settings(cache_dir)
    reference = base_image or settings.base_image

    try:
        orchestrator = BuildOrchestrator(
            project, output, settings=settings, base_image=reference
        )
        with cache_lock(settings.cache_dir, reference, timeout=lock_timeout):
            report = asyncio.run(orchestrator.build())
    except SpacejarError as e:
        fail(e)
    except TimeoutError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from None

    if json_output:
        output_data = {
            "output_path": str(report.output_path),
            "manifest_digest": report.manifest_digest,
            "config_digest": report.config_digest,
            "layer_digests": report.layer_digests,
            "base_cache_hit": report.base_cache_hit,
            "deps_cache_hit": report.deps_cache_hit,
            "stages": [stage.value for stage in report.stages],
        }
        typer.echo(json.dumps(output_data, indent=2))
    else:
        console.print(f"[green]Built image at {report.output_path}[/green]")
        console.print(f"  Manifest: {report.manifest_digest}")
        console.print(f"  Config:   {report.config_digest}")
        for name, digest in zip(
            ("base", "venv", "deps", "app"), report.layer_digests, strict=False
        ):
            console.print(f"  Layer {name + ':':6} {digest}")


@app.command()
def inspect(
    layout: Annotated[Path, typer.Argument(help="OCI layout directory")],
    verify: Annotated[
        bool,
        typer.Option("--verify/--no-verify", help="Check blobs against digests"),
    ] = True,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the manifest of an OCI layout."""
    from spacejar.image.layout import read_manifest, verify_layout

    try:
        manifest = verify_layout(layout) if verify else read_manifest(layout)
    except SpacejarError as e:
        fail(e)

    if json_output:
        typer.echo(json.dumps(manifest.to_oci_dict(), indent=2))
        return

    console.print(f"[bold]Image layout {layout}[/bold]")
    cfg = manifest.config
    console.print(f"  Config: {cfg.digest} ({cfg.size:,} bytes)")
    for descriptor in manifest.layers:
        console.print(f"  Layer:  {descriptor.digest} ({descriptor.size:,} bytes)")
    if verify:
        console.print("[green]All blobs verified[/green]")


cache_app = typer.Typer(help="Manage the layer cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Cache directory"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cached layers and configs."""
    from spacejar.cache.store import ContentAddressedCache

    cache = ContentAddressedCache(_settings(cache_dir).cache_dir)
    layers = cache.list_entries()
    configs = cache.list_configs()

    if json_output:
        output_data = {
            "layers": [entry.model_dump(mode="json") for entry in layers],
            "configs": [entry.model_dump(mode="json") for entry in configs],
        }
        typer.echo(json.dumps(output_data, indent=2))
        return

    if not layers and not configs:
        console.print("[yellow]Cache is empty[/yellow]")
        return

    console.print(f"[bold]{len(layers)} cached layer(s):[/bold]")
    for entry in layers:
        console.print(
            f"  - {entry.logical_key} ({entry.metadata.layer_kind.value}) "
            f"{entry.content_digest[:19]} {entry.timestamp:%Y-%m-%d %H:%M}"
        )
    console.print(f"[bold]{len(configs)} cached config(s):[/bold]")
    for config_entry in configs:
        console.print(f"  - {config_entry.logical_key}")


@cache_app.command("prune")
def cache_prune(
    max_age_days: Annotated[
        int | None,
        typer.Option(
            "--max-age-days",
            help="Remove entries at least this many days old (0 clears the cache)",
        ),
    ] = None,
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Cache directory"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Remove old cache entries and unreferenced files."""
    from spacejar.cache.store import ContentAddressedCache

    settings = _settings(cache_dir)
    days = settings.cache_max_age_days if max_age_days is None else max_age_days
    cache = ContentAddressedCache(settings.cache_dir)
    result = cache.cleanup(timedelta(days=days))

    if json_output:
        output_data = {
            "removed_layers": result.removed_layers,
            "removed_configs": result.removed_configs,
            "removed_files": result.removed_files,
            "bytes_freed": result.bytes_freed,
        }
        typer.echo(json.dumps(output_data, indent=2))
    else:
        console.print(
            f"Pruned {len(result.removed_layers)} layer(s), "
            f"{len(result.removed_configs)} config(s), "
            f"{len(result.removed_files)} file(s), freed {result.bytes_freed:,} bytes"
        )


if __name__ == "__main__":
    app()
