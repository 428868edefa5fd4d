"""Thin CLI wrapper for netbsd_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console

from netbsd_imagegen import __version__
from netbsd_imagegen.config import BuildConfig, config_to_json, get_build_config
from netbsd_imagegen.errors import ImageGenError
from netbsd_imagegen.logging_utils import configure_logging

app = typer.Typer(
    name="nbimagegen",
    help="NetBSD Image Generator - build bootable disk images from release sets",
    no_args_is_help=True,
)
console = Console(soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)

LOG_FILENAME = "nbimagegen.log"

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="YAML file of configuration overrides"),
]
BuildDirOption = Annotated[
    Path | None,
    typer.Option("--build-dir", "-b", help="Working directory for downloads and output"),
]
SetsDirOption = Annotated[
    Path | None,
    typer.Option("--sets-dir", "-s", help="Directory searched for pre-staged sets"),
]
ReleaseOption = Annotated[
    str | None,
    typer.Option("--release", "-r", help="NetBSD release (e.g., 10.1)"),
]
ForceFetchOption = Annotated[
    bool,
    typer.Option("--force-fetch", "-f", help="Download sets even if present locally"),
]
VerboseOption = Annotated[
    int,
    typer.Option("--verbose", "-v", count=True, help="Increase output (repeatable)"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"netbsd-imagegen version {__version__}")
        raise typer.Exit()


def fail(error: ImageGenError) -> typer.Exit:
    """Print a one-line diagnostic and return the exit to raise."""
    err_console.print(f"Error [{error.code}]: {error.message}", markup=False)
    return typer.Exit(code=1)


def _load_config(config_file: Path | None, verbose: int, **overrides: Any) -> BuildConfig:
    """Resolve configuration and set up logging for a command."""
    try:
        settings = get_build_config(
            config_file,
            verbosity=min(verbose, 2) if verbose else None,
            **overrides,
        )
    except ImageGenError as e:
        raise fail(e) from e
    configure_logging(settings.log_level, settings.build_dir / LOG_FILENAME)
    return settings


def _format_size(size_bytes: int) -> str:
    """Format a byte count as MB."""
    return f"{size_bytes / 1_000_000:.1f} MB"


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
) -> None:
    """NetBSD Image Generator - build bootable disk images from release sets."""


@app.command()
def build(
    config_file: ConfigOption = None,
    build_dir: BuildDirOption = None,
    sets_dir: SetsDirOption = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Destination of the finished image"),
    ] = None,
    release: ReleaseOption = None,
    hostname: Annotated[
        str | None,
        typer.Option("--hostname", help="Hostname written into rc.conf"),
    ] = None,
    no_verify: Annotated[
        bool,
        typer.Option("--no-verify", help="Skip signature and checksum verification"),
    ] = False,
    force_fetch: ForceFetchOption = False,
    verbose: VerboseOption = 0,
) -> None:
    """Build a bootable disk image.

    Uses pre-staged sets when available, otherwise downloads and verifies
    them. Must run as root on a NetBSD host.
    """
    from netbsd_imagegen.pipeline import ImagePipeline

    settings = _load_config(
        config_file,
        verbose,
        build_dir=build_dir,
        sets_dir=sets_dir,
        output=output,
        release=release,
        hostname=hostname,
        verify=False if no_verify else None,
        force_fetch=True if force_fetch else None,
    )

    try:
        result = ImagePipeline(settings).run()
    except ImageGenError as e:
        raise fail(e) from e
    except KeyboardInterrupt:
        err_console.print("Interrupted; cleanup has run", markup=False)
        raise typer.Exit(code=1) from None

    console.print(
        f"[green]Image built:[/green] {result.image_path} "
        f"({result.size_bytes} bytes, {_format_size(result.size_bytes)})"
    )


@app.command()
def config(
    config_file: ConfigOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    try:
        settings = get_build_config(config_file)
    except ImageGenError as e:
        raise fail(e) from e

    if json_output:
        console.print(config_to_json(settings), markup=False, highlight=False)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Release:[/bold]")
    console.print(f"  Release:             {settings.release}")
    console.print(f"  Architecture:        {settings.arch}")
    console.print(f"  Kernel:              {settings.kernel}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Build directory:     {settings.build_dir}")
    console.print(f"  Sets directory:      {settings.sets_path}")
    console.print(f"  Output image:        {settings.image_path}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Verify sets:         {settings.verify}")
    console.print(f"  Force fetch:         {settings.force_fetch}")
    console.print(f"  Digest algorithm:    {settings.digest_algorithm}")
    console.print(f"  Mirror:              {settings.base_url}")
    console.print()
    console.print("[bold]Target system:[/bold]")
    console.print(f"  Hostname:            {settings.hostname}")
    console.print(f"  vnd device:          {settings.vnd_device}")
    console.print(f"  Image size:          {_format_size(settings.image_size)}")
    console.print(f"  Boot timeout:        {settings.boot_timeout}")


sets_app = typer.Typer(help="Fetch and verify distribution sets")
app.add_typer(sets_app, name="sets")


@sets_app.command("fetch")
def sets_fetch(
    config_file: ConfigOption = None,
    build_dir: BuildDirOption = None,
    release: ReleaseOption = None,
    force_fetch: ForceFetchOption = False,
    verbose: VerboseOption = 0,
) -> None:
    """Download sets, boot scripts and the hashes manifest into the build dir."""
    from netbsd_imagegen.pipeline import fetch_sets

    settings = _load_config(
        config_file,
        verbose,
        build_dir=build_dir,
        release=release,
        force_fetch=True if force_fetch else None,
    )

    try:
        downloaded = fetch_sets(settings)
    except ImageGenError as e:
        raise fail(e) from e

    if downloaded:
        console.print(f"[green]Downloaded {len(downloaded)} file(s)[/green]")
        for path in downloaded:
            console.print(f"  {path}")
    else:
        console.print("[yellow]Everything already present[/yellow]")


@sets_app.command("verify")
def sets_verify(
    config_file: ConfigOption = None,
    build_dir: BuildDirOption = None,
    sets_dir: SetsDirOption = None,
    release: ReleaseOption = None,
    verbose: VerboseOption = 0,
) -> None:
    """Verify local sets against the signed hashes manifest."""
    from netbsd_imagegen.pipeline import verify_sets

    settings = _load_config(
        config_file,
        verbose,
        build_dir=build_dir,
        sets_dir=sets_dir,
        release=release,
    )

    try:
        records = verify_sets(settings)
    except ImageGenError as e:
        raise fail(e) from e

    console.print(f"[green]Verified {len(records)} set(s)[/green]")
    for filename, digest in records.items():
        console.print(f"  {filename}  {digest[:16]}...")


if __name__ == "__main__":
    app()
