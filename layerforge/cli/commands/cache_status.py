"""``layerforge cache-status``: which layers of a stackerfile are cached."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from layerforge.cli.commands._common import console, err_console
from layerforge.config import settings
from layerforge.core.build_cache import BuildCache
from layerforge.core.errors import LayerforgeError
from layerforge.core.layout import ImageLayout
from layerforge.models.layer import load_stackerfile


def cache_status_cmd(
    stackerfile: Path = typer.Argument(..., help="Path to the stackerfile."),
) -> None:
    """Report a cache hit or miss for every layer in STACKERFILE."""
    config = settings.stacker_config()
    try:
        sf = load_stackerfile(stackerfile)
        layout = ImageLayout.open(config.oci_dir) if config.oci_dir.exists() else None
        try:
            cache = BuildCache.open(config, layout, sf.layers)
            results = [(name, *cache.lookup(name)) for name in sf.layers]
        finally:
            if layout is not None:
                layout.close()
    except LayerforgeError as exc:
        err_console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    table = Table(title=f"Build cache for {stackerfile}")
    table.add_column("Layer", style="cyan", no_wrap=True)
    table.add_column("Status", justify="center", no_wrap=True)
    table.add_column("Digest", style="dim")
    for name, descriptor, found in results:
        status = "[green]hit[/green]" if found else "[yellow]rebuild[/yellow]"
        digest = descriptor.digest if descriptor is not None else ""
        table.add_row(name, status, digest)
    console.print(table)
