"""``layerforge init``: create an empty OCI image layout."""

from __future__ import annotations

from pathlib import Path

import typer

from layerforge.cli.commands._common import console, err_console
from layerforge.config import settings
from layerforge.core.config_generator import ConfigGenerator
from layerforge.core.errors import LayerforgeError
from layerforge.core.layout import ImageLayout


def init_cmd(
    oci_dir: Path = typer.Option(
        None, "--oci-dir", "-o", help="Where to create the layout (default: settings.oci_dir)."
    ),
    empty_tag: str = typer.Option(
        None, "--empty-tag", help="Also create an empty base image under this tag."
    ),
) -> None:
    """Create a new OCI image layout; fails if one already exists."""
    path = oci_dir or settings.oci_dir
    try:
        with ImageLayout.create(path) as layout:
            if empty_tag:
                layout.new_image(empty_tag, ConfigGenerator(), [])
    except LayerforgeError as exc:
        err_console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    console.print(f"[bold green]Created image layout[/bold green] {path}")
    if empty_tag:
        console.print(f"Tagged empty image as [cyan]{empty_tag}[/cyan]")
