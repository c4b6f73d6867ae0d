"""``layerforge unpack``: extract a tag's filesystem into a directory."""

from __future__ import annotations

from pathlib import Path

import typer

from layerforge.cli.commands._common import console, err_console, open_layout
from layerforge.config import settings
from layerforge.core.errors import LayerforgeError
from layerforge.core.unpack import MapOptions


def unpack_cmd(
    tag: str = typer.Argument(..., help="Tag to unpack."),
    dest: Path = typer.Argument(..., help="Destination directory."),
    oci_dir: Path = typer.Option(None, "--oci-dir", "-o", help="Image layout path."),
    rootless: bool = typer.Option(False, "--rootless", help="Do not change file ownership."),
) -> None:
    """Unpack TAG into DEST, lowest layer first."""
    with open_layout(oci_dir or settings.oci_dir) as layout:
        try:
            layout.unpack(tag, dest, MapOptions(rootless=rootless))
        except LayerforgeError as exc:
            err_console.print(f"[red]error:[/red] unpack {tag}: {exc}")
            raise typer.Exit(code=1) from exc
    console.print(f"[bold green]Unpacked[/bold green] {tag} into {dest}")
