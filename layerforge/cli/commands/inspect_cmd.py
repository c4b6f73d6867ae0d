"""``layerforge inspect``: show a tag's manifest and config."""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.panel import Panel
from rich.table import Table

from layerforge.cli.commands._common import console, err_console, open_layout
from layerforge.config import settings
from layerforge.core.errors import LayerforgeError
from layerforge.models.oci import Blob


def inspect_cmd(
    tag: str = typer.Argument(..., help="Tag to inspect."),
    oci_dir: Path = typer.Option(None, "--oci-dir", "-o", help="Image layout path."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw manifest JSON."),
) -> None:
    """Show the layers and runtime config of TAG."""
    with open_layout(oci_dir or settings.oci_dir) as layout:
        try:
            manifest = layout.lookup_manifest(tag)
            config = layout.lookup_config(
                Blob(hash=manifest.config.digest, size=manifest.config.size)
            )
        except LayerforgeError as exc:
            err_console.print(f"[red]error:[/red] {exc}")
            raise typer.Exit(code=1) from exc

    if as_json:
        console.print_json(json.dumps(manifest.to_oci()))
        return

    table = Table(title=f"Layers of {tag}")
    table.add_column("#", justify="right")
    table.add_column("Digest", style="green")
    table.add_column("Size", justify="right")
    table.add_column("Media type", style="dim")
    for i, layer in enumerate(manifest.layers):
        table.add_row(str(i), layer.digest, str(layer.size), layer.media_type)
    console.print(table)

    rc = config.config
    console.print(
        Panel(
            "\n".join([
                f"[bold]Config:[/bold]      {manifest.config.digest}",
                f"[bold]Platform:[/bold]    {config.os}/{config.architecture}",
                f"[bold]Entrypoint:[/bold]  {rc.entrypoint or []}",
                f"[bold]Cmd:[/bold]         {rc.cmd or []}",
                f"[bold]Env:[/bold]         {rc.env or []}",
                f"[bold]WorkingDir:[/bold]  {rc.working_dir or ''}",
                f"[bold]User:[/bold]        {rc.user or ''}",
            ]),
            title=f"[bold]{tag}[/bold]",
            border_style="blue",
        )
    )
