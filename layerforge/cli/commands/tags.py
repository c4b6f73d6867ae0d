"""``layerforge tags`` and ``layerforge tag``: list and alias references."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from layerforge.cli.commands._common import console, err_console, open_layout
from layerforge.config import settings
from layerforge.core.errors import LayerforgeError


def tags_cmd(
    oci_dir: Path = typer.Option(None, "--oci-dir", "-o", help="Image layout path."),
) -> None:
    """List every tag in the layout with the manifest it points at."""
    with open_layout(oci_dir or settings.oci_dir) as layout:
        names = sorted(layout.list_tags())
        if not names:
            console.print("[dim]No tags.[/dim]")
            return

        table = Table(title=f"Tags in {layout.path}")
        table.add_column("Tag", style="cyan", no_wrap=True)
        table.add_column("Digest", style="green", overflow="fold")
        table.add_column("Size", justify="right")
        for name in names:
            try:
                desc = layout.index.resolve_reference(name)
            except LayerforgeError as exc:
                table.add_row(name, f"[red]{exc}[/red]", "")
                continue
            table.add_row(name, desc.digest, str(desc.size))
        console.print(table)


def tag_cmd(
    source: str = typer.Argument(..., help="Existing tag."),
    target: str = typer.Argument(..., help="New or repointed tag."),
    oci_dir: Path = typer.Option(None, "--oci-dir", "-o", help="Image layout path."),
) -> None:
    """Point TARGET at the image SOURCE currently names."""
    with open_layout(oci_dir or settings.oci_dir) as layout:
        try:
            layout.tag(source, target)
        except LayerforgeError as exc:
            err_console.print(f"[red]error:[/red] {exc}")
            raise typer.Exit(code=1) from exc
    console.print(f"[cyan]{target}[/cyan] -> [cyan]{source}[/cyan]")
