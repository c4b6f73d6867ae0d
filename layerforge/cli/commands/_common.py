"""Helpers shared by CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console

from layerforge.core.errors import LayerforgeError
from layerforge.core.layout import ImageLayout

console = Console()
err_console = Console(stderr=True)


@contextmanager
def open_layout(path: Path) -> Iterator[ImageLayout]:
    """Open a layout for a command; layerforge errors exit with status 1."""
    try:
        with ImageLayout.open(path) as layout:
            yield layout
    except LayerforgeError as exc:
        err_console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
