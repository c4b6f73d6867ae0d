"""Main Typer application: registers all CLI commands.

Entry point: ``layerforge`` (configured via pyproject.toml console_scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from layerforge.cli.commands.cache_status import cache_status_cmd
from layerforge.cli.commands.init import init_cmd
from layerforge.cli.commands.inspect_cmd import inspect_cmd
from layerforge.cli.commands.tags import tag_cmd, tags_cmd
from layerforge.cli.commands.unpack_cmd import unpack_cmd
from layerforge.config import settings

app = typer.Typer(
    name="layerforge",
    help="layerforge: build and inspect OCI image layouts with a layer build cache.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    level = "DEBUG" if verbose or settings.debug else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
        force=True,
    )


# Register subcommands
app.command(name="init", help="Create an empty OCI image layout.")(init_cmd)
app.command(name="tags", help="List the tags in a layout.")(tags_cmd)
app.command(name="tag", help="Alias one tag to another.")(tag_cmd)
app.command(name="inspect", help="Show a tag's manifest and config.")(inspect_cmd)
app.command(name="unpack", help="Extract a tag's filesystem.")(unpack_cmd)
app.command(name="cache-status", help="Show build cache hits for a stackerfile.")(cache_status_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
