"""layerforge CLI (typer)."""
