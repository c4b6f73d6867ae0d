"""layerforge CLI commands."""
