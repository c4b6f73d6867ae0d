"""Builder for OCI image configs.

``ImageLayout.new_image`` asks a generator for the config object to store;
anything with an ``image()`` method returning an ImageConfig (or a plain
JSON-ready dict) will do.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from layerforge.models.layer import Layer
from layerforge.models.oci import History, ImageConfig, RootFS, RuntimeConfig


class ImageConfigSource(Protocol):
    def image(self) -> ImageConfig | dict[str, Any]: ...


class ConfigGenerator:
    """Accumulates runtime metadata and produces an ImageConfig."""

    def __init__(self, base: ImageConfig | None = None) -> None:
        base = base or ImageConfig()
        rc = base.config
        self.architecture = base.architecture
        self.os = base.os
        self.created = base.created
        self.author = base.author
        self.user = rc.user
        self.env: dict[str, str] = {}
        for item in rc.env or []:
            key, _, val = item.partition("=")
            self.env[key] = val
        self.entrypoint = list(rc.entrypoint) if rc.entrypoint is not None else None
        self.cmd = list(rc.cmd) if rc.cmd is not None else None
        self.volumes = list(rc.volumes or {})
        self.working_dir = rc.working_dir
        self.labels = dict(rc.labels or {})
        self.diff_ids = list(base.rootfs.diff_ids)
        self.history = list(base.history or [])

    def set_entrypoint(self, argv: list[str] | None) -> None:
        self.entrypoint = None if argv is None else list(argv)

    def set_cmd(self, argv: list[str] | None) -> None:
        self.cmd = None if argv is None else list(argv)

    def add_env(self, key: str, value: str) -> None:
        self.env[key] = value

    def set_working_dir(self, path: str) -> None:
        self.working_dir = path or None

    def add_volume(self, path: str) -> None:
        if path not in self.volumes:
            self.volumes.append(path)

    def add_label(self, key: str, value: str) -> None:
        self.labels[key] = value

    def set_user(self, user: str) -> None:
        self.user = user or None

    def add_diff_id(self, digest: str) -> None:
        self.diff_ids.append(digest)

    def add_history(self, created_by: str, *, empty_layer: bool = False) -> None:
        self.history.append(
            History(
                created=datetime.now(timezone.utc),
                created_by=created_by,
                empty_layer=empty_layer or None,
            )
        )

    def image(self) -> ImageConfig:
        return ImageConfig(
            created=self.created,
            author=self.author,
            architecture=self.architecture,
            os=self.os,
            config=RuntimeConfig(
                user=self.user,
                env=[f"{k}={v}" for k, v in self.env.items()] or None,
                entrypoint=self.entrypoint,
                cmd=self.cmd,
                volumes={v: {} for v in self.volumes} or None,
                working_dir=self.working_dir,
                labels=self.labels or None,
            ),
            rootfs=RootFS(diff_ids=self.diff_ids),
            history=self.history or None,
        )


def apply_layer_spec(generator: ConfigGenerator, layer: Layer) -> None:
    """Copy a layer's runtime directives onto an image config."""
    if layer.full_command is not None:
        generator.set_entrypoint(layer.full_command)
        generator.set_cmd(None)
    else:
        if layer.entrypoint is not None:
            generator.set_entrypoint(layer.entrypoint)
        if layer.cmd is not None:
            generator.set_cmd(layer.cmd)
    for key, value in layer.environment.items():
        generator.add_env(key, value)
    for volume in layer.volumes:
        generator.add_volume(volume)
    for key, value in layer.labels.items():
        generator.add_label(key, value)
    if layer.working_dir:
        generator.set_working_dir(layer.working_dir)
    if layer.runtime_user:
        generator.set_user(layer.runtime_user)
