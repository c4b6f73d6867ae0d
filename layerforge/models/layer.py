"""Layer specification models and the stackerfile loader.

A stackerfile is a YAML mapping of layer name to layer definition. Several
directives accept more than one shape (a string, a list of strings, a list of
maps); the validators below fold every shape into one canonical form at
construction and on assignment, so the build cache and the runtime only ever
see the canonical representation.
"""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from layerforge.core.errors import LayerforgeError

logger = logging.getLogger(__name__)

DOCKER_LAYER = "docker"
TAR_LAYER = "tar"
OCI_LAYER = "oci"
BUILT_LAYER = "built"
SCRATCH_LAYER = "scratch"

# Forwarded into the build environment when a layer declares no passthrough.
DEFAULT_ENV_PASSTHROUGH = (
    "ftp_proxy", "http_proxy", "https_proxy", "no_proxy",
    "FTP_PROXY", "HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY", "TERM",
)


class StackerfileError(LayerforgeError):
    """Raised when a stackerfile cannot be read or a directive is malformed."""


def _string_list(value: Any, split: bool, directive: str) -> list[str]:
    if isinstance(value, str):
        return shlex.split(value) if split else [value]
    if isinstance(value, (list, tuple)):
        out: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError(
                    f"unknown {directive} array type: {type(item).__name__}"
                )
            out.append(item)
        return out
    raise ValueError(f"unknown directive type for {directive}: {type(value).__name__}")


def is_containers_image_layer(source_type: str) -> bool:
    """Whether a source type is fetched through a container image transport."""
    return source_type in (DOCKER_LAYER, OCI_LAYER)


class ImageSource(BaseModel):
    """Where a layer's base filesystem comes from."""

    model_config = ConfigDict(validate_assignment=True)

    type: str
    url: str = ""
    tag: str = ""
    insecure: bool = False


class ImportMap(BaseModel):
    """One imported file: its path or URL and an optional expected hash."""

    model_config = ConfigDict(validate_assignment=True)

    path: str
    hash: str = ""

    @classmethod
    def coerce(cls, value: Any) -> ImportMap:
        if isinstance(value, ImportMap):
            return value
        if isinstance(value, str):
            return cls(path=value)
        if isinstance(value, Mapping):
            raw_hash = value.get("hash")
            return cls(
                path=str(value.get("path", "")),
                hash="" if raw_hash is None else str(raw_hash),
            )
        raise ValueError(f"Unsupported import type: {value!r}")


class Layer(BaseModel):
    """The fully-resolved definition of one build layer.

    Mutable in memory: the build cache always hashes the current field
    values, so editing a layer after it was cached invalidates the entry.
    """

    model_config = ConfigDict(validate_assignment=True, populate_by_name=True)

    from_: ImageSource | None = Field(default=None, alias="from")
    import_: list[ImportMap] = Field(default_factory=list, alias="import")
    run: list[str] = Field(default_factory=list)
    cmd: list[str] | None = None
    entrypoint: list[str] | None = None
    full_command: list[str] | None = None
    build_env_passthrough: list[str] = Field(default_factory=list)
    build_env: dict[str, str] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)
    volumes: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    generate_labels: list[str] = Field(default_factory=list)
    working_dir: str = ""
    build_only: bool = False
    binds: dict[str, str] = Field(default_factory=dict)
    runtime_user: str = ""

    @field_validator("run", "generate_labels", mode="before")
    @classmethod
    def _script_lines(cls, value: Any, info: ValidationInfo) -> list[str]:
        if value is None:
            return []
        return _string_list(value, split=False, directive=info.field_name)

    @field_validator("cmd", "entrypoint", "full_command", mode="before")
    @classmethod
    def _argv(cls, value: Any, info: ValidationInfo) -> list[str] | None:
        if value is None:
            return None
        return _string_list(value, split=True, directive=info.field_name)

    @field_validator("import_", mode="before")
    @classmethod
    def _imports(cls, value: Any) -> list[ImportMap]:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [ImportMap.coerce(v) for v in value]
        return [ImportMap.coerce(value)]

    @field_validator("binds", mode="before")
    @classmethod
    def _binds(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, Mapping):
            return {str(k): str(v) for k, v in value.items()}
        binds: dict[str, str] = {}
        for bind in _string_list(value, split=False, directive="binds"):
            parts = bind.split("->")
            if len(parts) not in (1, 2):
                raise ValueError(f"invalid bind mount {bind}")
            source = parts[0].strip()
            binds[source] = parts[1].strip() if len(parts) == 2 else source
        return binds

    @field_validator("build_env", "environment", "labels", mode="before")
    @classmethod
    def _string_map(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        return {str(k): str(v) for k, v in dict(value).items()}

    @field_validator("build_env_passthrough", "volumes", mode="before")
    @classmethod
    def _plain_list(cls, value: Any) -> list[str]:
        return [] if value is None else list(value)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def hashable(self) -> dict[str, Any]:
        """Canonical serialization of every field, used as the cache key input."""
        return self.model_dump(mode="json", by_alias=True)

    def resolve_paths(self, reference_directory: Path) -> None:
        """Make relative import and bind sources absolute against a directory."""
        base = Path(reference_directory)
        self.import_ = [
            ImportMap(path=_abs_path(base, im.path), hash=im.hash) for im in self.import_
        ]
        self.binds = {_abs_path(base, src): dst for src, dst in self.binds.items()}

    def build_environment(
        self, name: str, env_snapshot: Mapping[str, str]
    ) -> dict[str, str]:
        """Environment for the build container.

        ``env_snapshot`` is the ambient environment captured by the caller;
        only keys matching a passthrough pattern are forwarded.
        """
        patterns = self.build_env_passthrough or list(DEFAULT_ENV_PASSTHROUGH)
        try:
            matchers = [re.compile(f"^{p}$") for p in patterns]
        except re.error as exc:
            raise StackerfileError(
                f"layer {name}: bad build_env_passthrough pattern: {exc}"
            ) from exc
        env = {
            key: val
            for key, val in env_snapshot.items()
            if any(m.match(key) for m in matchers)
        }
        env.update(self.build_env)
        env["STACKER_LAYER_NAME"] = name
        return env


def _abs_path(base: Path, path: str) -> str:
    if urlparse(path).scheme or Path(path).is_absolute():
        return path
    return str((base / path).resolve())


class Stackerfile(BaseModel):
    """A parsed stackerfile: layers keyed by name, in file order."""

    path: Path | None = None
    layers: dict[str, Layer] = Field(default_factory=dict)

    def __getitem__(self, name: str) -> Layer:
        return self.layers[name]

    def __contains__(self, name: object) -> bool:
        return name in self.layers


def parse_stackerfile(
    text: str, reference_directory: Path | None = None
) -> Stackerfile:
    """Parse stackerfile YAML text into canonical layer definitions."""
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise StackerfileError(f"invalid stackerfile YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise StackerfileError("stackerfile must be a mapping of layer names")

    layers: dict[str, Layer] = {}
    for name, body in data.items():
        try:
            layer = Layer.model_validate(body or {})
        except ValueError as exc:
            raise StackerfileError(f"layer {name}: {exc}") from exc
        if reference_directory is not None:
            layer.resolve_paths(reference_directory)
        layers[str(name)] = layer
    return Stackerfile(layers=layers)


def load_stackerfile(path: Path) -> Stackerfile:
    """Read a stackerfile from disk; relative paths resolve against its directory."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StackerfileError(f"couldn't read stackerfile {path}: {exc}") from exc
    stackerfile = parse_stackerfile(text, reference_directory=path.parent.resolve())
    stackerfile.path = path
    logger.debug("Loaded %d layers from %s", len(stackerfile.layers), path)
    return stackerfile
