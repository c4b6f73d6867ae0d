"""Layer build cache keyed by a hash of each layer's full specification.

Persistence: one JSON file per stacker directory (``build.cache``) holding
``{layer name -> {spec_hash, descriptor}}``. Every ``put`` rewrites the file
atomically before returning.

A lookup never trusts a hash computed earlier: it re-hashes the layer's
*current* specification and only reports a hit when that equals the hash
stored at ``put`` time. Editing a layer, in memory or in its stackerfile,
therefore invalidates its entry without any dependency tracking. The same
layer name alone never makes a hit.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from layerforge.config import StackerConfig
from layerforge.core.errors import (
    CacheDecodeError,
    LayerforgeError,
    NotFoundError,
    StorageIOError,
)
from layerforge.core.hasher import content_address, hash_file, hash_tree
from layerforge.core.layout import ImageLayout
from layerforge.models.cache import CACHE_VERSION, CacheEntry, CacheFile
from layerforge.models.layer import Layer, Stackerfile
from layerforge.models.oci import Descriptor

logger = logging.getLogger(__name__)


class SpecHashError(LayerforgeError):
    """Raised when a layer specification cannot be hashed."""


def specs_from_stackerfiles(stackerfiles: Iterable[Stackerfile]) -> dict[str, Layer]:
    """Merge the layers of several stackerfiles into one name -> layer map."""
    specs: dict[str, Layer] = {}
    for sf in stackerfiles:
        for name, layer in sf.layers.items():
            if name in specs and specs[name] is not layer:
                raise SpecHashError(f"duplicate layer name across stackerfiles: {name}")
            specs[name] = layer
    return specs


def _local_import_path(path: str) -> Path | None:
    parsed = urlparse(path)
    if parsed.scheme == "file":
        return Path(parsed.path)
    if parsed.scheme:
        return None
    return Path(path)


class BuildCache:
    """Persistent memo of layer build outputs.

    Parameters
    ----------
    config:
        Where the cache file and per-layer rootfs directories live.
    layout:
        The output image layout, used to check that a cached blob still
        exists. May be ``None`` when only build-only layers are cached.
    specs_by_layer_name:
        The live layer specifications; held by reference, never copied.
    """

    def __init__(
        self,
        config: StackerConfig,
        layout: ImageLayout | None,
        specs_by_layer_name: Mapping[str, Layer],
        entries: dict[str, CacheEntry] | None = None,
    ) -> None:
        self._config = config
        self._layout = layout
        self._specs = specs_by_layer_name
        self._entries: dict[str, CacheEntry] = entries or {}

    # ------------------------------------------------------------------
    # Load / persist
    # ------------------------------------------------------------------

    @classmethod
    def open(
        cls,
        config: StackerConfig,
        layout: ImageLayout | None,
        specs_by_layer_name: Mapping[str, Layer],
    ) -> BuildCache:
        """Load the persisted cache, starting empty if there is none yet."""
        path = config.cache_file
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("No build cache at %s, starting empty", path)
            return cls(config, layout, specs_by_layer_name)
        except OSError as exc:
            raise StorageIOError(f"read build cache {path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CacheDecodeError(f"corrupt build cache {path}: {exc}") from exc
        if isinstance(data, dict) and data.get("version") != CACHE_VERSION:
            logger.warning(
                "Discarding build cache %s: version %r, expected %d",
                path,
                data.get("version"),
                CACHE_VERSION,
            )
            return cls(config, layout, specs_by_layer_name)
        try:
            cache_file = CacheFile.model_validate(data)
        except ValidationError as exc:
            raise CacheDecodeError(f"corrupt build cache {path}: {exc}") from exc

        logger.debug("Loaded %d build cache entries from %s", len(cache_file.entries), path)
        return cls(config, layout, specs_by_layer_name, dict(cache_file.entries))

    def _persist(self, entries: dict[str, CacheEntry]) -> None:
        path = self._config.cache_file
        payload = CacheFile(entries=entries).model_dump_json(indent=2, by_alias=True)
        tmp_name = ""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp-cache-", dir=path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as out:
                out.write(payload)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageIOError(f"write build cache {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def _layer(self, layer_name: str) -> Layer:
        try:
            return self._specs[layer_name]
        except KeyError as exc:
            raise NotFoundError(f"no layer specification for {layer_name}") from exc

    def spec_hash(self, layer_name: str) -> str:
        """Hash every field of the layer's current specification.

        Local imports also contribute the hash of their current content, so
        editing an imported file invalidates the layer too.
        """
        layer = self._layer(layer_name)
        imports: dict[str, str] = {}
        for im in layer.import_:
            local = _local_import_path(im.path)
            if local is None or not local.exists():
                continue
            try:
                imports[im.path] = hash_tree(local) if local.is_dir() else hash_file(local)
            except OSError as exc:
                raise StorageIOError(
                    f"layer {layer_name}: hash import {im.path}: {exc}"
                ) from exc

        payload: dict[str, Any] = {"layer": layer.hashable(), "imports": imports}
        try:
            return content_address(payload)
        except (TypeError, ValueError) as exc:
            raise SpecHashError(f"layer {layer_name}: cannot hash specification: {exc}") from exc

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def put(self, layer_name: str, descriptor: Descriptor) -> None:
        """Record ``descriptor`` as the build output of the layer as it is now."""
        entry = CacheEntry(spec_hash=self.spec_hash(layer_name), descriptor=descriptor)
        entries = dict(self._entries)
        entries[layer_name] = entry
        self._persist(entries)
        self._entries = entries
        logger.info("Cached layer %s (%s)", layer_name, entry.spec_hash[:19])

    def lookup(self, layer_name: str) -> tuple[Descriptor | None, bool]:
        """Return ``(descriptor, True)`` only if the cached build is still valid."""
        entry = self._entries.get(layer_name)
        if entry is None:
            logger.debug("Cache miss for %s: no entry", layer_name)
            return None, False
        if layer_name not in self._specs:
            logger.debug("Cache miss for %s: layer no longer defined", layer_name)
            return None, False

        current = self.spec_hash(layer_name)
        if current != entry.spec_hash:
            logger.info("Cache miss for %s: specification changed", layer_name)
            return None, False

        if not self._output_present(layer_name, entry.descriptor):
            logger.info("Cache miss for %s: build output is gone", layer_name)
            return None, False

        logger.debug("Cache hit for %s", layer_name)
        return entry.descriptor, True

    def _output_present(self, layer_name: str, descriptor: Descriptor) -> bool:
        if self._specs[layer_name].build_only:
            return (self._config.rootfs_dir / layer_name).is_dir()
        if descriptor.digest and self._layout is not None:
            return self._layout.store.has_blob(descriptor.digest)
        return True

    def entries(self) -> Mapping[str, CacheEntry]:
        return MappingProxyType(self._entries)
