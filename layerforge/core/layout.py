"""OCI image layout: blob store plus reference index, with manifest handling.

On-disk layout (OCI image-layout 1.0.0)::

    {path}/
        oci-layout
        index.json
        blobs/sha256/{hex}

A single writer per layout path is assumed. Callers that build several
images against the same path from multiple threads or processes must
serialize those builds themselves.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, BinaryIO, Iterable

from pydantic import ValidationError

from layerforge.core.blob_store import BLOBS_DIR, DIGEST_ALGORITHM, BlobHandle, BlobStore
from layerforge.core.config_generator import ConfigGenerator, ImageConfigSource
from layerforge.core.context import BuildContext
from layerforge.core.errors import (
    AlreadyExistsError,
    NotAStoreError,
    NotFoundError,
    StorageIOError,
    UnsupportedMediaTypeError,
)
from layerforge.core.hasher import parse_digest
from layerforge.core.reference_index import INDEX_FILE, ReferenceIndex, empty_index
from layerforge.core.unpack import MapOptions, unpack_manifest
from layerforge.models.oci import (
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_LAYER_GZIP,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Blob,
    Descriptor,
    ImageConfig,
    Manifest,
)

logger = logging.getLogger(__name__)

LAYOUT_FILE = "oci-layout"
LAYOUT_VERSION = "1.0.0"


class ImageLayout:
    """An open OCI image layout.

    Obtain one with :meth:`open` or :meth:`create`; close it with
    :meth:`close` or by using it as a context manager.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._store = BlobStore(self._path)
        self._index = ReferenceIndex(self._path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def open(cls, path: Path) -> ImageLayout:
        """Open an existing layout; fails if it is absent or malformed."""
        path = Path(path)
        if not path.exists():
            raise NotFoundError(f"image layout not found: {path}")
        if not path.is_dir():
            raise NotAStoreError(f"not an image layout (not a directory): {path}")

        layout_file = path / LAYOUT_FILE
        try:
            marker = json.loads(layout_file.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise NotAStoreError(f"not an image layout (missing {LAYOUT_FILE}): {path}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise NotAStoreError(f"not an image layout (bad {LAYOUT_FILE}): {path}: {exc}") from exc
        if not isinstance(marker, dict) or marker.get("imageLayoutVersion") != LAYOUT_VERSION:
            raise NotAStoreError(
                f"unsupported image layout version in {path}: {marker!r}"
            )
        if not (path / BLOBS_DIR).is_dir():
            raise NotAStoreError(f"not an image layout (missing {BLOBS_DIR}/): {path}")
        if not (path / INDEX_FILE).is_file():
            raise NotAStoreError(f"not an image layout (missing {INDEX_FILE}): {path}")

        logger.debug("Opened image layout at %s", path)
        return cls(path)

    @classmethod
    def create(cls, path: Path) -> ImageLayout:
        """Create a new, empty layout; fails if anything exists at ``path``."""
        path = Path(path)
        if path.exists():
            raise AlreadyExistsError(f"image layout already exists: {path}")
        try:
            (path / BLOBS_DIR / DIGEST_ALGORITHM).mkdir(parents=True)
            (path / LAYOUT_FILE).write_text(
                json.dumps({"imageLayoutVersion": LAYOUT_VERSION}), encoding="utf-8"
            )
            (path / INDEX_FILE).write_text(json.dumps(empty_index()), encoding="utf-8")
        except OSError as exc:
            raise StorageIOError(f"create image layout {path}: {exc}") from exc
        logger.info("Created image layout at %s", path)
        return cls.open(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def store(self) -> BlobStore:
        return self._store

    @property
    def index(self) -> ReferenceIndex:
        return self._index

    def close(self) -> None:
        self._store.close()
        self._index.close()

    def __enter__(self) -> ImageLayout:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def _resolve(self, name: str, ctx: BuildContext | None = None) -> Descriptor:
        try:
            return self._index.resolve_reference(name, ctx=ctx)
        except NotFoundError as exc:
            raise NotFoundError(f"tag not found: {name} (in {self._path})") from exc

    def tag(self, from_name: str, to_name: str, *, ctx: BuildContext | None = None) -> None:
        """Point ``to_name`` at whatever ``from_name`` currently resolves to."""
        descriptor = self._resolve(from_name, ctx)
        self._index.update_reference(to_name, descriptor, ctx=ctx)
        logger.info("Tagged %s as %s", from_name, to_name)

    def list_tags(self, *, ctx: BuildContext | None = None) -> set[str]:
        return self._index.list_references(ctx=ctx)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def put_blob(self, reader: BinaryIO, *, ctx: BuildContext | None = None) -> Blob:
        """Add the content of ``reader`` as a blob."""
        descriptor = self._store.put_blob(reader, ctx=ctx)
        return Blob(hash=descriptor.digest, size=descriptor.size)

    def new_image(
        self,
        tag_name: str,
        config_generator: ImageConfigSource | None = None,
        layer_blobs: Iterable[Blob] = (),
        media_type: str = MEDIA_TYPE_IMAGE_LAYER_GZIP,
        *,
        ctx: BuildContext | None = None,
    ) -> Descriptor:
        """Write a config and manifest for ``layer_blobs`` and tag the result.

        The tag is only updated after the config and manifest blobs are
        fully written, so a failure part-way leaves the tag untouched and
        the call can simply be retried.
        """
        layer_descriptors = []
        for blob in layer_blobs:
            parse_digest(blob.hash)
            layer_descriptors.append(
                Descriptor(media_type=media_type, digest=blob.hash, size=blob.size)
            )

        generator = config_generator if config_generator is not None else ConfigGenerator()
        config = generator.image()
        config_obj: Any = config.to_oci() if isinstance(config, ImageConfig) else config
        try:
            config_desc = self._store.put_blob_json(
                config_obj, media_type=MEDIA_TYPE_IMAGE_CONFIG, ctx=ctx
            )
        except StorageIOError as exc:
            raise StorageIOError(f"put config blob for {tag_name}: {exc}") from exc

        manifest = Manifest(config=config_desc, layers=layer_descriptors)
        try:
            manifest_desc = self._store.put_blob_json(
                manifest.to_oci(), media_type=MEDIA_TYPE_IMAGE_MANIFEST, ctx=ctx
            )
        except StorageIOError as exc:
            raise StorageIOError(f"put manifest blob for {tag_name}: {exc}") from exc

        try:
            self._index.update_reference(tag_name, manifest_desc, ctx=ctx)
        except StorageIOError as exc:
            raise StorageIOError(f"add new tag {tag_name}: {exc}") from exc

        logger.info(
            "New image %s -> %s (%d layers)",
            tag_name,
            manifest_desc.digest,
            len(layer_descriptors),
        )
        return manifest_desc

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def lookup_manifest(self, tag: str, *, ctx: BuildContext | None = None) -> Manifest:
        """Resolve ``tag`` and decode the single-platform manifest it names."""
        descriptor = self._resolve(tag, ctx)
        if descriptor.media_type != MEDIA_TYPE_IMAGE_MANIFEST:
            raise UnsupportedMediaTypeError(
                MEDIA_TYPE_IMAGE_MANIFEST, descriptor.media_type, f"tag {tag}"
            )
        with self._store.get_blob(descriptor, ctx=ctx) as handle:
            data = _decode_json(handle, f"manifest for tag {tag}")

        embedded = data.get("mediaType", MEDIA_TYPE_IMAGE_MANIFEST)
        if embedded != MEDIA_TYPE_IMAGE_MANIFEST:
            raise UnsupportedMediaTypeError(MEDIA_TYPE_IMAGE_MANIFEST, embedded, f"tag {tag}")
        try:
            return Manifest.model_validate(data)
        except ValidationError as exc:
            raise NotAStoreError(f"malformed manifest {descriptor.digest}: {exc}") from exc

    def layers_for_tag(
        self, tag: str, *, ctx: BuildContext | None = None
    ) -> list[BlobHandle]:
        """Open every layer blob of ``tag``'s manifest, in manifest order.

        The caller must close each returned handle. If opening any layer
        fails, the handles already opened are closed before the error is
        raised, so the caller never has to clean up after a failure.
        """
        manifest = self.lookup_manifest(tag, ctx=ctx)
        handles: list[BlobHandle] = []
        try:
            for layer in manifest.layers:
                handles.append(self._store.get_blob(layer, ctx=ctx))
        except BaseException:
            for handle in handles:
                handle.close()
            raise
        return handles

    def lookup_config(self, blob: Blob, *, ctx: BuildContext | None = None) -> ImageConfig:
        """Fetch and decode the image config stored at ``blob``."""
        descriptor = Descriptor(
            media_type=MEDIA_TYPE_IMAGE_CONFIG, digest=blob.to_digest(), size=blob.size
        )
        with self._store.get_blob(descriptor, ctx=ctx) as handle:
            data = _decode_json(handle, f"config {blob.hash}")

        # Manifests and indexes carry schemaVersion; configs never do.
        default = MEDIA_TYPE_IMAGE_MANIFEST if "schemaVersion" in data else MEDIA_TYPE_IMAGE_CONFIG
        embedded = data.get("mediaType", default)
        if embedded != MEDIA_TYPE_IMAGE_CONFIG:
            raise UnsupportedMediaTypeError(MEDIA_TYPE_IMAGE_CONFIG, embedded, f"blob {blob.hash}")
        try:
            return ImageConfig.model_validate(data)
        except ValidationError as exc:
            raise UnsupportedMediaTypeError(
                MEDIA_TYPE_IMAGE_CONFIG, "unknown", f"bad image config {blob.hash}: {exc}"
            ) from exc

    def unpack(
        self,
        tag: str,
        dest: Path,
        map_options: MapOptions | None = None,
        *,
        ctx: BuildContext | None = None,
    ) -> None:
        """Extract ``tag``'s filesystem into ``dest``."""
        manifest = self.lookup_manifest(tag, ctx=ctx)
        unpack_manifest(self._store, manifest, Path(dest), map_options or MapOptions(), ctx=ctx)


def _decode_json(handle: BlobHandle, what: str) -> dict[str, Any]:
    try:
        data = handle.json()
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise UnsupportedMediaTypeError(handle.media_type, "non-JSON content", what) from exc
    if not isinstance(data, dict):
        raise UnsupportedMediaTypeError(handle.media_type, type(data).__name__, what)
    return data
