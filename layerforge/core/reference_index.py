"""Tag -> descriptor index, persisted as the OCI layout's ``index.json``.

Each tag is one entry of ``manifests[]`` annotated with
``org.opencontainers.image.ref.name``. Tags are mutable: updating a tag
replaces every entry carrying that name. Blobs are never touched here.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from layerforge.core.context import BuildContext, check
from layerforge.core.errors import (
    AmbiguousReferenceError,
    NotAStoreError,
    NotFoundError,
    StorageIOError,
)
from layerforge.models.oci import ANNOTATION_REF_NAME, MEDIA_TYPE_IMAGE_INDEX, Descriptor

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"


def empty_index() -> dict[str, Any]:
    return {"schemaVersion": 2, "mediaType": MEDIA_TYPE_IMAGE_INDEX, "manifests": []}


class ReferenceIndex:
    """Reads and rewrites ``index.json`` for one image layout.

    The file is re-read on every operation so that a resolve always sees
    the last committed update; writes go through a temporary file and an
    atomic rename.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._path = self._root / INDEX_FILE
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop serving the index; further operations fail. Idempotent."""
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageIOError(f"reference index at {self._root} is closed")

    def _load(self) -> dict[str, Any]:
        self._ensure_open()
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotAStoreError(f"missing {INDEX_FILE} in {self._root}") from exc
        except OSError as exc:
            raise StorageIOError(f"read {self._path}: {exc}") from exc
        try:
            index = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise NotAStoreError(f"malformed {self._path}: {exc}") from exc
        if not isinstance(index, dict) or not isinstance(index.get("manifests", []), list):
            raise NotAStoreError(f"malformed {self._path}: not an image index")
        index.setdefault("manifests", [])
        return index

    def _save(self, index: dict[str, Any]) -> None:
        self._ensure_open()
        data = json.dumps(index, separators=(",", ":")).encode("utf-8")
        tmp_name = ""
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp-index-", dir=self._root)
            with os.fdopen(fd, "wb") as out:
                out.write(data)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageIOError(f"write {self._path}: {exc}") from exc

    @staticmethod
    def _ref_name(entry: dict[str, Any]) -> str | None:
        annotations = entry.get("annotations") or {}
        return annotations.get(ANNOTATION_REF_NAME)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def update_reference(
        self, name: str, descriptor: Descriptor, *, ctx: BuildContext | None = None
    ) -> None:
        """Point ``name`` at ``descriptor``, replacing any previous target."""
        check(ctx, f"update reference {name}")
        index = self._load()
        kept = [m for m in index["manifests"] if self._ref_name(m) != name]
        annotations = dict(descriptor.annotations or {})
        annotations[ANNOTATION_REF_NAME] = name
        entry = descriptor.model_copy(update={"annotations": annotations}).to_oci()
        index["manifests"] = kept + [entry]
        check(ctx, f"update reference {name}")
        self._save(index)
        logger.debug("Tag %s -> %s", name, descriptor.digest)

    def resolve_reference(
        self, name: str, *, ctx: BuildContext | None = None
    ) -> Descriptor:
        """Return the one descriptor ``name`` points at.

        Raises NotFoundError when nothing matches and AmbiguousReferenceError
        when several distinct descriptors carry the same name.
        """
        check(ctx, f"resolve reference {name}")
        candidates: list[Descriptor] = []
        for entry in self._load()["manifests"]:
            if self._ref_name(entry) != name:
                continue
            try:
                descriptor = Descriptor.model_validate(entry)
            except ValidationError as exc:
                raise NotAStoreError(
                    f"malformed index entry for tag {name}: {exc}"
                ) from exc
            if descriptor not in candidates:
                candidates.append(descriptor)

        if not candidates:
            raise NotFoundError(f"tag not found: {name}")
        if len(candidates) > 1:
            raise AmbiguousReferenceError(name, len(candidates))
        return candidates[0]

    def list_references(self, *, ctx: BuildContext | None = None) -> set[str]:
        check(ctx, "list references")
        names = (self._ref_name(m) for m in self._load()["manifests"])
        return {n for n in names if n is not None}

    def delete_reference(self, name: str, *, ctx: BuildContext | None = None) -> None:
        """Remove a tag. The blobs it pointed at are left in place."""
        check(ctx, f"delete reference {name}")
        index = self._load()
        kept = [m for m in index["manifests"] if self._ref_name(m) != name]
        if len(kept) == len(index["manifests"]):
            raise NotFoundError(f"tag not found: {name}")
        index["manifests"] = kept
        self._save(index)
