"""Content-addressed, immutable blob store inside an OCI image layout.

Storage layout: {root}/blobs/{algorithm}/{hex}
Blobs are written once and never modified; there is no delete method.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import IO, Any, BinaryIO

from layerforge.core.context import BuildContext, check
from layerforge.core.errors import NotFoundError, StorageIOError
from layerforge.core.hasher import CHUNK_SIZE, canonical_json_bytes, parse_digest
from layerforge.models.oci import MEDIA_TYPE_OCTET_STREAM, Descriptor

logger = logging.getLogger(__name__)

BLOBS_DIR = "blobs"
DIGEST_ALGORITHM = "sha256"


class BlobHandle:
    """A scoped read handle on a stored blob.

    Use as a context manager or call :meth:`close`; closing twice is safe.
    """

    def __init__(self, descriptor: Descriptor, fh: IO[bytes]) -> None:
        self.descriptor = descriptor
        self._fh = fh

    @property
    def media_type(self) -> str:
        return self.descriptor.media_type

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def read(self, size: int = -1) -> bytes:
        return self._fh.read(size)

    def json(self) -> Any:
        """Decode the whole blob as JSON."""
        return json.loads(self._fh.read().decode("utf-8"))

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> BlobHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<BlobHandle {self.descriptor.digest} {state}>"


class BlobStore:
    """SHA-256 keyed, immutable blob store.

    Storing the same content twice is a no-op (idempotent). A single writer
    per root is assumed; concurrent writers must be serialized by the caller.

    Parameters
    ----------
    root:
        Root directory of the image layout holding ``blobs/``.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._closed = False

    @property
    def root(self) -> Path:
        return self._root

    def blob_path(self, digest: str) -> Path:
        """Compute the storage path for a digest (InvalidDigestError if malformed)."""
        algorithm, encoded = parse_digest(digest)
        return self._root / BLOBS_DIR / algorithm / encoded

    def has_blob(self, digest: str) -> bool:
        return self.blob_path(digest).is_file()

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageIOError(f"blob store at {self._root} is closed")

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put_blob(
        self,
        reader: BinaryIO,
        *,
        media_type: str = MEDIA_TYPE_OCTET_STREAM,
        ctx: BuildContext | None = None,
    ) -> Descriptor:
        """Store the full content of ``reader`` and return its descriptor.

        The digest is computed while the bytes are copied to a temporary
        file, which is then renamed into place. If a blob with that digest
        already exists the temporary copy is discarded.
        """
        self._ensure_open()
        check(ctx, "put blob")
        hasher = hashlib.new(DIGEST_ALGORITHM)
        size = 0
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp-blob-", dir=self._root)
        except OSError as exc:
            raise StorageIOError(f"create temporary blob in {self._root}: {exc}") from exc

        tmp_path = Path(tmp_name)
        committed = False
        try:
            with os.fdopen(fd, "wb") as out:
                while True:
                    check(ctx, "put blob")
                    chunk = reader.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    hasher.update(chunk)
                    out.write(chunk)
                    size += len(chunk)
                out.flush()
                os.fsync(out.fileno())

            digest = f"{DIGEST_ALGORITHM}:{hasher.hexdigest()}"
            path = self.blob_path(digest)
            if path.exists():
                logger.debug("Blob %s already present, skipping write", digest)
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                os.replace(tmp_path, path)
                committed = True
                logger.debug("Stored blob %s (%d bytes)", digest, size)
        except OSError as exc:
            raise StorageIOError(f"put blob into {self._root}: {exc}") from exc
        finally:
            if not committed:
                tmp_path.unlink(missing_ok=True)

        return Descriptor(media_type=media_type, digest=digest, size=size)

    def put_blob_bytes(
        self,
        data: bytes,
        *,
        media_type: str = MEDIA_TYPE_OCTET_STREAM,
        ctx: BuildContext | None = None,
    ) -> Descriptor:
        return self.put_blob(io.BytesIO(data), media_type=media_type, ctx=ctx)

    def put_blob_json(
        self,
        obj: Any,
        *,
        media_type: str = MEDIA_TYPE_OCTET_STREAM,
        ctx: BuildContext | None = None,
    ) -> Descriptor:
        """Serialize ``obj`` deterministically and store it."""
        try:
            data = canonical_json_bytes(obj)
        except (TypeError, ValueError) as exc:
            raise StorageIOError(f"serialize {media_type} blob: {exc}") from exc
        return self.put_blob_bytes(data, media_type=media_type, ctx=ctx)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_blob(
        self, descriptor: Descriptor, *, ctx: BuildContext | None = None
    ) -> BlobHandle:
        """Open the blob a descriptor points at.

        Raises NotFoundError when no blob with that digest is stored.
        """
        self._ensure_open()
        check(ctx, "get blob")
        path = self.blob_path(descriptor.digest)
        try:
            fh = open(path, "rb")
        except FileNotFoundError as exc:
            raise NotFoundError(f"blob not found: {descriptor.digest}") from exc
        except OSError as exc:
            raise StorageIOError(f"open blob {descriptor.digest}: {exc}") from exc
        return BlobHandle(descriptor, fh)

    def close(self) -> None:
        """Release the store; further reads and writes fail. Idempotent."""
        if not self._closed:
            logger.debug("Closing blob store at %s", self._root)
        self._closed = True
