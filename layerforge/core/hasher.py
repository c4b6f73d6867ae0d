"""Canonical hashing helpers for content addressing and cache keys.

Digests are always written as ``<algorithm>:<hex>``, the form used by the
OCI image layout on disk and by descriptors.
"""

from __future__ import annotations

import hashlib
import json
import re
from pathlib import Path
from typing import Any, BinaryIO

from layerforge.core.errors import InvalidDigestError

CHUNK_SIZE = 1024 * 1024

_ALGORITHM_LENGTHS = {"sha256": 64, "sha512": 128}
_HEX = re.compile(r"^[a-f0-9]+$")


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object as ``sha256:<hex>``."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def parse_digest(value: str) -> tuple[str, str]:
    """Split a digest string into ``(algorithm, hex)``.

    Raises InvalidDigestError if the algorithm is unknown or the encoded
    part is not lowercase hex of the right length.
    """
    algorithm, sep, encoded = str(value).partition(":")
    if not sep:
        raise InvalidDigestError(f"invalid digest {value!r}: missing algorithm")
    expected_len = _ALGORITHM_LENGTHS.get(algorithm)
    if expected_len is None:
        raise InvalidDigestError(
            f"invalid digest {value!r}: unsupported algorithm {algorithm!r}"
        )
    if len(encoded) != expected_len or not _HEX.match(encoded):
        raise InvalidDigestError(f"invalid digest {value!r}: malformed encoding")
    return algorithm, encoded


def hash_stream(stream: BinaryIO, algorithm: str = "sha256") -> tuple[str, int]:
    """Hash a binary stream incrementally, returning ``(digest, size)``."""
    hasher = hashlib.new(algorithm)
    size = 0
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        hasher.update(chunk)
        size += len(chunk)
    return f"{algorithm}:{hasher.hexdigest()}", size


def hash_file(path: Path, algorithm: str = "sha256") -> str:
    """Return the ``<algorithm>:<hex>`` digest of a file's contents."""
    with open(path, "rb") as fh:
        digest, _ = hash_stream(fh, algorithm)
    return digest


def hash_tree(root: Path) -> str:
    """Hash a directory tree: relative paths, file contents and link targets.

    Entries are visited in sorted order so the result does not depend on
    directory listing order.
    """
    root = Path(root)
    entries: list[list[str]] = []
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        if path.is_symlink():
            entries.append([rel, "link", str(path.readlink())])
        elif path.is_dir():
            entries.append([rel, "dir", ""])
        else:
            entries.append([rel, "file", hash_file(path)])
    return content_address(entries)
