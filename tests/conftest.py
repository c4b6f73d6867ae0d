"""Shared test fixtures for layerforge."""

from __future__ import annotations

import io
import tarfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from layerforge.config import StackerConfig
from layerforge.core.blob_store import BlobStore
from layerforge.core.layout import ImageLayout
from layerforge.core.reference_index import ReferenceIndex
from layerforge.models.layer import ImageSource, Layer


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def layout(tmp_dir: Path) -> Iterator[ImageLayout]:
    """Provide a freshly created image layout, closed after the test."""
    lay = ImageLayout.create(tmp_dir / "oci")
    yield lay
    lay.close()


@pytest.fixture
def blob_store(layout: ImageLayout) -> BlobStore:
    return layout.store


@pytest.fixture
def reference_index(layout: ImageLayout) -> ReferenceIndex:
    return layout.index


@pytest.fixture
def stacker_config(tmp_dir: Path) -> StackerConfig:
    """Stacker directories rooted in the temp dir, mirroring a real build."""
    return StackerConfig(
        stacker_dir=tmp_dir / ".stacker",
        rootfs_dir=tmp_dir / "roots",
        oci_dir=tmp_dir / "oci",
    )


@pytest.fixture
def centos_layer() -> Layer:
    """A build-only layer on top of a docker image, as a stackerfile would define it."""
    return Layer(
        from_=ImageSource(type="docker", url="docker://centos:latest"),
        run=["zomg"],
        build_only=True,
    )


# ---------------------------------------------------------------------------
# Layer tarball factory: shared across test modules
# ---------------------------------------------------------------------------


@pytest.fixture
def make_layer_tar() -> Callable[..., bytes]:
    """Factory fixture: build an uncompressed layer tarball from entry specs.

    Each entry is ``(name, kind, payload)`` where kind is ``file``, ``dir``,
    ``symlink`` or ``hardlink``; payload is the file content or link target.
    """

    def _factory(*entries: tuple[str, str, object]) -> bytes:
        raw = io.BytesIO()
        with tarfile.open(fileobj=raw, mode="w") as tar:
            for name, kind, payload in entries:
                info = tarfile.TarInfo(name)
                info.mtime = 0
                if kind == "file":
                    data = payload if isinstance(payload, bytes) else str(payload).encode()
                    info.size = len(data)
                    info.mode = 0o644
                    tar.addfile(info, io.BytesIO(data))
                    continue
                if kind == "dir":
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                elif kind == "symlink":
                    info.type = tarfile.SYMTYPE
                    info.linkname = str(payload)
                    info.mode = 0o777
                elif kind == "hardlink":
                    info.type = tarfile.LNKTYPE
                    info.linkname = str(payload)
                    info.mode = 0o644
                else:
                    raise ValueError(kind)
                tar.addfile(info)
        return raw.getvalue()

    return _factory
