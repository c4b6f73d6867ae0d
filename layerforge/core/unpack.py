"""Layer archives: pack a directory into a tar layer, unpack a manifest to a tree.

Unpacking applies layers in manifest order and honours OCI whiteouts
(``.wh.<name>`` removes a lower entry, ``.wh..wh..opq`` empties a lower
directory). Symbolic links are recreated verbatim and never followed, so a
dangling link in a layer is a dangling link on disk.
"""

from __future__ import annotations

import gzip
import io
import logging
import os
import shutil
import stat
import tarfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from layerforge.core.context import BuildContext, check
from layerforge.core.errors import LayerforgeError, UnsupportedMediaTypeError
from layerforge.models.oci import (
    MEDIA_TYPE_IMAGE_LAYER,
    MEDIA_TYPE_IMAGE_LAYER_GZIP,
    Manifest,
)

if TYPE_CHECKING:
    from layerforge.core.blob_store import BlobStore

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
WHITEOUT_OPAQUE = ".wh..wh..opq"

LAYER_MEDIA_TYPES = frozenset({
    MEDIA_TYPE_IMAGE_LAYER,
    MEDIA_TYPE_IMAGE_LAYER_GZIP,
    "application/vnd.docker.image.rootfs.diff.tar.gzip",
})


class UnpackError(LayerforgeError):
    """Raised when a layer archive cannot be applied safely."""


class IdMapping(BaseModel):
    """Maps ``size`` ids starting at ``container_id`` onto ``host_id``."""

    model_config = ConfigDict(frozen=True)

    host_id: int
    container_id: int
    size: int = 1


class MapOptions(BaseModel):
    """Ownership handling for unpacked files."""

    model_config = ConfigDict(frozen=True)

    rootless: bool = False
    uid_mappings: list[IdMapping] = Field(default_factory=list)
    gid_mappings: list[IdMapping] = Field(default_factory=list)

    @staticmethod
    def _map(mappings: list[IdMapping], container_id: int) -> int:
        for m in mappings:
            if m.container_id <= container_id < m.container_id + m.size:
                return m.host_id + (container_id - m.container_id)
        return container_id

    def map_uid(self, uid: int) -> int:
        return self._map(self.uid_mappings, uid)

    def map_gid(self, gid: int) -> int:
        return self._map(self.gid_mappings, gid)


# ---------------------------------------------------------------------------
# Packing
# ---------------------------------------------------------------------------


def pack_directory(src: Path, *, compress: bool = True) -> bytes:
    """Archive a directory as a layer tarball.

    Entries are sorted, owned by root and stamped with mtime 0, so the same
    tree always packs to the same bytes.
    """
    src = Path(src)
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for dirpath, dirnames, filenames in os.walk(src):
            dirnames.sort()
            for name in sorted(dirnames + filenames):
                path = Path(dirpath) / name
                arcname = path.relative_to(src).as_posix()
                info = tar.gettarinfo(str(path), arcname=arcname)
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                info.mtime = 0
                if info.isreg():
                    with open(path, "rb") as fh:
                        tar.addfile(info, fh)
                else:
                    tar.addfile(info)
    data = raw.getvalue()
    if not compress:
        return data
    out = io.BytesIO()
    with gzip.GzipFile(fileobj=out, mode="wb", mtime=0) as gz:
        gz.write(data)
    return out.getvalue()


# ---------------------------------------------------------------------------
# Unpacking
# ---------------------------------------------------------------------------


def _clean_name(name: str) -> PurePosixPath | None:
    parts = [p for p in PurePosixPath("/" + name).parts[1:] if p not in ("", ".")]
    if ".." in parts:
        raise UnpackError(f"layer entry escapes the rootfs: {name}")
    return PurePosixPath(*parts) if parts else None


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class _LayerApplier:
    def __init__(self, dest: Path, options: MapOptions) -> None:
        self.dest = dest
        self.root = dest.resolve()
        self.options = options
        self.chown = not options.rootless and hasattr(os, "geteuid") and os.geteuid() == 0
        self.touched: set[PurePosixPath] = set()

    def _inside(self, real: Path) -> bool:
        return real == self.root or self.root in real.parents

    def _contained(self, rel: PurePosixPath) -> Path:
        """Return ``dest/rel`` if its parent directory resolves inside the rootfs."""
        path = self.dest / rel
        if not self._inside(path.parent.resolve()):
            raise UnpackError(f"layer entry {rel} resolves outside the rootfs")
        return path

    def _target(self, rel: PurePosixPath) -> Path:
        target = self._contained(rel)
        target.parent.mkdir(parents=True, exist_ok=True)
        return target

    def whiteout(self, rel: PurePosixPath) -> None:
        parent = rel.parent
        if rel.name == WHITEOUT_OPAQUE:
            directory = self.dest / parent
            if not self._inside(directory.resolve()):
                raise UnpackError(f"opaque whiteout {rel} resolves outside the rootfs")
            if directory.is_dir() and not directory.is_symlink():
                for child in directory.iterdir():
                    if parent / child.name not in self.touched:
                        _remove(child)
            return
        victim = self._target(parent / rel.name[len(WHITEOUT_PREFIX):])
        _remove(victim)

    def apply(self, tar: tarfile.TarFile, member: tarfile.TarInfo, rel: PurePosixPath) -> None:
        target = self._target(rel)
        if target.is_symlink() or target.exists():
            if not (member.isdir() and target.is_dir() and not target.is_symlink()):
                _remove(target)

        if member.isdir():
            target.mkdir(exist_ok=True)
        elif member.isreg():
            src = tar.extractfile(member)
            with open(target, "wb") as out:
                if src is not None:
                    shutil.copyfileobj(src, out)
        elif member.issym():
            os.symlink(member.linkname, target)
        elif member.islnk():
            link_rel = _clean_name(member.linkname)
            if link_rel is None:
                raise UnpackError(f"hardlink {rel} has an empty target")
            source = self._contained(link_rel)
            if not (source.exists() or source.is_symlink()):
                raise UnpackError(f"hardlink {rel} points at missing {link_rel}")
            os.link(source, target, follow_symlinks=False)
        elif member.isfifo():
            os.mkfifo(target, member.mode & 0o7777)
        elif member.ischr() or member.isblk():
            if not self.chown:
                logger.warning("Skipping device node %s (not running as root)", rel)
                return
            kind = stat.S_IFCHR if member.ischr() else stat.S_IFBLK
            os.mknod(target, kind | (member.mode & 0o7777), os.makedev(member.devmajor, member.devminor))
        else:
            logger.warning("Skipping unsupported entry type %r for %s", member.type, rel)
            return

        self.touched.add(rel)
        if self.chown:
            os.lchown(
                target, self.options.map_uid(member.uid), self.options.map_gid(member.gid)
            )
        if not target.is_symlink():
            if not member.islnk():
                os.chmod(target, member.mode & 0o7777)
            os.utime(target, (member.mtime, member.mtime))
        elif os.utime in os.supports_follow_symlinks:
            os.utime(target, (member.mtime, member.mtime), follow_symlinks=False)


def unpack_manifest(
    store: BlobStore,
    manifest: Manifest,
    dest: Path,
    map_options: MapOptions,
    *,
    ctx: BuildContext | None = None,
) -> None:
    """Extract every layer of ``manifest`` into ``dest``, lowest layer first."""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    for index, layer in enumerate(manifest.layers):
        check(ctx, "unpack")
        if layer.media_type not in LAYER_MEDIA_TYPES:
            raise UnsupportedMediaTypeError(
                MEDIA_TYPE_IMAGE_LAYER_GZIP, layer.media_type, f"layer {index}"
            )
        applier = _LayerApplier(dest, map_options)
        with store.get_blob(layer, ctx=ctx) as handle:
            try:
                with tarfile.open(fileobj=handle, mode="r|*") as tar:
                    for member in tar:
                        check(ctx, "unpack")
                        rel = _clean_name(member.name)
                        if rel is None:
                            continue
                        if rel.name.startswith(WHITEOUT_PREFIX):
                            applier.whiteout(rel)
                        else:
                            applier.apply(tar, member, rel)
            except tarfile.TarError as exc:
                raise UnpackError(f"layer {layer.digest}: {exc}") from exc
            except OSError as exc:
                raise UnpackError(f"layer {layer.digest}: {exc}") from exc
        logger.debug("Applied layer %d (%s) to %s", index, layer.digest, dest)
