"""Tests for layer packing and manifest unpacking."""

from __future__ import annotations

import gzip
import io
import os
from collections.abc import Callable
from pathlib import Path

import pytest

from layerforge.core.errors import UnsupportedMediaTypeError
from layerforge.core.layout import ImageLayout
from layerforge.core.unpack import IdMapping, MapOptions, UnpackError, pack_directory
from layerforge.models.oci import MEDIA_TYPE_IMAGE_LAYER, MEDIA_TYPE_IMAGE_LAYER_GZIP


def _image(layout: ImageLayout, tag: str, *tars: bytes, media_type: str = MEDIA_TYPE_IMAGE_LAYER):
    blobs = [layout.put_blob(io.BytesIO(t)) for t in tars]
    layout.new_image(tag, layer_blobs=blobs, media_type=media_type)


class TestUnpack:
    def test_dangling_symlink_preserved(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        tar = make_layer_tar(
            ("etc", "dir", None),
            ("etc/broken", "symlink", "/does/not/exist"),
        )
        _image(layout, "img", tar)
        dest = tmp_dir / "rootfs"
        layout.unpack("img", dest, MapOptions(rootless=True))

        link = dest / "etc" / "broken"
        assert link.is_symlink()
        assert os.readlink(link) == "/does/not/exist"
        assert not link.exists()

    def test_layers_apply_in_order(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        lower = make_layer_tar(("f", "file", "lower"), ("keep", "file", "k"))
        upper = make_layer_tar(("f", "file", "upper"))
        _image(layout, "img", lower, upper)
        dest = tmp_dir / "rootfs"
        layout.unpack("img", dest, MapOptions(rootless=True))
        assert (dest / "f").read_text() == "upper"
        assert (dest / "keep").read_text() == "k"

    def test_whiteouts(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        lower = make_layer_tar(
            ("gone", "file", "x"),
            ("d", "dir", None),
            ("d/old", "file", "old"),
        )
        upper = make_layer_tar(
            (".wh.gone", "file", ""),
            ("d", "dir", None),
            ("d/.wh..wh..opq", "file", ""),
            ("d/new", "file", "new"),
        )
        _image(layout, "img", lower, upper)
        dest = tmp_dir / "rootfs"
        layout.unpack("img", dest, MapOptions(rootless=True))
        assert not (dest / "gone").exists()
        assert sorted(p.name for p in (dest / "d").iterdir()) == ["new"]

    def test_hardlink(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        tar = make_layer_tar(("a", "file", "data"), ("b", "hardlink", "a"))
        _image(layout, "img", tar)
        dest = tmp_dir / "rootfs"
        layout.unpack("img", dest, MapOptions(rootless=True))
        assert os.stat(dest / "a").st_ino == os.stat(dest / "b").st_ino

    def test_gzip_layers(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        tar = gzip.compress(make_layer_tar(("z", "file", "zipped")))
        _image(layout, "img", tar, media_type=MEDIA_TYPE_IMAGE_LAYER_GZIP)
        dest = tmp_dir / "rootfs"
        layout.unpack("img", dest, MapOptions(rootless=True))
        assert (dest / "z").read_text() == "zipped"

    def test_escape_rejected(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        _image(layout, "img", make_layer_tar(("../evil", "file", "x")))
        with pytest.raises(UnpackError):
            layout.unpack("img", tmp_dir / "rootfs", MapOptions(rootless=True))
        assert not (tmp_dir / "evil").exists()

    def test_symlink_parent_escape_rejected(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        tar = make_layer_tar(("out", "symlink", str(tmp_dir)), ("out/evil", "file", "x"))
        _image(layout, "img", tar)
        with pytest.raises(UnpackError):
            layout.unpack("img", tmp_dir / "rootfs", MapOptions(rootless=True))
        assert not (tmp_dir / "evil").exists()

    def test_opaque_whiteout_through_symlinked_parent_rejected(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        outside = tmp_dir / "outside"
        (outside / "sub").mkdir(parents=True)
        (outside / "sub" / "precious").write_text("keep me")
        tar = make_layer_tar(
            ("x", "symlink", str(outside)),
            ("x/sub/.wh..wh..opq", "file", ""),
        )
        _image(layout, "img", tar)
        with pytest.raises(UnpackError):
            layout.unpack("img", tmp_dir / "rootfs", MapOptions(rootless=True))
        assert (outside / "sub" / "precious").read_text() == "keep me"

    def test_hardlink_through_symlinked_parent_rejected(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        outside = tmp_dir / "outside"
        outside.mkdir()
        victim = outside / "victim"
        victim.write_text("host file")
        mtime_before = victim.stat().st_mtime
        tar = make_layer_tar(
            ("x", "symlink", str(outside)),
            ("y", "hardlink", "x/victim"),
        )
        _image(layout, "img", tar)
        with pytest.raises(UnpackError):
            layout.unpack("img", tmp_dir / "rootfs", MapOptions(rootless=True))
        assert victim.stat().st_nlink == 1
        assert victim.stat().st_mtime == mtime_before
        assert not (tmp_dir / "rootfs" / "y").exists()

    def test_hardlink_to_symlink_links_the_symlink(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        tar = make_layer_tar(("ln", "symlink", "/nowhere"), ("hard", "hardlink", "ln"))
        _image(layout, "img", tar)
        dest = tmp_dir / "rootfs"
        layout.unpack("img", dest, MapOptions(rootless=True))
        assert os.readlink(dest / "hard") == "/nowhere"
        assert os.lstat(dest / "ln").st_nlink == 2

    def test_hardlink_to_missing_entry_rejected(
        self, layout: ImageLayout, make_layer_tar: Callable[..., bytes], tmp_dir: Path
    ):
        _image(layout, "img", make_layer_tar(("y", "hardlink", "absent")))
        with pytest.raises(UnpackError):
            layout.unpack("img", tmp_dir / "rootfs", MapOptions(rootless=True))

    def test_unsupported_layer_media_type(self, layout: ImageLayout, tmp_dir: Path):
        _image(layout, "img", b"whatever", media_type="application/x-unknown")
        with pytest.raises(UnsupportedMediaTypeError):
            layout.unpack("img", tmp_dir / "rootfs")


class TestPackDirectory:
    def test_deterministic(self, tmp_dir: Path):
        src = tmp_dir / "src"
        (src / "sub").mkdir(parents=True)
        (src / "sub" / "f").write_text("content")
        os.symlink("nowhere", src / "dangling")
        assert pack_directory(src) == pack_directory(src)

    def test_pack_then_unpack_keeps_dangling_link(self, layout: ImageLayout, tmp_dir: Path):
        src = tmp_dir / "src"
        src.mkdir()
        (src / "f").write_text("content")
        os.symlink("nowhere", src / "dangling")
        _image(layout, "img", pack_directory(src), media_type=MEDIA_TYPE_IMAGE_LAYER_GZIP)

        dest = tmp_dir / "rootfs"
        layout.unpack("img", dest, MapOptions(rootless=True))
        assert (dest / "f").read_text() == "content"
        assert os.readlink(dest / "dangling") == "nowhere"


class TestMapOptions:
    def test_maps_ranges(self):
        opts = MapOptions(uid_mappings=[IdMapping(host_id=100000, container_id=0, size=65536)])
        assert opts.map_uid(0) == 100000
        assert opts.map_uid(1000) == 101000
        assert opts.map_uid(70000) == 70000
        assert opts.map_gid(5) == 5
