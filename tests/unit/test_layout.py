"""Tests for ImageLayout: lifecycle, manifests, configs, layer handles."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from layerforge.core.config_generator import ConfigGenerator, apply_layer_spec
from layerforge.core.errors import (
    AlreadyExistsError,
    InvalidDigestError,
    NotAStoreError,
    NotFoundError,
    StorageIOError,
    UnsupportedMediaTypeError,
)
from layerforge.core.layout import ImageLayout
from layerforge.models.layer import Layer
from layerforge.models.oci import (
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_LAYER,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Blob,
    Descriptor,
)


class TestLifecycle:
    def test_create_writes_oci_layout(self, tmp_dir: Path):
        path = tmp_dir / "img"
        with ImageLayout.create(path):
            pass
        assert json.loads((path / "oci-layout").read_text()) == {"imageLayoutVersion": "1.0.0"}
        index = json.loads((path / "index.json").read_text())
        assert index["schemaVersion"] == 2
        assert index["manifests"] == []
        assert (path / "blobs" / "sha256").is_dir()

    def test_create_fails_when_exists(self, layout: ImageLayout):
        with pytest.raises(AlreadyExistsError):
            ImageLayout.create(layout.path)

    def test_open_missing(self, tmp_dir: Path):
        with pytest.raises(NotFoundError):
            ImageLayout.open(tmp_dir / "absent")

    def test_open_not_a_store(self, tmp_dir: Path):
        (tmp_dir / "junk").mkdir()
        with pytest.raises(NotAStoreError):
            ImageLayout.open(tmp_dir / "junk")

    def test_open_bad_layout_version(self, layout: ImageLayout):
        (layout.path / "oci-layout").write_text('{"imageLayoutVersion": "9"}')
        with pytest.raises(NotAStoreError):
            ImageLayout.open(layout.path)

    def test_open_existing(self, layout: ImageLayout):
        layout.new_image("base")
        with ImageLayout.open(layout.path) as reopened:
            assert reopened.list_tags() == {"base"}

    def test_operations_fail_after_close(self, tmp_dir: Path):
        lay = ImageLayout.create(tmp_dir / "closed")
        lay.new_image("a")
        index_before = (lay.path / "index.json").read_bytes()
        lay.close()
        lay.close()
        with pytest.raises(StorageIOError):
            lay.put_blob(io.BytesIO(b"x"))
        with pytest.raises(StorageIOError):
            lay.tag("a", "b")
        with pytest.raises(StorageIOError):
            lay.list_tags()
        with pytest.raises(StorageIOError):
            lay.lookup_manifest("a")
        assert (lay.path / "index.json").read_bytes() == index_before


class TestNewImage:
    def test_manifest_round_trip(self, layout: ImageLayout):
        blobs = [layout.put_blob(io.BytesIO(f"layer {i}".encode())) for i in range(3)]
        gen = ConfigGenerator()
        gen.set_cmd(["/bin/sh"])
        gen.add_env("PATH", "/usr/bin")

        layout.new_image("img", gen, blobs, MEDIA_TYPE_IMAGE_LAYER)
        manifest = layout.lookup_manifest("img")

        assert manifest.schema_version == 2
        assert [l.digest for l in manifest.layers] == [b.hash for b in blobs]
        assert [l.size for l in manifest.layers] == [b.size for b in blobs]
        assert all(l.media_type == MEDIA_TYPE_IMAGE_LAYER for l in manifest.layers)
        assert manifest.config.media_type == MEDIA_TYPE_IMAGE_CONFIG

        config = layout.lookup_config(Blob(hash=manifest.config.digest, size=manifest.config.size))
        assert config == gen.image()
        assert config.config.cmd == ["/bin/sh"]
        assert config.config.env == ["PATH=/usr/bin"]

    def test_tag_points_at_manifest(self, layout: ImageLayout):
        desc = layout.new_image("img")
        resolved = layout.index.resolve_reference("img")
        assert resolved == desc
        assert resolved.media_type == MEDIA_TYPE_IMAGE_MANIFEST

    def test_manifest_json_uses_oci_keys(self, layout: ImageLayout):
        desc = layout.new_image("img", layer_blobs=[layout.put_blob(io.BytesIO(b"l"))])
        with layout.store.get_blob(desc) as handle:
            raw = handle.json()
        assert set(raw) >= {"schemaVersion", "mediaType", "config", "layers"}
        assert set(raw["layers"][0]) == {"mediaType", "digest", "size"}

    def test_invalid_layer_hash_leaves_no_tag(self, layout: ImageLayout):
        with pytest.raises(InvalidDigestError):
            layout.new_image("bad", layer_blobs=[Blob(hash="sha256:xyz", size=1)])
        assert "bad" not in layout.list_tags()

    def test_new_image_is_idempotent(self, layout: ImageLayout):
        blobs = [layout.put_blob(io.BytesIO(b"same layer"))]
        gen = ConfigGenerator()
        first = layout.new_image("a", gen, blobs)
        second = layout.new_image("a", gen, blobs)
        assert first == second

    def test_retag_replaces(self, layout: ImageLayout):
        layout.new_image("img")
        blob = layout.put_blob(io.BytesIO(b"more"))
        second = layout.new_image("img", layer_blobs=[blob])
        assert layout.index.resolve_reference("img") == second
        assert len(layout.lookup_manifest("img").layers) == 1


class TestTagging:
    def test_tag_aliases_without_new_blobs(self, layout: ImageLayout):
        desc = layout.new_image("src")
        blob_count = len(list((layout.path / "blobs").rglob("*")))
        layout.tag("src", "dst")
        assert layout.index.resolve_reference("dst") == desc
        assert len(list((layout.path / "blobs").rglob("*"))) == blob_count
        assert layout.list_tags() == {"src", "dst"}

    def test_tag_missing_source(self, layout: ImageLayout):
        with pytest.raises(NotFoundError, match="missing"):
            layout.tag("missing", "dst")
        assert layout.list_tags() == set()


class TestLookups:
    def test_lookup_manifest_rejects_non_manifest(self, layout: ImageLayout):
        blob = layout.put_blob(io.BytesIO(b"{}"))
        layout.index.update_reference(
            "list", Descriptor(media_type="application/vnd.oci.image.index.v1+json",
                               digest=blob.hash, size=blob.size)
        )
        with pytest.raises(UnsupportedMediaTypeError):
            layout.lookup_manifest("list")

    def test_lookup_config_rejects_manifest_blob(self, layout: ImageLayout):
        desc = layout.new_image("img")
        with pytest.raises(UnsupportedMediaTypeError):
            layout.lookup_config(Blob(hash=desc.digest, size=desc.size))

    def test_lookup_config_bad_hash(self, layout: ImageLayout):
        with pytest.raises(InvalidDigestError):
            layout.lookup_config(Blob(hash="not-a-digest", size=0))

    def test_lookup_config_missing(self, layout: ImageLayout):
        with pytest.raises(NotFoundError):
            layout.lookup_config(Blob(hash="sha256:" + "1" * 64, size=0))


class TestLayersForTag:
    def test_handles_in_manifest_order(self, layout: ImageLayout):
        payloads = [b"bottom", b"middle", b"top"]
        blobs = [layout.put_blob(io.BytesIO(p)) for p in payloads]
        layout.new_image("img", layer_blobs=blobs)

        handles = layout.layers_for_tag("img")
        try:
            assert [h.read() for h in handles] == payloads
        finally:
            for h in handles:
                h.close()

    def test_failure_closes_opened_handles(self, layout: ImageLayout, monkeypatch):
        blobs = [layout.put_blob(io.BytesIO(p)) for p in (b"one", b"two")]
        missing = Blob(hash="sha256:" + "2" * 64, size=3)
        layout.new_image("img", layer_blobs=[*blobs, missing])

        opened = []
        real_get = layout.store.get_blob

        def tracking_get(desc, **kwargs):
            handle = real_get(desc, **kwargs)
            opened.append(handle)
            return handle

        monkeypatch.setattr(layout.store, "get_blob", tracking_get)
        with pytest.raises(NotFoundError):
            layout.layers_for_tag("img")
        # the manifest handle plus both layer handles, all released
        assert len(opened) == 3
        assert all(h.closed for h in opened)


class TestConfigGenerator:
    def test_apply_layer_spec(self):
        layer = Layer(
            entrypoint="/usr/bin/app --serve",
            cmd=["--port", "80"],
            environment={"A": "1"},
            volumes=["/data"],
            labels={"org.example": "yes"},
            working_dir="/srv",
            runtime_user="nobody",
        )
        gen = ConfigGenerator()
        apply_layer_spec(gen, layer)
        rc = gen.image().config
        assert rc.entrypoint == ["/usr/bin/app", "--serve"]
        assert rc.cmd == ["--port", "80"]
        assert rc.env == ["A=1"]
        assert rc.volumes == {"/data": {}}
        assert rc.labels == {"org.example": "yes"}
        assert rc.working_dir == "/srv"
        assert rc.user == "nobody"

    def test_full_command_clears_cmd(self):
        gen = ConfigGenerator()
        gen.set_cmd(["old"])
        apply_layer_spec(gen, Layer(full_command="run it"))
        rc = gen.image().config
        assert rc.entrypoint == ["run", "it"]
        assert rc.cmd is None

    def test_generator_from_base_config(self):
        gen = ConfigGenerator()
        gen.add_env("X", "1")
        gen.set_working_dir("/w")
        child = ConfigGenerator(gen.image())
        child.add_env("Y", "2")
        rc = child.image().config
        assert rc.env == ["X=1", "Y=2"]
        assert rc.working_dir == "/w"
