"""OCI image-spec models: descriptors, manifests, image configs.

Field names are snake_case in Python; aliases carry the exact OCI JSON keys
so that ``model_dump(by_alias=True, exclude_none=True)`` produces documents
other OCI tools can read.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from layerforge.core.hasher import parse_digest

MEDIA_TYPE_OCTET_STREAM = "application/octet-stream"
MEDIA_TYPE_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_IMAGE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"

ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"


class Descriptor(BaseModel):
    """Immutable pointer to a stored blob plus its media type.

    Two descriptors are equal when they name the same digest and size; the
    media type only tells readers how to decode the bytes. An empty digest
    denotes "no blob" (a build-only layer has no output in the layout).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    media_type: str = Field(default=MEDIA_TYPE_OCTET_STREAM, alias="mediaType")
    digest: str = ""
    size: int = 0
    annotations: dict[str, str] | None = None

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, value: str) -> str:
        if value:
            parse_digest(value)
        return value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Descriptor):
            return NotImplemented
        return self.digest == other.digest and self.size == other.size

    def __hash__(self) -> int:
        return hash((self.digest, self.size))

    def to_oci(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Blob(BaseModel):
    """Public shape of a committed blob: its hash string and size."""

    model_config = ConfigDict(frozen=True)

    hash: str
    size: int

    def to_digest(self) -> str:
        """Validate and return the hash as a digest (InvalidDigestError if bad)."""
        parse_digest(self.hash)
        return self.hash


class Manifest(BaseModel):
    """A single-platform OCI image manifest."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=MEDIA_TYPE_IMAGE_MANIFEST, alias="mediaType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] | None = None

    def to_oci(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RuntimeConfig(BaseModel):
    """The ``config`` section of an image config (execution parameters)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user: str | None = Field(default=None, alias="User")
    exposed_ports: dict[str, dict[str, Any]] | None = Field(
        default=None, alias="ExposedPorts"
    )
    env: list[str] | None = Field(default=None, alias="Env")
    entrypoint: list[str] | None = Field(default=None, alias="Entrypoint")
    cmd: list[str] | None = Field(default=None, alias="Cmd")
    volumes: dict[str, dict[str, Any]] | None = Field(default=None, alias="Volumes")
    working_dir: str | None = Field(default=None, alias="WorkingDir")
    labels: dict[str, str] | None = Field(default=None, alias="Labels")


class RootFS(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "layers"
    diff_ids: list[str] = Field(default_factory=list)


class History(BaseModel):
    model_config = ConfigDict(frozen=True)

    created: datetime | None = None
    created_by: str | None = None
    author: str | None = None
    comment: str | None = None
    empty_layer: bool | None = None


class ImageConfig(BaseModel):
    """Decoded OCI image configuration (runtime metadata for an image)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    created: datetime | None = None
    author: str | None = None
    architecture: str = "amd64"
    os: str = "linux"
    config: RuntimeConfig = Field(default_factory=RuntimeConfig)
    rootfs: RootFS = Field(default_factory=RootFS)
    history: list[History] | None = None

    def to_oci(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
