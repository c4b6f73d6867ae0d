"""Persisted build-cache models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from layerforge.models.oci import Descriptor

# Bump when the specification hash derivation changes; older cache files are discarded.
CACHE_VERSION = 2


class CacheEntry(BaseModel):
    """What a layer looked like when it was last built, and what it produced."""

    model_config = ConfigDict(frozen=True)

    spec_hash: str
    descriptor: Descriptor


class CacheFile(BaseModel):
    """On-disk shape of ``build.cache``."""

    version: int = CACHE_VERSION
    entries: dict[str, CacheEntry] = Field(default_factory=dict)
