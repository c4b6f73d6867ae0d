"""layerforge data models: pydantic v2; OCI documents are frozen."""

from layerforge.models.cache import CACHE_VERSION, CacheEntry, CacheFile
from layerforge.models.layer import (
    ImageSource,
    ImportMap,
    Layer,
    Stackerfile,
    StackerfileError,
    load_stackerfile,
    parse_stackerfile,
)
from layerforge.models.oci import (
    ANNOTATION_REF_NAME,
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_LAYER,
    MEDIA_TYPE_IMAGE_LAYER_GZIP,
    MEDIA_TYPE_IMAGE_MANIFEST,
    MEDIA_TYPE_OCTET_STREAM,
    Blob,
    Descriptor,
    History,
    ImageConfig,
    Manifest,
    RootFS,
    RuntimeConfig,
)

__all__ = [
    # oci
    "ANNOTATION_REF_NAME",
    "MEDIA_TYPE_IMAGE_CONFIG",
    "MEDIA_TYPE_IMAGE_INDEX",
    "MEDIA_TYPE_IMAGE_LAYER",
    "MEDIA_TYPE_IMAGE_LAYER_GZIP",
    "MEDIA_TYPE_IMAGE_MANIFEST",
    "MEDIA_TYPE_OCTET_STREAM",
    "Blob",
    "Descriptor",
    "History",
    "ImageConfig",
    "Manifest",
    "RootFS",
    "RuntimeConfig",
    # layers
    "ImageSource",
    "ImportMap",
    "Layer",
    "Stackerfile",
    "StackerfileError",
    "load_stackerfile",
    "parse_stackerfile",
    # cache
    "CACHE_VERSION",
    "CacheEntry",
    "CacheFile",
]
