"""layerforge: OCI image layouts with a content-hashed layer build cache.

  - Content-addressed blob store and tag index in OCI image-layout format
  - Manifest and config construction, tag aliasing, layer unpacking
  - Build cache that re-hashes each layer's full specification on lookup
"""

__version__ = "0.1.0"
__description__ = "OCI image layouts with a content-hashed layer build cache"

from layerforge.core.build_cache import BuildCache
from layerforge.core.layout import ImageLayout
from layerforge.cli.app import app as cli

__all__ = ["BuildCache", "ImageLayout", "cli", "__version__"]
