"""Error taxonomy shared by the image store, the build cache and collaborators.

Every error names the tag, digest or layer it concerns so that a caller can
diagnose a failed build without retrying blindly. Nothing here is retried
internally; retry policy belongs to the caller.
"""

from __future__ import annotations


class LayerforgeError(RuntimeError):
    """Base class for all layerforge failures."""


class NotFoundError(LayerforgeError, LookupError):
    """A blob, tag, layout or cache entry does not exist."""


class AmbiguousReferenceError(LayerforgeError):
    """A tag resolves to more than one distinct descriptor."""

    def __init__(self, name: str, candidates: int) -> None:
        super().__init__(f"tag is ambiguous: {name} ({candidates} candidates)")
        self.name = name
        self.candidates = candidates


class AlreadyExistsError(LayerforgeError, FileExistsError):
    """An image layout already exists where one was to be created."""


class NotAStoreError(LayerforgeError):
    """A path exists but does not hold a valid OCI image layout."""


class UnsupportedMediaTypeError(LayerforgeError):
    """A stored blob has a media type the caller cannot decode."""

    def __init__(self, expected: str, actual: str, what: str = "") -> None:
        suffix = f" ({what})" if what else ""
        super().__init__(
            f"unsupported media type{suffix}: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class InvalidDigestError(LayerforgeError, ValueError):
    """A hash string is not a well-formed ``<algorithm>:<hex>`` digest."""


class HashMismatchError(LayerforgeError):
    """Imported content does not match the hash the layer asked for."""

    def __init__(self, source: str, expected: str, actual: str) -> None:
        super().__init__(
            f"The requested hash of {source} import is different than the "
            f"actual hash: {expected} != {actual}"
        )
        self.source = source
        self.expected = expected
        self.actual = actual


class StorageIOError(LayerforgeError):
    """The underlying persistence layer failed."""


class CancelledError(LayerforgeError):
    """The operation was abandoned because its build context was cancelled."""


class CacheDecodeError(LayerforgeError):
    """The persisted build cache could not be decoded."""
