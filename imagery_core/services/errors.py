from __future__ import annotations


class ImageryError(Exception):
    """Base class for failures raised by the imagery acquisition core."""


class TileFetchError(ImageryError):
    """Raised when a single tile cannot be downloaded from its provider."""


class ProtocolDecodeError(ImageryError):
    """Raised when a provider payload cannot be decrypted, decompressed or parsed."""


class CachePathError(ImageryError):
    """Raised when a cache entry would be written outside the cache root."""


class ImageryCancellationError(ImageryError):
    """Raised when an acquisition job is cancelled before completion."""


class JobFailedError(ImageryError):
    """Raised when too much of an acquisition job failed to produce usable output."""
