"""Exception types raised by the try-on pipeline."""

from __future__ import annotations


class TryOnError(Exception):
    """Base class for try-on errors."""


class CameraError(TryOnError):
    """Camera could not be opened or produced no frames."""


class DetectorLoadError(TryOnError):
    """Face detector weights could not be resolved or loaded."""


class AssetLoadError(TryOnError):
    """A glasses model could not be fetched or parsed."""


class SessionError(TryOnError):
    """Session was driven through an invalid transition."""
