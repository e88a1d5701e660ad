"""AI content detector adapters."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from humanpass.detector.ensemble import AttemptVerdict, aggregate
from humanpass.models.job import ErrorKind

if TYPE_CHECKING:
    from humanpass.detector.base import DetectorPanel
    from humanpass.detector.gltr import GLTRDetector
    from humanpass.detector.gptzero import GPTZeroDetector
    from humanpass.detector.open_detector import OpenDetector


class DetectorError(Exception):
    """Base exception for all detector-related errors."""

    error_kind: ErrorKind = ErrorKind.PROVIDER_ERROR


class DetectorTimeoutError(DetectorError):
    """The detector did not answer within its timeout."""

    error_kind = ErrorKind.TIMEOUT


class DetectorRateLimitedError(DetectorError):
    """The detector rejected the request with HTTP 429."""

    error_kind = ErrorKind.RATE_LIMITED


class DetectorProviderError(DetectorError):
    """The detector answered with an error status."""

    error_kind = ErrorKind.PROVIDER_ERROR


class DetectorUnavailableError(DetectorError):
    """The detector is unreachable or not configured."""

    error_kind = ErrorKind.UNAVAILABLE


class NormalizationError(DetectorError):
    """The detector's response could not be mapped onto [0, 1]."""

    error_kind = ErrorKind.MALFORMED


def __getattr__(name: str) -> Any:
    """Lazy-load detector classes on first access."""
    if name == "DetectorPanel":
        from humanpass.detector.base import DetectorPanel

        return DetectorPanel
    if name == "GPTZeroDetector":
        from humanpass.detector.gptzero import GPTZeroDetector

        return GPTZeroDetector
    if name == "OpenDetector":
        from humanpass.detector.open_detector import OpenDetector

        return OpenDetector
    if name == "GLTRDetector":
        from humanpass.detector.gltr import GLTRDetector

        return GLTRDetector
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "DetectorError",
    "DetectorTimeoutError",
    "DetectorRateLimitedError",
    "DetectorProviderError",
    "DetectorUnavailableError",
    "NormalizationError",
    "AttemptVerdict",
    "aggregate",
    "DetectorPanel",
    "GPTZeroDetector",
    "OpenDetector",
    "GLTRDetector",
]
