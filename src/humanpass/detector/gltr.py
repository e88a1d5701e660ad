"""GLTR-style statistical analyzer: token-rank histograms or a percentage."""

from __future__ import annotations

from typing import Any

from humanpass.detector import NormalizationError
from humanpass.detector.http import HTTPDetector, clamp_unit

# Share of tokens found in a language model's top-10 predictions. Human prose
# typically sits near the low bound, sampled model output near the high one.
TOP10_HUMAN_BASELINE = 0.35
TOP10_AI_CEILING = 0.75


def top10_to_likelihood(top10_fraction: float) -> float:
    """Linearly rescale a top-10 rank fraction onto [0, 1]."""
    span = TOP10_AI_CEILING - TOP10_HUMAN_BASELINE
    return clamp_unit((clamp_unit(top10_fraction) - TOP10_HUMAN_BASELINE) / span)


class GLTRDetector(HTTPDetector):
    """Client for a self-hosted GLTR analyzer.

    Accepts either ``{"ai_percentage": 0..100}`` or the raw rank buckets
    ``{"top10", "top100", "top1000", "rest"}`` (counts or fractions).
    """

    source_id = "gltr"

    def build_payload(self, text: str) -> dict[str, Any]:
        return {"text": text}

    def normalize(self, data: Any) -> float:
        if "ai_percentage" in data:
            return clamp_unit(float(data["ai_percentage"]) / 100.0)

        buckets = ("top10", "top100", "top1000", "rest")
        if not all(b in data for b in buckets):
            raise NormalizationError("gltr: response has neither ai_percentage nor rank buckets")
        counts = [float(data[b]) for b in buckets]
        total = sum(counts)
        if total <= 0:
            raise NormalizationError("gltr: empty rank histogram")
        return top10_to_likelihood(counts[0] / total)
