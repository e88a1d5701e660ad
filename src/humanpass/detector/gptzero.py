"""GPTZero-style detector: reports a document-level AI probability."""

from __future__ import annotations

from typing import Any

from humanpass.detector import NormalizationError
from humanpass.detector.http import HTTPDetector, clamp_unit


class GPTZeroDetector(HTTPDetector):
    """Client for the GPTZero ``/v2/predict/text`` API.

    The response carries ``documents[0].completely_generated_prob``; newer
    API versions report ``class_probabilities.ai`` instead.
    """

    source_id = "gptzero"
    requires_api_key = True

    def build_headers(self) -> dict[str, str]:
        assert self._api_key is not None
        return {"x-api-key": self._api_key, "Accept": "application/json"}

    def build_payload(self, text: str) -> dict[str, Any]:
        return {"document": text}

    def normalize(self, data: Any) -> float:
        document = data["documents"][0]
        prob = document.get("completely_generated_prob")
        if prob is None:
            prob = document.get("class_probabilities", {}).get("ai")
        if prob is None:
            raise NormalizationError("gptzero: no AI probability in response")
        return clamp_unit(prob)
