"""Open detector model served behind a Hugging Face style inference API."""

from __future__ import annotations

from typing import Any

from humanpass.detector import NormalizationError
from humanpass.detector.http import HTTPDetector, clamp_unit

# roberta-base-openai-detector labels machine text "Fake"; fine-tunes often
# ship the raw LABEL_n names instead.
_AI_LABELS = ("fake", "ai", "machine", "generated", "label_0")
_HUMAN_LABELS = ("real", "human", "label_1")


class OpenDetector(HTTPDetector):
    """Classifier returning ``[{label, score}, ...]`` per input.

    The label with the AI meaning is used directly; if only the human label
    is present its complement is used.
    """

    source_id = "open_detector"

    def build_headers(self) -> dict[str, str]:
        if self._api_key:
            return {"Authorization": f"Bearer {self._api_key}"}
        return {}

    def build_payload(self, text: str) -> dict[str, Any]:
        return {"inputs": text, "options": {"wait_for_model": False}}

    def normalize(self, data: Any) -> float:
        # Batched responses wrap the per-input list in another list
        if data and isinstance(data[0], list):
            data = data[0]
        scores = {str(item["label"]).lower(): item["score"] for item in data}

        for label in _AI_LABELS:
            if label in scores:
                return clamp_unit(scores[label])
        for label in _HUMAN_LABELS:
            if label in scores:
                return 1.0 - clamp_unit(scores[label])
        raise NormalizationError(f"open_detector: unrecognised labels {sorted(scores)}")
