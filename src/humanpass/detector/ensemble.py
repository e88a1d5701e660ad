"""Verdict aggregation across the detector panel."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from humanpass.models.job import DetectorOutcome, Verdict


@dataclass(frozen=True, slots=True)
class AttemptVerdict:
    """Aggregated result of one scored attempt.

    Attributes:
        verdict: PASS, FAIL or INCONCLUSIVE.
        attempt_score: Max AI likelihood among succeeded detectors, None if
            none succeeded.
        succeeded: Number of detectors that produced a score.
    """

    verdict: Verdict
    attempt_score: float | None
    succeeded: int

    @property
    def has_quorum(self) -> bool:
        return self.verdict is not Verdict.INCONCLUSIVE


def aggregate(
    outcomes: Sequence[DetectorOutcome],
    acceptance_threshold: float,
    min_successful: int = 2,
) -> AttemptVerdict:
    """Combine detector outcomes into a single conservative verdict.

    Only succeeded detectors count. The reportable score is the maximum
    likelihood among them, so one high score can never be averaged away.

    Args:
        outcomes: One outcome per configured detector.
        acceptance_threshold: Every succeeded score must be strictly below this.
        min_successful: Quorum of succeeded detectors required for a verdict.

    Returns:
        AttemptVerdict. INCONCLUSIVE when the quorum is not met.
    """
    scores = [o.ai_likelihood for o in outcomes if o.succeeded and o.ai_likelihood is not None]
    attempt_score = max(scores) if scores else None

    if len(scores) < min_successful:
        return AttemptVerdict(Verdict.INCONCLUSIVE, attempt_score, len(scores))

    assert attempt_score is not None
    verdict = Verdict.PASS if attempt_score < acceptance_threshold else Verdict.FAIL
    return AttemptVerdict(verdict, attempt_score, len(scores))
