"""Tests for job, attempt and outcome data models."""

from __future__ import annotations

import pytest

from humanpass.models.job import (
    AttemptRecord,
    DetectorOutcome,
    ErrorKind,
    HumanizationJob,
    JobStatus,
    UsageHistoryEntry,
    Verdict,
)


class TestJobStatus:
    """State machine transitions."""

    def test_terminal_states(self) -> None:
        assert {s for s in JobStatus if s.is_terminal} == {
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.PARTIAL_SUCCESS,
        }

    @pytest.mark.parametrize(
        "source,target,allowed",
        [
            (JobStatus.PENDING, JobStatus.PROCESSING, True),
            (JobStatus.PENDING, JobStatus.FAILED, True),
            (JobStatus.PENDING, JobStatus.COMPLETED, False),
            (JobStatus.PROCESSING, JobStatus.PARTIAL_SUCCESS, True),
            (JobStatus.PROCESSING, JobStatus.PENDING, False),
            (JobStatus.COMPLETED, JobStatus.FAILED, False),
            (JobStatus.FAILED, JobStatus.PROCESSING, False),
        ],
    )
    def test_transitions(self, source: JobStatus, target: JobStatus, allowed: bool) -> None:
        assert source.can_transition_to(target) is allowed


class TestDetectorOutcome:
    """Success/failure invariants."""

    def test_success(self) -> None:
        outcome = DetectorOutcome.success("gptzero", 0.2, raw={"x": 1})
        assert outcome.succeeded
        assert outcome.to_dict() == {
            "source_id": "gptzero",
            "ai_likelihood": 0.2,
            "succeeded": True,
            "error_kind": None,
        }

    def test_failure(self) -> None:
        outcome = DetectorOutcome.failure("gltr", ErrorKind.TIMEOUT)
        assert not outcome.succeeded
        assert outcome.ai_likelihood is None
        assert DetectorOutcome.from_dict(outcome.to_dict()) == outcome

    @pytest.mark.parametrize("value", [-0.01, 1.01, float("nan")])
    def test_rejects_out_of_range(self, value: float) -> None:
        with pytest.raises(ValueError):
            DetectorOutcome.success("gptzero", value)

    def test_needs_score_or_error(self) -> None:
        with pytest.raises(ValueError):
            DetectorOutcome("gptzero")
        with pytest.raises(ValueError):
            DetectorOutcome("gptzero", 0.5, ErrorKind.MALFORMED)


class TestAttemptRecord:
    """Audit entries."""

    def test_failed_rewrite_has_no_outcomes(self) -> None:
        with pytest.raises(ValueError):
            AttemptRecord(
                attempt=1,
                strategy="DEFAULT",
                outcomes=(DetectorOutcome.success("gltr", 0.1),),
                rewrite_failed=True,
            )

    def test_attempt_is_one_based(self) -> None:
        with pytest.raises(ValueError):
            AttemptRecord(attempt=0, strategy="DEFAULT")

    def test_serialization(self) -> None:
        record = AttemptRecord(
            attempt=2,
            strategy="INCREASE_VARIATION",
            outcomes=(
                DetectorOutcome.success("gptzero", 0.03),
                DetectorOutcome.failure("gltr", ErrorKind.RATE_LIMITED),
            ),
            verdict=Verdict.INCONCLUSIVE,
            attempt_score=0.03,
        )
        data = record.to_dict()
        assert data["verdict"] == "inconclusive"
        assert data["outcomes"][1]["error_kind"] == "rate_limited"
        assert AttemptRecord.from_dict(data) == record


class TestHumanizationJob:
    """Job record invariants."""

    def test_defaults(self) -> None:
        job = HumanizationJob(owner_id="u1", original_text="text", tier="free", max_attempts=2)
        assert job.status is JobStatus.PENDING
        assert job.attempts_used == 0
        assert job.credits_charged is None
        assert len(job.id) == 32

    def test_attempts_bounded(self) -> None:
        with pytest.raises(ValueError):
            HumanizationJob(
                owner_id="u1", original_text="t", tier="free", max_attempts=2, attempts_used=3
            )

    def test_charge_bounded_by_reservation(self) -> None:
        with pytest.raises(ValueError):
            HumanizationJob(
                owner_id="u1",
                original_text="t",
                tier="free",
                max_attempts=2,
                credits_reserved=2,
                credits_charged=3,
            )

    def test_round_trip(self) -> None:
        job = HumanizationJob(
            owner_id="u1",
            original_text="t",
            tier="pro",
            max_attempts=4,
            status=JobStatus.PROCESSING,
            best_score=0.12,
            detector_results=[AttemptRecord(attempt=1, strategy="DEFAULT", rewrite_failed=True)],
            attempt_cursor=1,
            credits_reserved=4,
        )
        assert HumanizationJob.from_dict(job.to_dict()) == job


class TestUsageHistoryEntry:
    def test_round_trip(self) -> None:
        entry = UsageHistoryEntry(
            owner_id="u1", credits_changed=-2, reservation_id="r1", detail={"job_id": "j"}
        )
        assert entry.action == "humanize_attempt"
        assert UsageHistoryEntry.from_dict(entry.to_dict()) == entry
