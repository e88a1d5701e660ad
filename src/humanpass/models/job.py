"""Job, attempt, detector-outcome and usage-history data models."""

from __future__ import annotations

import enum
import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def _validate_score(value: float, name: str, low: float = 0.0, high: float = 1.0) -> None:
    """Validate that a score falls within the expected range."""
    if not (low <= value <= high):
        raise ValueError(f"{name} must be in [{low}, {high}], got {value}")


def utcnow() -> str:
    """Current time as an ISO 8601 UTC timestamp."""
    return datetime.now(UTC).isoformat()


class JobStatus(enum.Enum):
    """Lifecycle states of a humanization job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_SUCCESS = "partial_success"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_transition_to(self, other: JobStatus) -> bool:
        """Whether the state machine allows ``self -> other``."""
        return other in _TRANSITIONS[self]


_TERMINAL = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PARTIAL_SUCCESS})

_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: _TERMINAL,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.PARTIAL_SUCCESS: frozenset(),
}


class Verdict(enum.Enum):
    """Aggregated outcome of one scored attempt."""

    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


class ErrorKind(enum.Enum):
    """Why a single external call produced no usable result."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    UNAVAILABLE = "unavailable"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class DetectorOutcome:
    """One detector's normalized result, or its failure, for one attempt.

    Args:
        source_id: Stable identifier of the detector ("gptzero", ...).
        ai_likelihood: Normalized AI probability in [0.0, 1.0]; None on failure.
        error_kind: Failure category; None on success.
        raw: Provider response kept for audit, never interpreted downstream.
    """

    source_id: str
    ai_likelihood: float | None = None
    error_kind: ErrorKind | None = None
    raw: Any = None

    def __post_init__(self) -> None:
        if self.ai_likelihood is None and self.error_kind is None:
            raise ValueError("DetectorOutcome needs either ai_likelihood or error_kind")
        if self.ai_likelihood is not None:
            if self.error_kind is not None:
                raise ValueError("a failed DetectorOutcome cannot carry ai_likelihood")
            if math.isnan(self.ai_likelihood):
                raise ValueError("ai_likelihood must not be NaN")
            _validate_score(self.ai_likelihood, "ai_likelihood")

    @classmethod
    def success(cls, source_id: str, ai_likelihood: float, raw: Any = None) -> DetectorOutcome:
        return cls(source_id=source_id, ai_likelihood=ai_likelihood, raw=raw)

    @classmethod
    def failure(cls, source_id: str, error_kind: ErrorKind, raw: Any = None) -> DetectorOutcome:
        return cls(source_id=source_id, error_kind=error_kind, raw=raw)

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "source_id": self.source_id,
            "ai_likelihood": self.ai_likelihood,
            "succeeded": self.succeeded,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectorOutcome:
        """Deserialize from dictionary."""
        kind = data.get("error_kind")
        return cls(
            source_id=data["source_id"],
            ai_likelihood=data.get("ai_likelihood"),
            error_kind=ErrorKind(kind) if kind else None,
        )


@dataclass(frozen=True)
class AttemptRecord:
    """Audit entry for one loop slot.

    Args:
        attempt: 1-based slot number within the job.
        strategy: Name of the strategy hint sent to the rewrite engine.
        outcomes: Per-detector outcomes; empty when the rewrite failed.
        verdict: Aggregated verdict; None when the rewrite failed.
        attempt_score: Max likelihood among succeeded detectors, if any.
        rewrite_failed: True when no candidate was produced for this slot.
        error: Failure description for wasted slots.
    """

    attempt: int
    strategy: str
    outcomes: tuple[DetectorOutcome, ...] = ()
    verdict: Verdict | None = None
    attempt_score: float | None = None
    rewrite_failed: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if self.attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {self.attempt}")
        if self.attempt_score is not None:
            _validate_score(self.attempt_score, "attempt_score")
        if self.rewrite_failed and self.outcomes:
            raise ValueError("a failed rewrite cannot have detector outcomes")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "attempt": self.attempt,
            "strategy": self.strategy,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "verdict": self.verdict.value if self.verdict else None,
            "attempt_score": self.attempt_score,
            "rewrite_failed": self.rewrite_failed,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttemptRecord:
        """Deserialize from dictionary."""
        verdict = data.get("verdict")
        return cls(
            attempt=data["attempt"],
            strategy=data["strategy"],
            outcomes=tuple(DetectorOutcome.from_dict(o) for o in data.get("outcomes", [])),
            verdict=Verdict(verdict) if verdict else None,
            attempt_score=data.get("attempt_score"),
            rewrite_failed=data.get("rewrite_failed", False),
            error=data.get("error"),
        )


@dataclass
class HumanizationJob:
    """Persisted state of one humanize-and-validate request.

    Mutated only by the orchestrator that owns the job id; immutable once
    ``status`` is terminal. ``detector_results`` is append-only.

    ``worker_id`` names the orchestrator driving the job and ``heartbeat_at``
    (epoch seconds) is refreshed at every step; together they form the lease
    that keeps recovery away from jobs a live worker still owns.
    """

    owner_id: str
    original_text: str
    tier: str
    max_attempts: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    current_candidate_text: str | None = None
    best_candidate_text: str | None = None
    best_score: float | None = None
    detector_results: list[AttemptRecord] = field(default_factory=list)
    attempts_used: int = 0
    attempt_cursor: int = 0
    credits_reserved: int = 0
    credits_charged: int | None = None
    reservation_id: str | None = None
    cancel_requested: bool = False
    error: str | None = None
    worker_id: str | None = None
    heartbeat_at: float | None = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if not 0 <= self.attempts_used <= self.max_attempts:
            raise ValueError(
                f"attempts_used must be in [0, {self.max_attempts}], got {self.attempts_used}"
            )
        if self.best_score is not None:
            _validate_score(self.best_score, "best_score")
        if self.credits_charged is not None and not (
            0 <= self.credits_charged <= self.credits_reserved
        ):
            raise ValueError(
                f"credits_charged must be in [0, {self.credits_reserved}], "
                f"got {self.credits_charged}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "original_text": self.original_text,
            "tier": self.tier,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "current_candidate_text": self.current_candidate_text,
            "best_candidate_text": self.best_candidate_text,
            "best_score": self.best_score,
            "detector_results": [r.to_dict() for r in self.detector_results],
            "attempts_used": self.attempts_used,
            "attempt_cursor": self.attempt_cursor,
            "credits_reserved": self.credits_reserved,
            "credits_charged": self.credits_charged,
            "reservation_id": self.reservation_id,
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "worker_id": self.worker_id,
            "heartbeat_at": self.heartbeat_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HumanizationJob:
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            original_text=data["original_text"],
            tier=data["tier"],
            max_attempts=data["max_attempts"],
            status=JobStatus(data["status"]),
            current_candidate_text=data.get("current_candidate_text"),
            best_candidate_text=data.get("best_candidate_text"),
            best_score=data.get("best_score"),
            detector_results=[
                AttemptRecord.from_dict(r) for r in data.get("detector_results", [])
            ],
            attempts_used=data.get("attempts_used", 0),
            attempt_cursor=data.get("attempt_cursor", 0),
            credits_reserved=data.get("credits_reserved", 0),
            credits_charged=data.get("credits_charged"),
            reservation_id=data.get("reservation_id"),
            cancel_requested=data.get("cancel_requested", False),
            error=data.get("error"),
            worker_id=data.get("worker_id"),
            heartbeat_at=data.get("heartbeat_at"),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )


@dataclass(frozen=True)
class UsageHistoryEntry:
    """Immutable audit record appended once per finalized reservation."""

    owner_id: str
    credits_changed: int
    reservation_id: str
    detail: dict[str, Any] = field(default_factory=dict)
    action: str = "humanize_attempt"
    timestamp: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "owner_id": self.owner_id,
            "action": self.action,
            "credits_changed": self.credits_changed,
            "reservation_id": self.reservation_id,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageHistoryEntry:
        """Deserialize from dictionary."""
        return cls(
            owner_id=data["owner_id"],
            action=data.get("action", "humanize_attempt"),
            credits_changed=data["credits_changed"],
            reservation_id=data["reservation_id"],
            detail=data.get("detail", {}),
            timestamp=data["timestamp"],
        )
