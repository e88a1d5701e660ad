"""Job and ledger data models."""

from __future__ import annotations

from humanpass.models.job import (
    AttemptRecord,
    DetectorOutcome,
    ErrorKind,
    HumanizationJob,
    JobStatus,
    UsageHistoryEntry,
    Verdict,
)

__all__ = [
    "AttemptRecord",
    "DetectorOutcome",
    "ErrorKind",
    "HumanizationJob",
    "JobStatus",
    "UsageHistoryEntry",
    "Verdict",
]
