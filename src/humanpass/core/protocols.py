"""Interface contracts for HumanPass's pluggable collaborators.

The orchestrator depends only on these protocols, so detectors, the
rewrite engine and the job store can be swapped (or faked in tests).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from humanpass.humanizer.strategies import StrategyHint
    from humanpass.models.job import DetectorOutcome, HumanizationJob, JobStatus


@runtime_checkable
class Detector(Protocol):
    """Score text for AI-generated content with one external service."""

    source_id: str

    async def detect(self, text: str) -> DetectorOutcome: ...


@runtime_checkable
class Rewriter(Protocol):
    """Produce a humanized candidate of ``text`` following ``hint``."""

    async def rewrite(self, text: str, hint: StrategyHint) -> str: ...


@runtime_checkable
class JobRepository(Protocol):
    """Create, update and read job records with read-your-writes consistency."""

    def create(self, job: HumanizationJob) -> str: ...

    def update(self, job_id: str, **fields: Any) -> HumanizationJob: ...

    def get(self, job_id: str) -> HumanizationJob: ...

    def list_jobs(
        self, owner_id: str | None = None, status: JobStatus | None = None
    ) -> list[HumanizationJob]: ...
