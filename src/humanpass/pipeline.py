"""Validation orchestrator for the rewrite-detect-decide loop.

A job is an explicit persisted state machine::

    PENDING -> PROCESSING -> COMPLETED | PARTIAL_SUCCESS | FAILED

Every step writes its effect to the job repository before the next one
starts, and every ledger call is idempotent per attempt number, so a
restarted process can resume a PROCESSING job (or fail it) without
double-charging.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from humanpass.detector.ensemble import aggregate
from humanpass.humanizer.client import RewriteUnavailableError
from humanpass.humanizer.strategies import select_hint
from humanpass.ledger import CreditLedger, InsufficientCreditsError
from humanpass.models.job import AttemptRecord, HumanizationJob, JobStatus, Verdict
from humanpass.progress import PipelineEvent
from humanpass.store import RepositoryUnavailableError, StoreError, open_repository

if TYPE_CHECKING:
    import httpx

    from humanpass.config import HumanPassConfig
    from humanpass.core.protocols import JobRepository, Rewriter
    from humanpass.models.job import DetectorOutcome

logger = logging.getLogger(__name__)

_TRANSIENT_STORE_ERRORS = (OSError, RepositoryUnavailableError)


class PipelineError(Exception):
    """Base exception for orchestrator errors."""


class JobPersistenceError(PipelineError):
    """The job repository kept failing; the job needs operator attention."""


class JobNotRunnableError(PipelineError):
    """The job is not in a state the orchestrator can drive."""


class DetectorFanOut(Protocol):
    """Anything that scores a candidate with the whole detector panel."""

    async def detect_all(self, text: str) -> list[DetectorOutcome]: ...


class ValidationOrchestrator:
    """Drives humanization jobs from submission to a terminal status.

    Args:
        config: Fully resolved configuration.
        repository: Job record store.
        ledger: Credit ledger holding the owners' balances.
        detectors: Detector panel (``detect_all``).
        rewriter: Rewrite engine adapter.
        progress_callback: Optional sink for :class:`PipelineEvent`.
        clock: Monotonic clock used for the whole-job timeout.
        worker_id: Name recorded on the jobs this orchestrator drives;
            random when omitted.
        now: Wall clock (epoch seconds) for job heartbeats.
    """

    def __init__(
        self,
        config: HumanPassConfig,
        repository: JobRepository,
        ledger: CreditLedger,
        detectors: DetectorFanOut,
        rewriter: Rewriter,
        progress_callback: Callable[[PipelineEvent], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        worker_id: str | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._repo = repository
        self._ledger = ledger
        self._detectors = detectors
        self._rewriter = rewriter
        self._progress_callback = progress_callback
        self._clock = clock
        self._worker_id = worker_id or uuid.uuid4().hex
        self._now = now

    @property
    def repository(self) -> JobRepository:
        return self._repo

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # -- Public operations -----------------------------------------------------

    async def submit(self, owner_id: str, text: str, tier: str = "free") -> HumanizationJob:
        """Accept a request: check credits, reserve them, create the job.

        The reservation covers ``max_attempts`` attempts, where
        ``max_attempts`` is the tier limit capped by what the owner can
        afford.

        Args:
            owner_id: Requesting account.
            text: Original text to humanize.
            tier: Subscription tier name.

        Returns:
            The job in PROCESSING state.

        Raises:
            ValueError: Empty text.
            KeyError: Unknown tier.
            InsufficientCreditsError: The owner cannot fund a single attempt.
                No job record is created.
            JobPersistenceError: The job record could not be written; the
                reservation has been released.
        """
        if not text or not text.strip():
            raise ValueError("Text is required")
        tier_config = self._config.tiers.get(tier)
        cost = self._config.validation.attempt_cost

        available = self._ledger.available(owner_id)
        affordable = available // cost
        if affordable < 1:
            raise InsufficientCreditsError(owner_id, cost, available)
        max_attempts = min(tier_config.max_attempts, affordable)

        job = HumanizationJob(
            owner_id=owner_id,
            original_text=text,
            tier=tier,
            max_attempts=max_attempts,
            worker_id=self._worker_id,
            heartbeat_at=self._now(),
        )
        reservation_id = self._ledger.reserve(owner_id, max_attempts * cost, key=job.id)

        await self._with_retries(lambda: self._repo.create(job), job.id)

        job = await self._persist(
            job.id,
            status=JobStatus.PROCESSING,
            reservation_id=reservation_id,
            credits_reserved=max_attempts * cost,
        )
        logger.info(
            "Accepted job %s for %s (tier=%s, max_attempts=%d)",
            job.id,
            owner_id,
            tier,
            max_attempts,
        )
        self._emit("ACCEPTED", job, 0, f"Reserved {job.credits_reserved} credits")
        return job

    async def process(self, owner_id: str, text: str, tier: str = "free") -> HumanizationJob:
        """Submit and run a job to completion."""
        job = await self.submit(owner_id, text, tier)
        return await self.run(job.id)

    async def cancel(self, job_id: str) -> HumanizationJob:
        """Request cancellation; the running loop stops after its in-flight attempt."""
        job = await self._reload(job_id)
        if job.status.is_terminal:
            return job
        return await self._persist(job_id, cancel_requested=True)

    async def run(self, job_id: str) -> HumanizationJob:
        """Drive a PROCESSING job until it reaches a terminal status.

        Raises:
            JobNotRunnableError: The job was never accepted, or another
                worker's lease on it is still live.
            JobPersistenceError: The repository stayed unavailable.
        """
        job = await self._reload(job_id)
        if job.status.is_terminal:
            return job
        if job.status is not JobStatus.PROCESSING or job.reservation_id is None:
            raise JobNotRunnableError(f"Job {job_id} is {job.status.value}, not processing")
        if job.worker_id != self._worker_id and self._lease_is_live(job):
            raise JobNotRunnableError(f"Job {job_id} is held by worker {job.worker_id}")

        job = await self._persist(job_id, worker_id=self._worker_id, heartbeat_at=self._now())
        try:
            return await self._drive(job)
        except (PipelineError, StoreError):
            raise
        except Exception:
            logger.warning("Job %s aborted by an unexpected error", job_id, exc_info=True)
            await self._finish(await self._reload(job_id), JobStatus.FAILED, "internal error")
            raise

    async def _drive(self, job: HumanizationJob) -> HumanizationJob:
        validation = self._config.validation
        # Wall-clock budget restarts when a job is resumed after a restart
        deadline = self._clock() + validation.job_timeout_seconds

        while True:
            job = await self._heartbeat(job.id)
            if job.cancel_requested:
                return await self._finish(job, JobStatus.FAILED, "cancelled by owner")

            last = job.detector_results[-1] if job.detector_results else None
            if last is not None and last.verdict is Verdict.PASS:
                return await self._finish(job, JobStatus.COMPLETED)
            if last is not None and last.rewrite_failed and job.attempts_used == 0:
                return await self._finish(job, JobStatus.FAILED, "rewrite engine unavailable")
            if job.attempt_cursor >= job.max_attempts:
                break
            if self._clock() >= deadline:
                logger.warning(
                    "Job %s hit its %.0fs wall-clock limit after %d attempts",
                    job.id,
                    validation.job_timeout_seconds,
                    job.attempts_used,
                )
                return await self._finish(
                    job, self._exhausted_status(job), "job timeout reached"
                )

            if job.attempt_cursor > 0 and validation.pause_between_attempts_seconds > 0:
                await asyncio.sleep(validation.pause_between_attempts_seconds)
            job = await self._run_attempt(job)

        status = self._exhausted_status(job)
        reason = None if status is JobStatus.PARTIAL_SUCCESS else "attempt budget exhausted"
        return await self._finish(job, status, reason)

    async def recover(self, resume: bool = True) -> list[HumanizationJob]:
        """Bring jobs left behind by a crashed process to a terminal status.

        Jobs whose heartbeat is younger than ``validation.lease_seconds``
        belong to a live worker and are left alone. PENDING jobs never got
        their reservation attached and are failed. PROCESSING jobs are
        resumed from their persisted cursor when ``resume`` is true and their
        reservation is still open; otherwise they are closed out using what
        they already recorded.

        Returns:
            The recovered jobs in their terminal state.
        """
        recovered: list[HumanizationJob] = []

        for job in self._repo.list_jobs(status=JobStatus.PENDING):
            if self._skip_leased(job):
                continue
            reservation_id = self._ledger.reservation_for_key(job.id)
            if reservation_id is not None:
                self._ledger.release(reservation_id)
            recovered.append(
                await self._persist(
                    job.id,
                    status=JobStatus.FAILED,
                    credits_charged=0,
                    error="abandoned before processing started",
                )
            )
            logger.warning("Recovered pending job %s as failed", job.id)

        for job in self._repo.list_jobs(status=JobStatus.PROCESSING):
            if self._skip_leased(job):
                continue
            assert job.reservation_id is not None
            reservation = self._ledger.get_reservation(job.reservation_id)
            if resume and not reservation.finalized and not job.cancel_requested:
                logger.info("Resuming job %s at attempt %d", job.id, job.attempt_cursor + 1)
                recovered.append(await self.run(job.id))
                continue

            if job.cancel_requested:
                status, reason = JobStatus.FAILED, "cancelled by owner"
            elif any(r.verdict is Verdict.PASS for r in job.detector_results):
                status, reason = JobStatus.COMPLETED, None
            elif reservation.finalized:
                status, reason = self._exhausted_status(job), "closed out after restart"
            else:
                status, reason = JobStatus.FAILED, "abandoned after restart"
            logger.warning("Closing out job %s as %s", job.id, status.value)
            recovered.append(await self._finish(job, status, reason))

        return recovered

    # -- Attempt loop ----------------------------------------------------------

    async def _run_attempt(self, job: HumanizationJob) -> HumanizationJob:
        """Execute one slot: rewrite, detect, aggregate, charge, record."""
        slot = job.attempt_cursor + 1
        hint = select_hint(job.attempt_cursor)
        assert job.reservation_id is not None

        self._emit("REWRITING", job, slot, f"Attempt {slot} with strategy {hint.name}")
        try:
            candidate = await self._rewriter.rewrite(job.original_text, hint)
        except RewriteUnavailableError as exc:
            logger.warning("Job %s attempt %d: rewrite failed: %s", job.id, slot, exc)
            record = AttemptRecord(
                attempt=slot, strategy=hint.name, rewrite_failed=True, error=str(exc)
            )
            return await self._persist(
                job.id,
                attempt_cursor=slot,
                detector_results=[*job.detector_results, record],
            )

        job = await self._persist(
            job.id, current_candidate_text=candidate, heartbeat_at=self._now()
        )

        self._emit("DETECTING", job, slot, f"Scoring attempt {slot}")
        outcomes = await self._detectors.detect_all(candidate)
        detection = self._config.detection
        result = aggregate(outcomes, detection.acceptance_threshold, detection.min_successful)

        self._ledger.charge_attempt(
            job.reservation_id, self._config.validation.attempt_cost, seq=slot
        )

        record = AttemptRecord(
            attempt=slot,
            strategy=hint.name,
            outcomes=tuple(outcomes),
            verdict=result.verdict,
            attempt_score=result.attempt_score,
        )
        changes: dict[str, Any] = {
            "attempt_cursor": slot,
            "attempts_used": job.attempts_used + 1,
            "detector_results": [*job.detector_results, record],
            "heartbeat_at": self._now(),
        }
        # Strictly lower only: on a tie the earlier candidate stays best
        if result.has_quorum and result.attempt_score is not None and (
            job.best_score is None or result.attempt_score < job.best_score
        ):
            changes["best_score"] = result.attempt_score
            changes["best_candidate_text"] = candidate

        job = await self._persist(job.id, **changes)
        score = "n/a" if result.attempt_score is None else f"{result.attempt_score:.3f}"
        logger.info(
            "Job %s attempt %d: verdict=%s score=%s (%d detectors answered)",
            job.id,
            slot,
            result.verdict.value,
            score,
            result.succeeded,
        )
        self._emit("DECIDED", job, slot, f"Verdict {result.verdict.value} (score {score})")
        return job

    def _exhausted_status(self, job: HumanizationJob) -> JobStatus:
        partial_bar = self._config.detection.partial_threshold
        if job.best_score is not None and job.best_score < partial_bar:
            return JobStatus.PARTIAL_SUCCESS
        return JobStatus.FAILED

    async def _finish(
        self, job: HumanizationJob, status: JobStatus, reason: str | None = None
    ) -> HumanizationJob:
        """Finalize the reservation, then persist the terminal status."""
        assert job.reservation_id is not None
        result = self._ledger.finalize(
            job.reservation_id,
            detail={
                "job_id": job.id,
                "status": status.value,
                "attempts_used": job.attempts_used,
                "best_score": job.best_score,
                "text_length": len(job.original_text),
                "reason": reason,
            },
        )
        job = await self._persist(
            job.id, status=status, credits_charged=result.credits_charged, error=reason
        )
        self._emit(
            "FINALIZED",
            job,
            job.attempt_cursor,
            f"{status.value}: charged {result.credits_charged} of {job.credits_reserved}",
        )
        return job

    # -- Persistence -----------------------------------------------------------

    async def _persist(self, job_id: str, **changes: Any) -> HumanizationJob:
        return await self._with_retries(lambda: self._repo.update(job_id, **changes), job_id)

    async def _reload(self, job_id: str) -> HumanizationJob:
        return await self._with_retries(lambda: self._repo.get(job_id), job_id)

    async def _heartbeat(self, job_id: str) -> HumanizationJob:
        # The returned record also carries a cancel written by another process
        return await self._persist(job_id, heartbeat_at=self._now())

    def _lease_is_live(self, job: HumanizationJob) -> bool:
        if job.heartbeat_at is None:
            return False
        return self._now() - job.heartbeat_at < self._config.validation.lease_seconds

    def _skip_leased(self, job: HumanizationJob) -> bool:
        if not self._lease_is_live(job):
            return False
        logger.info("Skipping job %s: worker %s is still driving it", job.id, job.worker_id)
        return True

    async def _with_retries(self, op: Callable[[], Any], job_id: str) -> Any:
        """Run a repository call with exponential backoff.

        When every retry fails the job's reservation is closed and an
        operator alert is logged before JobPersistenceError is raised.
        """
        store = self._config.store
        attempts = max(1, store.write_retries)
        last_exc: Exception | None = None
        for i in range(attempts):
            try:
                return op()
            except _TRANSIENT_STORE_ERRORS as exc:
                last_exc = exc
                logger.warning(
                    "Job %s: repository call failed (%d/%d): %s", job_id, i + 1, attempts, exc
                )
                if i < attempts - 1:
                    await asyncio.sleep(store.write_backoff_seconds * 2**i)

        reservation_id = self._ledger.reservation_for_key(job_id)
        if reservation_id is not None:
            reservation = self._ledger.get_reservation(reservation_id)
            if reservation.charged:
                self._ledger.finalize(
                    reservation_id, detail={"job_id": job_id, "reason": "persistence failure"}
                )
            else:
                self._ledger.release(reservation_id)
        logger.critical(
            "OPERATOR ALERT: job %s could not be persisted after %d attempts; "
            "reservation %s closed, job record may be stale",
            job_id,
            attempts,
            reservation_id,
        )
        raise JobPersistenceError(f"Job {job_id}: repository unavailable") from last_exc

    def _emit(self, state: str, job: HumanizationJob, attempt: int, detail: str) -> None:
        """Emit a progress event if a callback is registered."""
        if self._progress_callback is not None:
            self._progress_callback(
                PipelineEvent(
                    state=state,
                    job_id=job.id,
                    attempt=attempt,
                    max_attempts=job.max_attempts,
                    detail=detail,
                )
            )


@asynccontextmanager
async def open_pipeline(
    config: HumanPassConfig,
    progress_callback: Callable[[PipelineEvent], None] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[ValidationOrchestrator]:
    """Build an orchestrator wired to the configured HTTP collaborators.

    Usage::

        async with open_pipeline(config) as orchestrator:
            job = await orchestrator.process("owner-1", text, tier="pro")
    """
    from humanpass.detector.base import DetectorPanel
    from humanpass.humanizer import RewriteEngine

    ledger = open_ledger(config)
    repository = open_repository(config)
    async with DetectorPanel.from_config(config.detection, transport) as panel:
        async with RewriteEngine(config.rewrite, transport) as engine:
            yield ValidationOrchestrator(
                config,
                repository,
                ledger,
                panel,
                engine,
                progress_callback=progress_callback,
            )


def open_ledger(config: HumanPassConfig) -> CreditLedger:
    """Build the ledger selected by ``store.backend``."""
    if config.store.backend == "memory":
        return CreditLedger()
    return CreditLedger(
        Path(config.general.data_dir) / "ledger.json",
        lock_timeout=config.store.lock_timeout_seconds,
    )
