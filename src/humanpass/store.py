"""Job record repositories: in-memory and JSON-file backed."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import fields, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from filelock import FileLock, Timeout

from humanpass.models.job import HumanizationJob, JobStatus, utcnow

if TYPE_CHECKING:
    from humanpass.config import HumanPassConfig

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "owner_id", "original_text", "created_at"})
_JOB_FIELDS = frozenset(f.name for f in fields(HumanizationJob))


class StoreError(Exception):
    """Base exception for job store errors."""


class JobNotFoundError(StoreError, KeyError):
    """No job exists with the requested id."""


class JobImmutableError(StoreError):
    """The update would modify a terminal job or an immutable field."""


class RepositoryUnavailableError(StoreError):
    """Transient backend failure; the write may succeed if retried."""


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via a temp file and ``os.replace``.

    Readers never observe a partially written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


def _apply_update(job: HumanizationJob, changes: dict[str, Any]) -> HumanizationJob:
    """Validate ``changes`` against the job lifecycle and return the new job."""
    unknown = set(changes) - _JOB_FIELDS
    if unknown:
        raise StoreError(f"Unknown job fields: {sorted(unknown)}")
    frozen = set(changes) & _IMMUTABLE_FIELDS
    if frozen:
        raise JobImmutableError(f"Fields {sorted(frozen)} are immutable")
    if job.status.is_terminal:
        raise JobImmutableError(f"Job {job.id} is {job.status.value} and can no longer change")

    new_status = changes.get("status")
    if new_status is not None and new_status is not job.status:
        if not job.status.can_transition_to(new_status):
            raise JobImmutableError(
                f"Illegal transition {job.status.value} -> {new_status.value} for job {job.id}"
            )
    if "credits_charged" in changes and job.credits_charged is not None:
        raise JobImmutableError(f"credits_charged already set for job {job.id}")

    changes = {**changes, "updated_at": utcnow()}
    return replace(job, **changes)


class InMemoryJobRepository:
    """Thread-safe dict-backed repository; the default for tests and demos."""

    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, job: HumanizationJob) -> str:
        with self._lock:
            if job.id in self._jobs:
                raise StoreError(f"Job {job.id} already exists")
            self._jobs[job.id] = job.to_dict()
        return job.id

    def update(self, job_id: str, **changes: Any) -> HumanizationJob:
        with self._lock:
            job = self._load(job_id)
            updated = _apply_update(job, changes)
            self._jobs[job_id] = updated.to_dict()
        return updated

    def get(self, job_id: str) -> HumanizationJob:
        with self._lock:
            return self._load(job_id)

    def list_jobs(
        self, owner_id: str | None = None, status: JobStatus | None = None
    ) -> list[HumanizationJob]:
        with self._lock:
            jobs = [HumanizationJob.from_dict(d) for d in self._jobs.values()]
        return _filter_sorted(jobs, owner_id, status)

    def _load(self, job_id: str) -> HumanizationJob:
        # Stored as dicts so callers never share mutable state with the store
        try:
            return HumanizationJob.from_dict(self._jobs[job_id])
        except KeyError:
            raise JobNotFoundError(job_id) from None


class JsonJobRepository:
    """One JSON document per job under ``directory``.

    Writes are atomic (temp file + replace), so a crash mid-write leaves the
    previous version intact for :meth:`ValidationOrchestrator.recover`.
    Read-modify-write runs under a per-job file lock, so a cancel written by
    one process is not lost under a heartbeat written by another.
    """

    def __init__(self, directory: Path, lock_timeout: float = 30.0) -> None:
        self._directory = directory
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()

    def _path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or job_id.startswith("."):
            raise JobNotFoundError(job_id)
        return self._directory / f"{job_id}.json"

    @contextmanager
    def _locked(self, job_id: str) -> Iterator[Path]:
        path = self._path(job_id)
        self._directory.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(path.with_name(path.name + ".lock")), timeout=self._lock_timeout)
        with self._lock:
            try:
                lock.acquire()
            except Timeout as exc:
                raise RepositoryUnavailableError(f"Job {job_id} is locked") from exc
            try:
                yield path
            finally:
                lock.release()

    def create(self, job: HumanizationJob) -> str:
        with self._locked(job.id) as path:
            if path.exists():
                raise StoreError(f"Job {job.id} already exists")
            atomic_write_json(path, job.to_dict())
        return job.id

    def update(self, job_id: str, **changes: Any) -> HumanizationJob:
        with self._locked(job_id) as path:
            job = self._read(job_id)
            updated = _apply_update(job, changes)
            atomic_write_json(path, updated.to_dict())
        return updated

    def get(self, job_id: str) -> HumanizationJob:
        with self._lock:
            return self._read(job_id)

    def list_jobs(
        self, owner_id: str | None = None, status: JobStatus | None = None
    ) -> list[HumanizationJob]:
        jobs: list[HumanizationJob] = []
        if not self._directory.is_dir():
            return jobs
        with self._lock:
            for path in self._directory.glob("*.json"):
                try:
                    jobs.append(self._read(path.stem))
                except StoreError as exc:
                    logger.warning("Skipping unreadable job file %s: %s", path, exc)
        return _filter_sorted(jobs, owner_id, status)

    def _read(self, job_id: str) -> HumanizationJob:
        path = self._path(job_id)
        if not path.is_file():
            raise JobNotFoundError(job_id)
        try:
            with open(path, encoding="utf-8") as f:
                return HumanizationJob.from_dict(json.load(f))
        except OSError as exc:
            raise RepositoryUnavailableError(f"Cannot read {path}: {exc}") from exc
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as exc:
            raise StoreError(f"Corrupt job record {path}: {exc}") from exc


def _filter_sorted(
    jobs: list[HumanizationJob], owner_id: str | None, status: JobStatus | None
) -> list[HumanizationJob]:
    selected = [
        j
        for j in jobs
        if (owner_id is None or j.owner_id == owner_id) and (status is None or j.status is status)
    ]
    return sorted(selected, key=lambda j: j.created_at, reverse=True)


def open_repository(config: HumanPassConfig) -> InMemoryJobRepository | JsonJobRepository:
    """Build the repository selected by ``store.backend``."""
    if config.store.backend == "memory":
        return InMemoryJobRepository()
    return JsonJobRepository(
        Path(config.general.data_dir) / "jobs", lock_timeout=config.store.lock_timeout_seconds
    )
