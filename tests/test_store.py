"""Tests for the job repositories."""

from __future__ import annotations

from pathlib import Path

import pytest
from filelock import FileLock

from humanpass.models.job import AttemptRecord, HumanizationJob, JobStatus
from humanpass.store import (
    InMemoryJobRepository,
    JobImmutableError,
    JobNotFoundError,
    JsonJobRepository,
    RepositoryUnavailableError,
    StoreError,
)


@pytest.fixture(params=["memory", "json"])
def repo(request: pytest.FixtureRequest, tmp_path: Path) -> InMemoryJobRepository | JsonJobRepository:
    if request.param == "memory":
        return InMemoryJobRepository()
    return JsonJobRepository(tmp_path / "jobs")


def _job(owner: str = "u1") -> HumanizationJob:
    return HumanizationJob(owner_id=owner, original_text="text", tier="free", max_attempts=2)


class TestRepository:
    """Contract shared by both backends."""

    def test_create_and_get(self, repo: InMemoryJobRepository | JsonJobRepository) -> None:
        job = _job()
        assert repo.create(job) == job.id
        assert repo.get(job.id) == job

    def test_duplicate_create(self, repo: InMemoryJobRepository | JsonJobRepository) -> None:
        job = _job()
        repo.create(job)
        with pytest.raises(StoreError):
            repo.create(job)

    def test_missing(self, repo: InMemoryJobRepository | JsonJobRepository) -> None:
        with pytest.raises(JobNotFoundError):
            repo.get("nope")

    def test_update_returns_new_state(
        self, repo: InMemoryJobRepository | JsonJobRepository
    ) -> None:
        job = _job()
        repo.create(job)
        record = AttemptRecord(attempt=1, strategy="DEFAULT", rewrite_failed=True)
        updated = repo.update(
            job.id, status=JobStatus.PROCESSING, detector_results=[record], attempt_cursor=1
        )
        assert updated.status is JobStatus.PROCESSING
        assert repo.get(job.id).detector_results == [record]

    def test_returned_jobs_are_copies(
        self, repo: InMemoryJobRepository | JsonJobRepository
    ) -> None:
        job = _job()
        repo.create(job)
        fetched = repo.get(job.id)
        fetched.attempt_cursor = 2
        assert repo.get(job.id).attempt_cursor == 0

    def test_terminal_jobs_are_immutable(
        self, repo: InMemoryJobRepository | JsonJobRepository
    ) -> None:
        job = _job()
        repo.create(job)
        repo.update(job.id, status=JobStatus.PROCESSING, credits_reserved=2)
        repo.update(job.id, status=JobStatus.COMPLETED, credits_charged=1)
        with pytest.raises(JobImmutableError):
            repo.update(job.id, best_score=0.01)

    @pytest.mark.parametrize("field", ["id", "owner_id", "original_text", "created_at"])
    def test_immutable_fields(
        self, repo: InMemoryJobRepository | JsonJobRepository, field: str
    ) -> None:
        job = _job()
        repo.create(job)
        with pytest.raises(JobImmutableError):
            repo.update(job.id, **{field: "x"})

    def test_illegal_transition(self, repo: InMemoryJobRepository | JsonJobRepository) -> None:
        job = _job()
        repo.create(job)
        with pytest.raises(JobImmutableError, match="Illegal transition"):
            repo.update(job.id, status=JobStatus.COMPLETED)

    def test_unknown_field(self, repo: InMemoryJobRepository | JsonJobRepository) -> None:
        job = _job()
        repo.create(job)
        with pytest.raises(StoreError):
            repo.update(job.id, colour="blue")

    def test_list_filters(self, repo: InMemoryJobRepository | JsonJobRepository) -> None:
        a, b, c = _job("u1"), _job("u2"), _job("u1")
        for job in (a, b, c):
            repo.create(job)
        repo.update(c.id, status=JobStatus.PROCESSING)

        assert {j.id for j in repo.list_jobs(owner_id="u1")} == {a.id, c.id}
        assert [j.id for j in repo.list_jobs(status=JobStatus.PROCESSING)] == [c.id]
        assert len(repo.list_jobs()) == 3


class TestJsonRepository:
    """File-backend specifics."""

    def test_survives_new_instance(self, tmp_path: Path) -> None:
        job = _job()
        JsonJobRepository(tmp_path).create(job)
        assert JsonJobRepository(tmp_path).get(job.id) == job

    def test_corrupt_file_skipped_in_listing(self, tmp_path: Path) -> None:
        repo = JsonJobRepository(tmp_path)
        job = _job()
        repo.create(job)
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        assert [j.id for j in repo.list_jobs()] == [job.id]
        with pytest.raises(StoreError):
            repo.get("broken")

    def test_rejects_path_like_ids(self, tmp_path: Path) -> None:
        with pytest.raises(JobNotFoundError):
            JsonJobRepository(tmp_path).get("../etc/passwd")

    def test_update_waits_for_job_lock(self, tmp_path: Path) -> None:
        repo = JsonJobRepository(tmp_path / "jobs", lock_timeout=0.05)
        job = _job()
        repo.create(job)
        with FileLock(str(tmp_path / "jobs" / f"{job.id}.json.lock")):
            with pytest.raises(RepositoryUnavailableError):
                repo.update(job.id, cancel_requested=True)
        assert repo.get(job.id).cancel_requested is False

    def test_writers_on_separate_instances_keep_each_field(self, tmp_path: Path) -> None:
        worker = JsonJobRepository(tmp_path / "jobs")
        operator = JsonJobRepository(tmp_path / "jobs")
        job = _job()
        worker.create(job)
        worker.update(job.id, status=JobStatus.PROCESSING)

        operator.update(job.id, cancel_requested=True)
        stored = worker.update(job.id, heartbeat_at=1234.0)

        assert stored.cancel_requested is True
        assert stored.heartbeat_at == 1234.0
        assert [p.name for p in (tmp_path / "jobs").glob("*.json")] == [f"{job.id}.json"]
