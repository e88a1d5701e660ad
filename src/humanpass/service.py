"""Request/response payloads for the submit and poll endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from humanpass.models.job import HumanizationJob


def submit_payload(job: HumanizationJob) -> dict[str, Any]:
    """Response to a submit request."""
    return {"job_id": job.id, "status": job.status.value}


def status_payload(job: HumanizationJob) -> dict[str, Any]:
    """Response to a status poll.

    ``credits_charged`` stays ``None`` until the job is terminal; the
    best candidate is exposed as soon as one attempt reached quorum.
    """
    return {
        "job_id": job.id,
        "status": job.status.value,
        "best_candidate_text": job.best_candidate_text,
        "best_score": job.best_score,
        "detector_results": [r.to_dict() for r in job.detector_results],
        "credits_charged": job.credits_charged,
        "attempts_used": job.attempts_used,
    }
