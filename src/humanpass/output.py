"""Output formatting for humanization jobs."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from humanpass import __version__
from humanpass.service import status_payload

if TYPE_CHECKING:
    from humanpass.config import HumanPassConfig
    from humanpass.models.job import HumanizationJob, UsageHistoryEntry


class OutputFormatter:
    """Format and write job results as JSON or plain text."""

    def format_json(self, job: HumanizationJob, config: HumanPassConfig) -> str:
        """Serialize a job as a JSON report.

        Args:
            job: Job to report on, terminal or not.
            config: Configuration used for the run.

        Returns:
            JSON string with version, thresholds and the status payload.
        """
        report: dict[str, Any] = {
            "humanpass_version": __version__,
            "profile": config.general.profile,
            "timestamp": datetime.now(UTC).isoformat(),
            "thresholds": {
                "acceptance": config.detection.acceptance_threshold,
                "partial": config.detection.partial_threshold,
                "min_successful": config.detection.min_successful,
            },
            "tier": job.tier,
            "max_attempts": job.max_attempts,
            "credits_reserved": job.credits_reserved,
            "error": job.error,
            **status_payload(job),
        }
        return json.dumps(report, indent=2)

    def format_text(self, job: HumanizationJob) -> str:
        """Format a job as a human-readable text report."""
        lines: list[str] = []
        lines.append("HumanPass Job Report")
        lines.append("=" * 50)
        lines.append(f"Job:    {job.id}")
        lines.append(f"Owner:  {job.owner_id}")
        lines.append(f"Tier:   {job.tier}")
        lines.append(f"Status: {job.status.value}")
        if job.error:
            lines.append(f"Reason: {job.error}")
        lines.append("")

        lines.append("Summary")
        lines.append("-" * 30)
        best = "-" if job.best_score is None else f"{job.best_score:.3f}"
        charged = "-" if job.credits_charged is None else str(job.credits_charged)
        lines.append(f"  Attempts used:    {job.attempts_used}/{job.max_attempts}")
        lines.append(f"  Best score:       {best}")
        lines.append(f"  Credits reserved: {job.credits_reserved}")
        lines.append(f"  Credits charged:  {charged}")
        lines.append("")

        if job.detector_results:
            lines.append("Attempts")
            lines.append("-" * 30)
            for record in job.detector_results:
                if record.rewrite_failed:
                    lines.append(f"  #{record.attempt} {record.strategy}: rewrite failed")
                    continue
                score = "-" if record.attempt_score is None else f"{record.attempt_score:.3f}"
                verdict = record.verdict.value if record.verdict else "-"
                detail = ", ".join(
                    f"{o.source_id}={o.ai_likelihood:.3f}"
                    if o.succeeded
                    else f"{o.source_id}={o.error_kind.value if o.error_kind else 'error'}"
                    for o in record.outcomes
                )
                lines.append(
                    f"  #{record.attempt} {record.strategy}: {verdict} score={score} [{detail}]"
                )
            lines.append("")

        if job.best_candidate_text:
            lines.append("Best candidate")
            lines.append("-" * 30)
            lines.append(job.best_candidate_text)
            lines.append("")

        return "\n".join(lines)

    def format_history(self, entries: list[UsageHistoryEntry]) -> str:
        """Format usage history entries, one per line."""
        if not entries:
            return "No usage history."
        lines = []
        for entry in entries:
            job_id = entry.detail.get("job_id", "")
            status = entry.detail.get("status", entry.detail.get("reason", ""))
            lines.append(
                f"{entry.timestamp}  {entry.action:<18} {entry.credits_changed:+d}  "
                f"{job_id} {status}".rstrip()
            )
        return "\n".join(lines)

    def write(
        self,
        job: HumanizationJob,
        path: Path,
        output_format: str,
        config: HumanPassConfig | None = None,
    ) -> None:
        """Write a formatted report to ``path``.

        Raises:
            ValueError: Unknown format, or JSON requested without ``config``.
        """
        if output_format == "json":
            if config is None:
                raise ValueError("config is required for JSON output format")
            content = self.format_json(job, config)
        elif output_format == "text":
            content = self.format_text(job)
        else:
            raise ValueError(f"Unknown output format: {output_format!r}")

        path.write_text(content, encoding="utf-8")
