"""Progress reporting for humanization jobs."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

if TYPE_CHECKING:
    from rich.progress import TaskID

    from humanpass.models.job import HumanizationJob


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    """Immutable event emitted by the orchestrator.

    Attributes:
        state: Step name (e.g. "REWRITING", "DETECTING", "FINALIZED").
        job_id: Job the event belongs to.
        attempt: 1-based slot number, 0 for job-level events.
        max_attempts: Slot budget of the job.
        detail: Human-readable detail string for verbose output.
    """

    state: str
    job_id: str
    attempt: int
    max_attempts: int
    detail: str


class ProgressReporter:
    """Rich-based progress display for a humanization job.

    Renders a live progress bar on TTY stderr. Falls back to structured
    log messages when stderr is not a terminal.
    """

    def __init__(
        self,
        console: Console,
        verbose: bool = False,
        quiet: bool = False,
    ) -> None:
        self._console = console
        self._verbose = verbose
        self._quiet = quiet
        self._progress: Progress | None = None
        self._task_id: TaskID | None = None
        self._current_state: str = ""
        self._is_tty: bool = sys.stderr.isatty()
        self._logger: logging.Logger = logging.getLogger("humanpass.progress")

    def callback(self, event: PipelineEvent) -> None:
        """Handle a pipeline event -- update progress display."""
        if self._quiet:
            return

        if event.state != self._current_state:
            self._current_state = event.state
            if self._progress is not None and self._task_id is not None:
                self._progress.update(self._task_id, description=f"[cyan]{event.state}")

        if self._progress is not None and self._task_id is not None:
            self._progress.update(
                self._task_id,
                completed=event.attempt,
                total=event.max_attempts,
            )

        if self._verbose and event.detail:
            if self._is_tty:
                self._console.print(f"  [dim]{event.detail}[/dim]")
            else:
                self._logger.info(event.detail)

        if not self._is_tty and not self._verbose:
            self._logger.info(
                "%s [%d/%d] %s",
                event.state,
                event.attempt,
                event.max_attempts,
                event.detail,
            )

    def start(self, max_attempts: int) -> None:
        """Start the progress display."""
        if self._quiet:
            return

        if self._is_tty:
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
            )
            self._progress.start()
            self._task_id = self._progress.add_task("[cyan]STARTING", total=max_attempts)
        else:
            self._logger.info("Job started -- up to %d attempts", max_attempts)

    def finish(self, job: HumanizationJob) -> None:
        """Stop progress and print summary table."""
        if self._progress is not None:
            self._progress.stop()
            self._progress = None

        if self._quiet:
            return

        table = Table(title="Job Summary", show_header=True)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        best = "-" if job.best_score is None else f"{job.best_score:.1%}"
        table.add_row("Job", job.id)
        table.add_row("Status", job.status.value)
        table.add_row("Attempts used", f"{job.attempts_used}/{job.max_attempts}")
        table.add_row("Best score", best)
        table.add_row("Credits reserved", str(job.credits_reserved))
        table.add_row("Credits charged", str(job.credits_charged or 0))
        if job.error:
            table.add_row("Reason", job.error)

        self._console.print(table)
