"""Escalating rewrite strategies selected per attempt."""

from __future__ import annotations

from enum import Enum


class StrategyHint(Enum):
    """Instruction sent to the rewrite engine, ordered mildest first."""

    DEFAULT = ""
    INCREASE_VARIATION = (
        "Vary sentence lengths significantly and prefer less predictable,"
        " natural word choices."
    )
    REDUCE_UNIFORMITY = (
        "Break up uniform sentence rhythm: mix very short sentences with longer"
        " compound ones, and vary paragraph structure."
    )
    RESTRUCTURE = (
        "Restructure sentences completely, use idiomatic expressions, and add"
        " natural qualifiers and subtle personal touches."
    )

    @property
    def prompt_modifier(self) -> str:
        """Return the strategy-specific prompt modifier string."""
        return self.value


def select_hint(attempt_index: int) -> StrategyHint:
    """Select the hint for a zero-based attempt index.

    Escalates one step per attempt and stays on the most aggressive hint
    once the list is exhausted.
    """
    if attempt_index < 0:
        raise ValueError(f"attempt_index must be >= 0, got {attempt_index}")
    members = list(StrategyHint)
    return members[min(attempt_index, len(members) - 1)]
