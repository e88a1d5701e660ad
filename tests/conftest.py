"""Shared test fixtures and collaborator doubles."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from humanpass.config import HumanPassConfig, load_config
from humanpass.humanizer import RewriteUnavailableError, StrategyHint
from humanpass.ledger import CreditLedger
from humanpass.models.job import DetectorOutcome, ErrorKind
from humanpass.store import InMemoryJobRepository


@pytest.fixture
def config(tmp_path: Path) -> HumanPassConfig:
    """Local profile, in-memory store, no backoff sleeps, no user config."""
    return load_config(
        profile="local",
        user_config_path=tmp_path / "missing.toml",
        cli_overrides={
            "store.backend": "memory",
            "store.write_backoff_seconds": "0",
            "general.data_dir": str(tmp_path / "data"),
        },
    )


@pytest.fixture
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def ledger() -> CreditLedger:
    return CreditLedger()


Score = float | ErrorKind


class ScriptedPanel:
    """Detector panel double replaying one row of scores per call.

    Each row holds one entry per detector: a likelihood, or an ErrorKind
    for a failed call. The last row repeats once the script runs out.
    """

    def __init__(self, rows: Sequence[Sequence[Score]], source_ids: Sequence[str] = ()) -> None:
        self.rows = [list(r) for r in rows]
        self.source_ids = list(source_ids) or ["gptzero", "open_detector", "gltr"]
        self.texts: list[str] = []

    async def detect_all(self, text: str) -> list[DetectorOutcome]:
        row = self.rows[min(len(self.texts), len(self.rows) - 1)]
        self.texts.append(text)
        outcomes = []
        for source_id, score in zip(self.source_ids, row, strict=True):
            if isinstance(score, ErrorKind):
                outcomes.append(DetectorOutcome.failure(source_id, score))
            else:
                outcomes.append(DetectorOutcome.success(source_id, score))
        return outcomes


class ScriptedRewriter:
    """Rewriter double; calls numbered in ``fail_on`` (1-based) raise."""

    def __init__(
        self,
        fail_on: Sequence[int] = (),
        on_call: Callable[[int], None] | None = None,
    ) -> None:
        self.fail_on = set(fail_on)
        self.on_call = on_call
        self.calls: list[tuple[str, StrategyHint]] = []

    async def rewrite(self, text: str, hint: StrategyHint) -> str:
        self.calls.append((text, hint))
        call_no = len(self.calls)
        if self.on_call is not None:
            self.on_call(call_no)
        if call_no in self.fail_on:
            raise RewriteUnavailableError(f"engine down on call {call_no}")
        return f"candidate {call_no}"


@pytest.fixture
def make_panel() -> type[ScriptedPanel]:
    return ScriptedPanel


@pytest.fixture
def make_rewriter() -> type[ScriptedRewriter]:
    return ScriptedRewriter
