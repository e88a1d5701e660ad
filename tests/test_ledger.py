"""Tests for the credit ledger."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
from filelock import FileLock

from humanpass.ledger import (
    CreditLedger,
    CreditLimitExceededError,
    InsufficientCreditsError,
    LedgerError,
    LedgerUnavailableError,
    ReservationClosedError,
    UnknownReservationError,
)


@pytest.fixture
def funded() -> CreditLedger:
    ledger = CreditLedger()
    ledger.grant("alice", 10)
    return ledger


class TestReserve:
    """Reservations against available balance."""

    def test_reserve_holds_credits(self, funded: CreditLedger) -> None:
        funded.reserve("alice", 3)
        assert funded.balance("alice") == 10
        assert funded.available("alice") == 7

    def test_insufficient(self, funded: CreditLedger) -> None:
        funded.reserve("alice", 8)
        with pytest.raises(InsufficientCreditsError) as exc_info:
            funded.reserve("alice", 3)
        assert exc_info.value.available == 2
        assert exc_info.value.requested == 3

    def test_unknown_owner_has_nothing(self) -> None:
        with pytest.raises(InsufficientCreditsError):
            CreditLedger().reserve("nobody", 1)

    def test_idempotent_on_key(self, funded: CreditLedger) -> None:
        first = funded.reserve("alice", 3, key="job-1")
        second = funded.reserve("alice", 3, key="job-1")
        assert first == second
        assert funded.available("alice") == 7
        assert funded.reservation_for_key("job-1") == first

    def test_concurrent_reservations_never_oversubscribe(self) -> None:
        ledger = CreditLedger()
        ledger.grant("alice", 10)
        granted: list[str] = []
        refused: list[Exception] = []
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            try:
                granted.append(ledger.reserve("alice", 3))
            except InsufficientCreditsError as exc:
                refused.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == 3
        assert len(refused) == 5
        assert ledger.available("alice") == 1


class TestChargeAndFinalize:
    """Per-attempt charges and reservation closing."""

    def test_finalize_debits_only_charged(self, funded: CreditLedger) -> None:
        rid = funded.reserve("alice", 3)
        funded.charge_attempt(rid, 1, seq=1)
        funded.charge_attempt(rid, 1, seq=2)
        result = funded.finalize(rid, detail={"job_id": "j1"})

        assert result.credits_charged == 2
        assert result.credits_released == 1
        assert funded.balance("alice") == 8
        assert funded.available("alice") == 8

    def test_charge_idempotent_per_seq(self, funded: CreditLedger) -> None:
        rid = funded.reserve("alice", 3)
        assert funded.charge_attempt(rid, 1, seq=1) == 1
        assert funded.charge_attempt(rid, 1, seq=1) == 1
        assert funded.get_reservation(rid).charge_seqs == [1]

    def test_charge_cannot_exceed_reservation(self, funded: CreditLedger) -> None:
        rid = funded.reserve("alice", 2)
        funded.charge_attempt(rid, 1, seq=1)
        funded.charge_attempt(rid, 1, seq=2)
        with pytest.raises(CreditLimitExceededError):
            funded.charge_attempt(rid, 1, seq=3)

    def test_charge_after_finalize(self, funded: CreditLedger) -> None:
        rid = funded.reserve("alice", 2)
        funded.finalize(rid)
        with pytest.raises(ReservationClosedError):
            funded.charge_attempt(rid, 1, seq=1)

    def test_finalize_idempotent(self, funded: CreditLedger) -> None:
        rid = funded.reserve("alice", 3)
        funded.charge_attempt(rid, 1, seq=1)
        first = funded.finalize(rid)
        second = funded.finalize(rid)
        assert first == second
        assert funded.balance("alice") == 9
        usage = [e for e in funded.history("alice") if e.action == "humanize_attempt"]
        assert len(usage) == 1
        assert usage[0].credits_changed == -1

    def test_unknown_reservation(self, funded: CreditLedger) -> None:
        with pytest.raises(UnknownReservationError):
            funded.finalize("missing")

    @pytest.mark.parametrize("cost,attempts", [(1, 3), (2, 2), (5, 1)])
    def test_conservation(self, cost: int, attempts: int) -> None:
        ledger = CreditLedger()
        ledger.grant("bob", 20)
        rid = ledger.reserve("bob", cost * 3)
        for seq in range(1, attempts + 1):
            ledger.charge_attempt(rid, cost, seq=seq)
        result = ledger.finalize(rid)
        assert result.credits_charged + result.credits_released == cost * 3
        assert ledger.balance("bob") == 20 - cost * attempts


class TestRelease:
    def test_release_uncharged(self, funded: CreditLedger) -> None:
        rid = funded.reserve("alice", 4)
        funded.release(rid)
        assert funded.available("alice") == 10
        assert funded.open_reservations("alice") == []
        assert [e.action for e in funded.history("alice")] == ["credit_grant"]

    def test_release_charged_refused(self, funded: CreditLedger) -> None:
        rid = funded.reserve("alice", 4)
        funded.charge_attempt(rid, 1, seq=1)
        with pytest.raises(LedgerError):
            funded.release(rid)


class TestHistory:
    """Usage history pagination."""

    def test_newest_first_pages(self) -> None:
        ledger = CreditLedger()
        for i in range(1, 6):
            ledger.grant("carol", i, reason=f"top-up {i}")

        page1 = ledger.history("carol", page=1, limit=2)
        page3 = ledger.history("carol", page=3, limit=2)
        assert [e.credits_changed for e in page1] == [5, 4]
        assert [e.credits_changed for e in page3] == [1]
        assert ledger.history("carol", page=4, limit=2) == []

    def test_filters_owner(self, funded: CreditLedger) -> None:
        funded.grant("dave", 1)
        assert all(e.owner_id == "alice" for e in funded.history("alice"))

    def test_invalid_page(self, funded: CreditLedger) -> None:
        with pytest.raises(ValueError):
            funded.history("alice", page=0)


class TestPersistence:
    """JSON file backing."""

    def test_state_survives_reload(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        ledger = CreditLedger(path)
        ledger.grant("erin", 5)
        rid = ledger.reserve("erin", 3, key="job-9")
        ledger.charge_attempt(rid, 1, seq=1)

        reloaded = CreditLedger(path)
        assert reloaded.available("erin") == 2
        assert reloaded.reservation_for_key("job-9") == rid
        # A replayed charge after restart is still a no-op
        assert reloaded.charge_attempt(rid, 1, seq=1) == 1
        reloaded.finalize(rid)
        assert CreditLedger(path).balance("erin") == 4
        assert not (tmp_path / "ledger.json.tmp").exists()


class TestSharedFile:
    """Separate ledger instances on one file, as separate processes use it."""

    def test_second_instance_sees_open_reservation(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        CreditLedger(path).grant("alice", 1)
        worker_a = CreditLedger(path)
        worker_b = CreditLedger(path)

        rid = worker_a.reserve("alice", 1, key="job-a")
        with pytest.raises(InsufficientCreditsError):
            worker_b.reserve("alice", 1, key="job-b")

        worker_a.charge_attempt(rid, 1, seq=1)
        worker_a.finalize(rid)
        assert worker_b.balance("alice") == 0
        assert len(worker_b.history("alice")) == 2

    def test_grant_between_reserve_and_finalize_is_kept(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        CreditLedger(path).grant("alice", 5)
        worker = CreditLedger(path)
        rid = worker.reserve("alice", 2, key="job-a")
        worker.charge_attempt(rid, 1, seq=1)

        CreditLedger(path).grant("alice", 100)
        worker.finalize(rid)

        fresh = CreditLedger(path)
        assert fresh.balance("alice") == 104
        actions = [e.action for e in fresh.history("alice")]
        assert actions.count("credit_grant") == 2
        assert len(actions) == 3

    def test_threads_with_own_instances_never_oversubscribe(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        CreditLedger(path).grant("alice", 5)
        granted: list[str] = []
        refused: list[Exception] = []
        barrier = threading.Barrier(8)

        def worker(n: int) -> None:
            ledger = CreditLedger(path)
            barrier.wait()
            try:
                granted.append(ledger.reserve("alice", 1, key=f"job-{n}"))
            except InsufficientCreditsError as exc:
                refused.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == 5
        assert len(refused) == 3
        assert CreditLedger(path).available("alice") == 0

    def test_locked_file_raises_unavailable(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        ledger = CreditLedger(path, lock_timeout=0.05)
        with FileLock(str(tmp_path / "ledger.json.lock")):
            with pytest.raises(LedgerUnavailableError):
                ledger.balance("alice")

    def test_finalized_reservations_leave_open_set(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        ledger = CreditLedger(path)
        ledger.grant("alice", 10)
        for n in range(3):
            rid = ledger.reserve("alice", 2, key=f"done-{n}")
            ledger.charge_attempt(rid, 1, seq=1)
            ledger.finalize(rid)
        still_open = ledger.reserve("alice", 2, key="running")

        assert [r.id for r in CreditLedger(path).open_reservations("alice")] == [still_open]
        assert ledger.available("alice") == 5
