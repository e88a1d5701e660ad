"""Credit ledger: reservations, per-attempt charges and usage history.

Every mutation runs as a single conditional update under the ledger lock,
so concurrent reservations for the same owner cannot oversubscribe the
balance. A file-backed ledger is shared between processes: each call takes
an inter-process file lock and re-reads ``ledger.json`` before deciding,
then writes it back before releasing the lock. Charges and finalization are
idempotent, which lets a resumed orchestrator replay its steps without
double-charging.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from humanpass.models.job import UsageHistoryEntry, utcnow
from humanpass.store import atomic_write_json

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0


class LedgerError(Exception):
    """Base exception for credit ledger errors."""


class InsufficientCreditsError(LedgerError):
    """Available balance does not cover the requested reservation.

    Attributes:
        owner_id: Account that was short.
        requested: Credits asked for.
        available: Credits available at the time of the request.
    """

    def __init__(self, owner_id: str, requested: int, available: int) -> None:
        self.owner_id = owner_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Owner {owner_id!r} has {available} available credits, {requested} required"
        )


class UnknownReservationError(LedgerError):
    """No reservation exists with the given id."""


class ReservationClosedError(LedgerError):
    """The reservation was already finalized."""


class CreditLimitExceededError(LedgerError):
    """A charge would push cumulative charges past the reserved amount."""


class LedgerUnavailableError(LedgerError):
    """The ledger file lock could not be acquired in time."""


@dataclass
class Reservation:
    """Provisional hold against an owner's balance."""

    id: str
    owner_id: str
    amount: int
    key: str | None = None
    charged: int = 0
    charge_seqs: list[int] = field(default_factory=list)
    finalized: bool = False
    credits_charged: int | None = None
    created_at: str = field(default_factory=utcnow)

    @property
    def remaining(self) -> int:
        return self.amount - self.charged

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "amount": self.amount,
            "key": self.key,
            "charged": self.charged,
            "charge_seqs": list(self.charge_seqs),
            "finalized": self.finalized,
            "credits_charged": self.credits_charged,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reservation:
        return cls(**data)


@dataclass(frozen=True, slots=True)
class FinalizeResult:
    """Outcome of closing a reservation."""

    reservation_id: str
    credits_charged: int
    credits_released: int


class CreditLedger:
    """Owner balances with reserve / charge / finalize semantics.

    ``available = balance - sum(open reservation amounts)``. The balance
    itself only moves on :meth:`grant` and :meth:`finalize`.

    Args:
        path: Optional JSON file for persistence. Several ledgers (in one
            process or many) may share it; every call works on the file's
            current contents under ``<path>.lock``.
        lock_timeout: Seconds to wait for the file lock before raising
            :class:`LedgerUnavailableError`.
    """

    def __init__(
        self, path: Path | None = None, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    ) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._file_lock = (
            FileLock(str(path.with_name(path.name + ".lock")), timeout=lock_timeout)
            if path is not None
            else None
        )
        self._balances: dict[str, int] = {}
        self._reservations: dict[str, Reservation] = {}
        self._keys: dict[str, str] = {}
        self._open_by_owner: dict[str, set[str]] = {}
        self._history: list[UsageHistoryEntry] = []

    # -- Queries ---------------------------------------------------------------

    def balance(self, owner_id: str) -> int:
        with self._transaction():
            return self._balances.get(owner_id, 0)

    def available(self, owner_id: str) -> int:
        with self._transaction():
            return self._available(owner_id)

    def get_reservation(self, reservation_id: str) -> Reservation:
        with self._transaction():
            return Reservation.from_dict(self._get(reservation_id).to_dict())

    def open_reservations(self, owner_id: str | None = None) -> list[Reservation]:
        with self._transaction():
            if owner_id is None:
                ids = [rid for held in self._open_by_owner.values() for rid in held]
            else:
                ids = list(self._open_by_owner.get(owner_id, ()))
            return [Reservation.from_dict(self._reservations[rid].to_dict()) for rid in ids]

    def history(self, owner_id: str, page: int = 1, limit: int = 10) -> list[UsageHistoryEntry]:
        """Usage entries for ``owner_id``, newest first, paginated from page 1."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be >= 1")
        with self._transaction():
            entries = [e for e in reversed(self._history) if e.owner_id == owner_id]
        start = (page - 1) * limit
        return entries[start : start + limit]

    def reservation_for_key(self, key: str) -> str | None:
        """Return the reservation id created with idempotency ``key``, if any."""
        with self._transaction():
            return self._keys.get(key)

    # -- Mutations -------------------------------------------------------------

    def grant(self, owner_id: str, amount: int, reason: str = "purchase") -> int:
        """Add purchased or allotted credits; returns the new balance."""
        if amount < 1:
            raise ValueError(f"grant amount must be >= 1, got {amount}")
        with self._transaction(write=True):
            self._balances[owner_id] = self._balances.get(owner_id, 0) + amount
            self._history.append(
                UsageHistoryEntry(
                    owner_id=owner_id,
                    action="credit_grant",
                    credits_changed=amount,
                    reservation_id="",
                    detail={"reason": reason},
                )
            )
            return self._balances[owner_id]

    def reserve(self, owner_id: str, amount: int, key: str | None = None) -> str:
        """Hold ``amount`` credits for one job.

        Args:
            owner_id: Account to reserve against.
            amount: Credits to hold.
            key: Idempotency key (the job id); repeating a reserve with the
                same key returns the original reservation.

        Returns:
            The reservation id.

        Raises:
            InsufficientCreditsError: Available balance is below ``amount``.
            LedgerUnavailableError: The ledger file stayed locked.
        """
        if amount < 1:
            raise ValueError(f"reservation amount must be >= 1, got {amount}")
        with self._transaction(write=True):
            if key is not None and key in self._keys:
                return self._keys[key]
            available = self._available(owner_id)
            if available < amount:
                raise InsufficientCreditsError(owner_id, amount, available)
            reservation = Reservation(
                id=uuid.uuid4().hex, owner_id=owner_id, amount=amount, key=key
            )
            self._index(reservation)
        logger.debug("Reserved %d credits for %s (%s)", amount, owner_id, reservation.id)
        return reservation.id

    def charge_attempt(self, reservation_id: str, attempt_cost: int, seq: int) -> int:
        """Record the cost of one consumed attempt.

        Args:
            reservation_id: Reservation to charge.
            attempt_cost: Credits for this attempt.
            seq: Attempt sequence number; a repeated ``seq`` is a no-op.

        Returns:
            Cumulative credits charged against the reservation.

        Raises:
            ReservationClosedError: The reservation was finalized.
            CreditLimitExceededError: The charge would exceed the reservation.
        """
        if attempt_cost < 0:
            raise ValueError(f"attempt_cost must be >= 0, got {attempt_cost}")
        with self._transaction(write=True):
            reservation = self._get(reservation_id)
            if seq in reservation.charge_seqs:
                return reservation.charged
            if reservation.finalized:
                raise ReservationClosedError(f"Reservation {reservation_id} is finalized")
            if reservation.charged + attempt_cost > reservation.amount:
                raise CreditLimitExceededError(
                    f"Charging {attempt_cost} would exceed reservation {reservation_id} "
                    f"({reservation.charged}/{reservation.amount} used)"
                )
            reservation.charged += attempt_cost
            reservation.charge_seqs.append(seq)
            return reservation.charged

    def release(self, reservation_id: str) -> None:
        """Drop an uncharged reservation without recording usage.

        Used when the job it was made for could never be created.

        Raises:
            LedgerError: If anything was already charged against it.
        """
        with self._transaction(write=True):
            reservation = self._get(reservation_id)
            if reservation.finalized:
                return
            if reservation.charged:
                raise LedgerError(
                    f"Reservation {reservation_id} has charges; finalize it instead"
                )
            self._close(reservation, 0)

    def finalize(
        self, reservation_id: str, detail: dict[str, Any] | None = None
    ) -> FinalizeResult:
        """Commit charged credits, release the rest, append usage history.

        Idempotent: later calls return the first result unchanged and never
        debit again or append another history entry.
        """
        with self._transaction(write=True):
            reservation = self._get(reservation_id)
            if reservation.finalized:
                assert reservation.credits_charged is not None
                return FinalizeResult(
                    reservation_id,
                    reservation.credits_charged,
                    reservation.amount - reservation.credits_charged,
                )

            owner = reservation.owner_id
            charged = reservation.charged
            self._balances[owner] = max(self._balances.get(owner, 0) - charged, 0)
            self._close(reservation, charged)
            self._history.append(
                UsageHistoryEntry(
                    owner_id=owner,
                    credits_changed=-charged,
                    reservation_id=reservation_id,
                    detail=dict(detail or {}),
                )
            )

        logger.info(
            "Finalized reservation %s: charged %d, released %d",
            reservation_id,
            charged,
            reservation.amount - charged,
        )
        return FinalizeResult(reservation_id, charged, reservation.amount - charged)

    # -- Internals -------------------------------------------------------------

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[None]:
        """Hold the ledger locks over state that is current on disk.

        The file is re-read after the file lock is taken and, for ``write``
        calls that return normally, saved before it is released.
        """
        with self._lock:
            if self._file_lock is None:
                yield
                return
            assert self._path is not None
            self._path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._file_lock.acquire()
            except Timeout as exc:
                raise LedgerUnavailableError(f"Ledger {self._path} is locked") from exc
            try:
                self._reload()
                yield
                if write:
                    self._save()
            finally:
                self._file_lock.release()

    def _available(self, owner_id: str) -> int:
        held = sum(self._reservations[rid].amount for rid in self._open_by_owner.get(owner_id, ()))
        return self._balances.get(owner_id, 0) - held

    def _get(self, reservation_id: str) -> Reservation:
        try:
            return self._reservations[reservation_id]
        except KeyError:
            raise UnknownReservationError(reservation_id) from None

    def _index(self, reservation: Reservation) -> None:
        self._reservations[reservation.id] = reservation
        if reservation.key is not None:
            self._keys[reservation.key] = reservation.id
        if not reservation.finalized:
            self._open_by_owner.setdefault(reservation.owner_id, set()).add(reservation.id)

    def _close(self, reservation: Reservation, credits_charged: int) -> None:
        reservation.finalized = True
        reservation.credits_charged = credits_charged
        held = self._open_by_owner.get(reservation.owner_id)
        if held is not None:
            held.discard(reservation.id)
            if not held:
                del self._open_by_owner[reservation.owner_id]

    def _save(self) -> None:
        assert self._path is not None
        atomic_write_json(
            self._path,
            {
                "balances": self._balances,
                "reservations": [r.to_dict() for r in self._reservations.values()],
                "history": [e.to_dict() for e in self._history],
            },
        )

    def _reload(self) -> None:
        assert self._path is not None
        self._balances = {}
        self._reservations = {}
        self._keys = {}
        self._open_by_owner = {}
        self._history = []
        if not self._path.is_file():
            return
        with open(self._path, encoding="utf-8") as f:
            data = json.load(f)
        self._balances = {k: int(v) for k, v in data.get("balances", {}).items()}
        for raw in data.get("reservations", []):
            self._index(Reservation.from_dict(raw))
        self._history = [UsageHistoryEntry.from_dict(e) for e in data.get("history", [])]
