"""
Spend ledger: the in-memory record of every transaction that reached a
pending or terminal status.

Only completed transactions count toward spend aggregates. The store is
guarded by a single re-entrant lock; swapping it for a shared store means
reimplementing this interface with the same atomicity.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional

from .money import ZERO
from .transaction import Transaction, TransactionStatus


class BudgetWindow(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"

    @property
    def seconds(self) -> int:
        return _WINDOW_SECONDS[self]


# Monthly is a trailing 30-day duration, not a calendar month.
_WINDOW_SECONDS = {
    BudgetWindow.HOURLY: 3600,
    BudgetWindow.DAILY: 86400,
    BudgetWindow.MONTHLY: 30 * 86400,
}


@dataclass
class LedgerSummary:
    """Aggregate view used for reporting."""

    total_count: int
    by_status: dict[str, int]
    completed_by_currency: dict[str, Decimal]

    def to_dict(self) -> dict:
        return {
            "total_count": self.total_count,
            "by_status": dict(self.by_status),
            "completed_by_currency": {k: str(v) for k, v in self.completed_by_currency.items()},
        }


class SpendLedger:
    """Append-mostly, queryable store of transactions keyed by id."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.RLock()
        # dict keeps insertion order; overwrites keep the original slot
        self._transactions: dict[str, Transaction] = {}

    def record(self, tx: Transaction) -> None:
        with self._lock:
            self._transactions[tx.id] = tx

    def get(self, tx_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._transactions.get(tx_id)

    def query(
        self,
        agent_id: Optional[str] = None,
        recipient: Optional[str] = None,
        since: Optional[float] = None,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """Matching transactions, newest insertion first."""
        with self._lock:
            snapshot = list(self._transactions.values())

        results: list[Transaction] = []
        for tx in reversed(snapshot):
            if agent_id is not None and tx.agent_id != agent_id:
                continue
            if recipient is not None and tx.recipient != recipient:
                continue
            if since is not None and tx.created_at < since:
                continue
            if status is not None and tx.status is not TransactionStatus(status):
                continue
            results.append(tx)
            if limit is not None and len(results) >= limit:
                break
        return results

    def get_by_recipient(self, recipient: str) -> list[Transaction]:
        return self.query(recipient=recipient)

    def sum_since(
        self,
        window: BudgetWindow,
        currency: str,
        agent_id: Optional[str] = None,
        agent_ids: Optional[Iterable[str]] = None,
        now: Optional[float] = None,
        exclude_tx_id: Optional[str] = None,
    ) -> Decimal:
        """Sum completed spend in `currency` within the trailing window."""
        now = self._clock() if now is None else now
        since = now - BudgetWindow(window).seconds
        agents = set(agent_ids) if agent_ids is not None else None

        total = ZERO
        with self._lock:
            for tx in self._transactions.values():
                if tx.status is not TransactionStatus.COMPLETED:
                    continue
                if tx.currency != currency or tx.created_at < since:
                    continue
                if agent_id is not None and tx.agent_id != agent_id:
                    continue
                if agents is not None and tx.agent_id not in agents:
                    continue
                if exclude_tx_id is not None and tx.id == exclude_tx_id:
                    continue
                total += tx.amount
        return total

    def count_since(self, since: float, agent_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1
                for tx in self._transactions.values()
                if tx.created_at >= since and (agent_id is None or tx.agent_id == agent_id)
            )

    def summary(self, agent_id: Optional[str] = None) -> LedgerSummary:
        by_status: dict[str, int] = {}
        completed: dict[str, Decimal] = {}
        count = 0
        with self._lock:
            for tx in self._transactions.values():
                if agent_id is not None and tx.agent_id != agent_id:
                    continue
                count += 1
                by_status[tx.status.value] = by_status.get(tx.status.value, 0) + 1
                if tx.status is TransactionStatus.COMPLETED:
                    completed[tx.currency] = completed.get(tx.currency, ZERO) + tx.amount
        return LedgerSummary(total_count=count, by_status=by_status, completed_by_currency=completed)

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._transactions)

    def __len__(self) -> int:
        return self.size

    def __contains__(self, tx_id: object) -> bool:
        with self._lock:
            return tx_id in self._transactions
