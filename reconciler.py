import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Hashable, Iterable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Budget, Transaction, TransactionDirection
from periods import month_key

logger = logging.getLogger(__name__)

BucketKey = tuple[int, str, str]


def apply_delta(spent_cents: int, amount_cents: int) -> int:
    # No upper clamp: spending past the limit is an over-budget state.
    return spent_cents + amount_cents


def revert_delta(spent_cents: int, amount_cents: int) -> int:
    return max(0, spent_cents - amount_cents)


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable snapshot of the transaction fields that drive reconciliation."""

    user_id: int
    direction: TransactionDirection
    category: str
    date: date
    amount_cents: int

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "LedgerEntry":
        return cls(
            user_id=txn.user_id,
            direction=txn.direction,
            category=txn.category,
            date=txn.date,
            amount_cents=txn.amount_cents,
        )

    @property
    def is_debit(self) -> bool:
        return self.direction == TransactionDirection.debit

    @property
    def bucket(self) -> BucketKey:
        return (self.user_id, self.category, month_key(self.date))


class LockTimeout(RuntimeError):
    pass


class KeyedLocks:
    """Registry of per-key locks, acquired in a stable order."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, number of callers holding or waiting on it]
        self._locks: dict[Hashable, list] = {}

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._locks[key] = slot
            slot[1] += 1
            return slot[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            slot = self._locks[key]
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[Hashable], timeout: float) -> Iterator[None]:
        ordered = sorted(set(keys), key=repr)
        acquired: list[tuple[Hashable, threading.Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                if not lock.acquire(timeout=timeout):
                    self._checkin(key)
                    raise LockTimeout(f"Timed out waiting for lock on {key!r}")
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


bucket_locks = KeyedLocks()
pocket_locks = KeyedLocks()
transaction_locks = KeyedLocks()


class BudgetReconciler:
    """Keeps Budget.spent_cents equal to the sum of existing debits per bucket.

    Callers own the surrounding database transaction and the bucket lock; the
    reconciler only reads and writes the one Budget row for the entry's bucket.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _budget_for(self, entry: LedgerEntry) -> Optional[Budget]:
        user_id, category, month = entry.bucket
        return self.session.scalar(
            select(Budget)
            .where(
                Budget.user_id == user_id,
                Budget.category == category,
                Budget.month == month,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def apply(self, entry: LedgerEntry) -> Optional[Budget]:
        if not entry.is_debit:
            return None
        budget = self._budget_for(entry)
        if budget is None:
            logger.info(
                f"reconcile_apply_skipped: user={entry.user_id} "
                f"category={entry.category!r} month={entry.bucket[2]} reason=no_budget"
            )
            return None
        budget.spent_cents = apply_delta(budget.spent_cents, entry.amount_cents)
        self.session.flush()
        return budget

    def revert(self, entry: LedgerEntry) -> Optional[Budget]:
        if not entry.is_debit:
            return None
        budget = self._budget_for(entry)
        if budget is None:
            logger.info(
                f"reconcile_revert_skipped: user={entry.user_id} "
                f"category={entry.category!r} month={entry.bucket[2]} reason=no_budget"
            )
            return None
        if budget.spent_cents < entry.amount_cents:
            logger.warning(
                f"reconcile_revert_clamped: budget={budget.id} "
                f"spent={budget.spent_cents} amount={entry.amount_cents}"
            )
        budget.spent_cents = revert_delta(budget.spent_cents, entry.amount_cents)
        self.session.flush()
        return budget
