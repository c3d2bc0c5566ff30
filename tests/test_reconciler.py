import threading
import time
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Budget, TransactionDirection, User
from periods import month_bounds, month_key
from reconciler import (
    BudgetReconciler,
    KeyedLocks,
    LedgerEntry,
    LockTimeout,
    apply_delta,
    revert_delta,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def debit(user_id: int, category: str, day: date, amount: int) -> LedgerEntry:
    return LedgerEntry(
        user_id=user_id,
        direction=TransactionDirection.debit,
        category=category,
        date=day,
        amount_cents=amount,
    )


def test_apply_and_revert_are_inverse() -> None:
    for spent in (0, 1, 450, 6_560, 1_000_000):
        for amount in (0, 1, 150, 6_560):
            assert revert_delta(apply_delta(spent, amount), amount) == spent


def test_revert_floors_at_zero() -> None:
    assert revert_delta(100, 450) == 0
    assert apply_delta(8_000, 60) == 8_060


def test_month_key_and_bounds() -> None:
    assert month_key(date(2025, 11, 30)) == "2025-11"
    assert month_key(date(2026, 1, 1)) == "2026-01"
    assert month_bounds(date(2025, 12, 15)) == (date(2025, 12, 1), date(2025, 12, 31))
    assert month_bounds(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))


def test_entry_bucket_uses_month_of_date() -> None:
    entry = debit(7, "Food", date(2025, 10, 31), 500)
    assert entry.bucket == (7, "Food", "2025-10")
    assert entry.is_debit


def test_apply_and_revert_touch_matching_budget() -> None:
    session = make_session()
    user = User(name="Asha", settings={})
    session.add(user)
    session.commit()
    budget = Budget(
        user_id=user.id, category="Food", month="2025-11", limit_cents=10_000, spent_cents=0
    )
    session.add(budget)
    session.commit()

    reconciler = BudgetReconciler(session)
    entry = debit(user.id, "Food", date(2025, 11, 3), 1_200)
    reconciler.apply(entry)
    assert budget.spent_cents == 1_200

    reconciler.revert(entry)
    assert budget.spent_cents == 0


def test_missing_budget_is_noop() -> None:
    session = make_session()
    reconciler = BudgetReconciler(session)
    assert reconciler.apply(debit(1, "Travel", date(2025, 11, 3), 900)) is None
    assert reconciler.revert(debit(1, "Travel", date(2025, 11, 3), 900)) is None


def test_credit_entries_are_ignored() -> None:
    session = make_session()
    budget = Budget(user_id=1, category="Food", month="2025-11", limit_cents=5_000, spent_cents=300)
    session.add(budget)
    session.commit()

    credit = LedgerEntry(
        user_id=1,
        direction=TransactionDirection.credit,
        category="Food",
        date=date(2025, 11, 4),
        amount_cents=2_000,
    )
    BudgetReconciler(session).apply(credit)
    assert budget.spent_cents == 300


def test_revert_clamps_budget_at_zero() -> None:
    session = make_session()
    budget = Budget(user_id=1, category="Food", month="2025-11", limit_cents=5_000, spent_cents=100)
    session.add(budget)
    session.commit()

    BudgetReconciler(session).revert(debit(1, "Food", date(2025, 11, 4), 450))
    assert budget.spent_cents == 0


def test_keyed_locks_time_out_when_held() -> None:
    locks = KeyedLocks()
    with locks.hold([(1, "Food", "2025-11")], timeout=1):
        with pytest.raises(LockTimeout):
            with locks.hold([(1, "Food", "2025-11")], timeout=0.01):
                pass
        # A different key is independent.
        with locks.hold([(1, "Food", "2025-12")], timeout=0.01):
            pass

    with locks.hold([(1, "Food", "2025-11")], timeout=0.01):
        pass


def test_keyed_locks_deduplicate_keys() -> None:
    locks = KeyedLocks()
    with locks.hold([5, 5, 3], timeout=0.01):
        pass


def test_keyed_locks_forget_idle_keys() -> None:
    locks = KeyedLocks()
    for i in range(200):
        with locks.hold([(1, f"Category {i}", "2025-11")], timeout=1):
            assert locks.active_keys() == 1
    assert locks.active_keys() == 0

    with locks.hold(["a", "b"], timeout=1):
        with pytest.raises(LockTimeout):
            with locks.hold(["c", "b"], timeout=0.01):
                pass
        assert locks.active_keys() == 2
    assert locks.active_keys() == 0


def test_keyed_locks_keep_key_while_waiters_queue() -> None:
    locks = KeyedLocks()
    order = []

    def waiter():
        with locks.hold(["k"], timeout=5):
            order.append("waiter")

    with locks.hold(["k"], timeout=1):
        thread = threading.Thread(target=waiter)
        thread.start()
        # Give the waiter time to check out the shared lock.
        time.sleep(0.1)
        order.append("holder")
    thread.join(5)

    assert order == ["holder", "waiter"]
    assert locks.active_keys() == 0
