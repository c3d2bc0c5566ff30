from __future__ import annotations

import dataclasses
import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    Budget,
    DueItem,
    DueStatus,
    Goal,
    Notification,
    Pocket,
    PocketTransfer,
    Transaction,
    TransactionDirection,
    User,
    UserRole,
)
from periods import Period, month_bounds, parse_time_of_day
from reconciler import (
    BudgetReconciler,
    LedgerEntry,
    bucket_locks,
    pocket_locks,
    transaction_locks,
)
from schemas import (
    BudgetIn,
    DueItemIn,
    GoalIn,
    PocketIn,
    TransactionIn,
    TransactionPatch,
    UserIn,
    UserScheduleConfig,
    UserSettingsIn,
)

logger = logging.getLogger(__name__)


class LedgerValidationError(ValueError):
    pass


class InvalidTransfer(LedgerValidationError):
    pass


class InsufficientBalance(ValueError):
    pass


class NotFound(ValueError):
    pass


class EditWindowExpired(ValueError):
    pass


_REQUIRED_PATCH_FIELDS = ("direction", "amount_cents", "category", "date")
_ENTRY_FIELDS = {f.name for f in dataclasses.fields(LedgerEntry)}


def _require_positive(amount_cents: int) -> None:
    if amount_cents is None or amount_cents <= 0:
        raise LedgerValidationError("Amount must be positive")


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def create(self, data: UserIn) -> User:
        if data.linked_admin_id is not None:
            admin = self.session.get(User, data.linked_admin_id)
            if not admin or admin.role != UserRole.admin:
                raise LedgerValidationError("Linked admin not found")
        user = User(
            name=data.name,
            role=data.role,
            family_type=data.family_type,
            linked_admin_id=data.linked_admin_id,
            settings={},
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def list_all(self) -> list[User]:
        return self.session.scalars(select(User).order_by(User.id)).all()

    def linked_members(self, admin_id: int) -> list[User]:
        return self.session.scalars(
            select(User).where(User.linked_admin_id == admin_id).order_by(User.id)
        ).all()

    def schedule_config(self, user: User) -> UserScheduleConfig:
        raw = {"brief_time": self.settings.default_brief_time}
        raw.update(user.settings or {})
        return UserScheduleConfig.model_validate(raw)

    def update_settings(self, user_id: int, data: UserSettingsIn) -> UserScheduleConfig:
        user = self.get(user_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "brief_time" in changes:
            parsed = parse_time_of_day(changes["brief_time"])
            if parsed is None:
                raise LedgerValidationError("Brief time must be HH:MM (00:00-23:59)")
            changes["brief_time"] = parsed.strftime("%H:%M")
        # Reassign so the JSON column is flagged dirty.
        user.settings = {**(user.settings or {}), **changes}
        self.session.commit()
        return self.schedule_config(user)


class TransactionService:
    """Single entry point for ledger mutations.

    Every create, update and delete reconciles the affected budget buckets inside
    the same database transaction, so ``Budget.spent_cents`` is committed together
    with the ledger row or not at all.
    """

    def __init__(
        self,
        session: Session,
        user_id: int,
        reconciler: Optional[BudgetReconciler] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = get_settings()
        self.reconciler = reconciler or BudgetReconciler(session)

    @property
    def edit_window(self) -> timedelta:
        return timedelta(seconds=self.settings.edit_window_secs)

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            direction=data.direction,
            amount_cents=data.amount_cents,
            category=data.category,
            date=data.date,
            merchant=data.merchant,
            note=data.note,
            is_shared=data.is_shared,
        )
        entry = LedgerEntry.from_transaction(txn)
        with bucket_locks.hold([entry.bucket], self.settings.lock_timeout_secs):
            try:
                self.session.add(txn)
                self.session.flush()
                self.reconciler.apply(entry)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} user={self.user_id} "
            f"direction={txn.direction.value} amount={txn.amount_cents}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def _get_for_update(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def is_editable(self, txn: Transaction, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return now - txn.created_at < self.edit_window

    def _ensure_editable(self, txn: Transaction, now: Optional[datetime]) -> None:
        if not self.is_editable(txn, now):
            raise EditWindowExpired(
                "Transactions can only be changed within "
                f"{self.settings.edit_window_secs // 60} minutes of creation"
            )

    def update(
        self,
        transaction_id: int,
        patch: TransactionPatch,
        *,
        now: Optional[datetime] = None,
    ) -> Transaction:
        changes = patch.model_dump(exclude_unset=True)
        for field in _REQUIRED_PATCH_FIELDS:
            if field in changes and changes[field] is None:
                raise LedgerValidationError(f"{field} cannot be cleared")

        timeout = self.settings.lock_timeout_secs
        with transaction_locks.hold([transaction_id], timeout):
            try:
                txn = self._get_for_update(transaction_id)
                self._ensure_editable(txn, now)
            except Exception:
                self.session.rollback()
                raise
            before = LedgerEntry.from_transaction(txn)
            after = dataclasses.replace(
                before, **{k: v for k, v in changes.items() if k in _ENTRY_FIELDS}
            )
            with bucket_locks.hold([before.bucket, after.bucket], timeout):
                try:
                    self.reconciler.revert(before)
                    for field, value in changes.items():
                        setattr(txn, field, value)
                    self.session.flush()
                    self.reconciler.apply(LedgerEntry.from_transaction(txn))
                    self.session.commit()
                except Exception:
                    # Undoes the revert as well; the bucket keeps the old state.
                    self.session.rollback()
                    raise
            self.session.refresh(txn)
        logger.info(
            f"transaction_updated: id={txn.id} user={self.user_id} "
            f"fields={sorted(changes)}"
        )
        return txn

    def delete(self, transaction_id: int, *, now: Optional[datetime] = None) -> None:
        timeout = self.settings.lock_timeout_secs
        with transaction_locks.hold([transaction_id], timeout):
            try:
                txn = self._get_for_update(transaction_id)
                self._ensure_editable(txn, now)
            except Exception:
                self.session.rollback()
                raise
            entry = LedgerEntry.from_transaction(txn)
            with bucket_locks.hold([entry.bucket], timeout):
                try:
                    self.reconciler.revert(entry)
                    self.session.delete(txn)
                    self.session.commit()
                except Exception:
                    self.session.rollback()
                    raise
        logger.info(f"transaction_deleted: id={transaction_id} user={self.user_id}")

    def list(self, period: Period, limit: int = 50, offset: int = 0) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = get_settings()

    def _ledger_spent(self, category: str, month: str) -> int:
        year, mon = (int(part) for part in month.split("-"))
        start, end = month_bounds(date(year, mon, 1))
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.direction == TransactionDirection.debit,
                    Transaction.category == category,
                    Transaction.date.between(start, end),
                )
            ).scalar_one()
            or 0
        )

    def create(self, data: BudgetIn) -> Budget:
        key = (self.user_id, data.category, data.month)
        with bucket_locks.hold([key], self.settings.lock_timeout_secs):
            existing = self.session.scalar(
                select(Budget).where(
                    Budget.user_id == self.user_id,
                    Budget.category == data.category,
                    Budget.month == data.month,
                )
            )
            if existing:
                raise LedgerValidationError("Budget already exists for this month")
            budget = Budget(
                user_id=self.user_id,
                category=data.category,
                month=data.month,
                limit_cents=data.limit_cents,
                # Seed from debits already on the ledger for this bucket.
                spent_cents=self._ledger_spent(data.category, data.month),
            )
            try:
                self.session.add(budget)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        self.session.refresh(budget)
        return budget

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        return budget

    def list_for_month(self, month: str) -> list[Budget]:
        return self.session.scalars(
            select(Budget)
            .where(Budget.user_id == self.user_id, Budget.month == month)
            .order_by(Budget.category)
        ).all()

    def set_limit(self, budget_id: int, limit_cents: int) -> Budget:
        if limit_cents < 0:
            raise LedgerValidationError("Limit cannot be negative")
        budget = self.get(budget_id)
        budget.limit_cents = limit_cents
        self.session.commit()
        return budget

    def recompute(self, budget_id: int) -> Budget:
        """Rebuild ``spent_cents`` from the ledger, repairing any drift."""
        budget = self.get(budget_id)
        key = (self.user_id, budget.category, budget.month)
        with bucket_locks.hold([key], self.settings.lock_timeout_secs):
            before = budget.spent_cents
            budget.spent_cents = self._ledger_spent(budget.category, budget.month)
            self.session.commit()
        if before != budget.spent_cents:
            logger.warning(
                f"budget_recomputed: id={budget.id} before={before} "
                f"after={budget.spent_cents}"
            )
        return budget


class PocketService:
    """Owns every write to ``Pocket.balance_cents``: add, direct spend, transfer."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = get_settings()

    def create(self, data: PocketIn) -> Pocket:
        pocket = Pocket(
            user_id=self.user_id,
            kind=data.kind,
            name=data.name,
            balance_cents=data.balance_cents,
            spent_cents=0,
        )
        self.session.add(pocket)
        self.session.commit()
        self.session.refresh(pocket)
        return pocket

    def get(self, pocket_id: int) -> Pocket:
        pocket = self.session.get(Pocket, pocket_id)
        if not pocket or pocket.user_id != self.user_id:
            raise NotFound("Pocket not found")
        return pocket

    def _get_for_update(self, pocket_id: int) -> Pocket:
        pocket = self.session.scalar(
            select(Pocket)
            .where(Pocket.user_id == self.user_id, Pocket.id == pocket_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not pocket:
            raise NotFound("Pocket not found")
        return pocket

    def list_all(self, include_hidden: bool = True) -> list[Pocket]:
        stmt = select(Pocket).where(Pocket.user_id == self.user_id).order_by(Pocket.id)
        if not include_hidden:
            stmt = stmt.where(Pocket.is_hidden.is_(False))
        return self.session.scalars(stmt).all()

    def add_money(self, pocket_id: int, amount_cents: int) -> Pocket:
        _require_positive(amount_cents)
        with pocket_locks.hold([pocket_id], self.settings.lock_timeout_secs):
            try:
                pocket = self._get_for_update(pocket_id)
                pocket.balance_cents += amount_cents
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return pocket

    def record_spend(self, pocket_id: int, amount_cents: int) -> Pocket:
        _require_positive(amount_cents)
        with pocket_locks.hold([pocket_id], self.settings.lock_timeout_secs):
            try:
                pocket = self._get_for_update(pocket_id)
                if (
                    not self.settings.allow_pocket_overdraft
                    and pocket.balance_cents < amount_cents
                ):
                    raise InsufficientBalance("Insufficient balance in pocket")
                pocket.balance_cents -= amount_cents
                pocket.spent_cents += amount_cents
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return pocket

    def transfer(
        self,
        from_pocket_id: int,
        to_pocket_id: int,
        amount_cents: int,
        note: Optional[str] = None,
    ) -> PocketTransfer:
        if from_pocket_id == to_pocket_id:
            raise InvalidTransfer("Cannot transfer to the same pocket")
        _require_positive(amount_cents)

        timeout = self.settings.lock_timeout_secs
        with pocket_locks.hold([from_pocket_id, to_pocket_id], timeout):
            try:
                source = self._get_for_update(from_pocket_id)
                dest = self._get_for_update(to_pocket_id)
                if source.balance_cents < amount_cents:
                    raise InsufficientBalance("Insufficient balance in source pocket")
                source.balance_cents -= amount_cents
                dest.balance_cents += amount_cents
                record = PocketTransfer(
                    user_id=self.user_id,
                    from_pocket_id=source.id,
                    to_pocket_id=dest.id,
                    amount_cents=amount_cents,
                    note=note,
                )
                self.session.add(record)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        self.session.refresh(record)
        logger.info(
            f"pocket_transfer: id={record.id} user={self.user_id} "
            f"from={from_pocket_id} to={to_pocket_id} amount={amount_cents}"
        )
        return record

    def transfers(self, limit: int = 50) -> list[PocketTransfer]:
        return self.session.scalars(
            select(PocketTransfer)
            .where(PocketTransfer.user_id == self.user_id)
            .order_by(PocketTransfer.created_at.desc(), PocketTransfer.id.desc())
            .limit(limit)
        ).all()


class DueService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: DueItemIn) -> DueItem:
        item = DueItem(
            user_id=self.user_id,
            direction=data.direction,
            counterparty=data.counterparty,
            amount_cents=data.amount_cents,
            due_date=data.due_date,
            status=DueStatus.pending,
            note=data.note,
        )
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def list_all(self, status: Optional[DueStatus] = None) -> list[DueItem]:
        stmt = (
            select(DueItem)
            .where(DueItem.user_id == self.user_id)
            .order_by(DueItem.due_date, DueItem.id)
        )
        if status:
            stmt = stmt.where(DueItem.status == status)
        return self.session.scalars(stmt).all()

    def settle(self, due_id: int) -> DueItem:
        item = self.session.get(DueItem, due_id)
        if not item or item.user_id != self.user_id:
            raise NotFound("Due item not found")
        if item.status != DueStatus.settled:
            item.status = DueStatus.settled
            self.session.commit()
        return item


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(user_id=self.user_id, **data.model_dump())
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def list_all(self, priority_only: bool = False) -> list[Goal]:
        stmt = select(Goal).where(Goal.user_id == self.user_id).order_by(Goal.id)
        if priority_only:
            stmt = stmt.where(Goal.is_priority.is_(True))
        return self.session.scalars(stmt).all()

    def contribute(self, goal_id: int, amount_cents: int) -> Goal:
        _require_positive(amount_cents)
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFound("Goal not found")
        goal.current_cents += amount_cents
        self.session.commit()
        return goal


class NotificationService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_recent(self, limit: int = 50, unread_only: bool = False) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == self.user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        if unread_only:
            stmt = stmt.where(Notification.read_at.is_(None))
        return self.session.scalars(stmt).all()

    def mark_read(self, notification_id: int) -> Notification:
        note = self.session.get(Notification, notification_id)
        if not note or note.user_id != self.user_id:
            raise NotFound("Notification not found")
        if note.read_at is None:
            note.read_at = datetime.utcnow()
            self.session.commit()
        return note
