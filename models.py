from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionDirection(str, Enum):
    debit = "debit"
    credit = "credit"


class UserRole(str, Enum):
    admin = "admin"
    member = "member"


class FamilyType(str, Enum):
    single = "single"
    couple = "couple"
    joint = "joint"


class PocketKind(str, Enum):
    cash = "cash"
    bank = "bank"
    upi = "upi"
    salary = "salary"
    savings = "savings"
    family = "family"
    custom = "custom"


class DueDirection(str, Enum):
    owed_to_me = "owed_to_me"
    owed_by_me = "owed_by_me"


class DueStatus(str, Enum):
    pending = "pending"
    settled = "settled"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        SAEnum(UserRole), default=UserRole.member, nullable=False
    )
    family_type: Mapped[FamilyType] = mapped_column(
        SAEnum(FamilyType), default=FamilyType.single, nullable=False
    )
    linked_admin_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (Index("ix_users_linked_admin", "linked_admin_id"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(
        SAEnum(TransactionDirection), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    merchant: Mapped[Optional[str]] = mapped_column(String(200))
    note: Mapped[Optional[str]] = mapped_column(Text)
    is_shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "category", "month", name="uq_budget_user_category_month"),
        Index("ix_budget_user_month", "user_id", "month"),
        CheckConstraint("limit_cents >= 0", name="ck_budget_limit_positive"),
        CheckConstraint("spent_cents >= 0", name="ck_budget_spent_positive"),
    )


class Pocket(Base, TimestampMixin):
    __tablename__ = "pockets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    kind: Mapped[PocketKind] = mapped_column(SAEnum(PocketKind), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Lifetime direct-spend counter, unrelated to Budget.spent_cents.
    spent_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (Index("ix_pockets_user", "user_id"),)


class PocketTransfer(Base, TimestampMixin):
    __tablename__ = "pocket_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    from_pocket_id: Mapped[int] = mapped_column(ForeignKey("pockets.id"), nullable=False)
    to_pocket_id: Mapped[int] = mapped_column(ForeignKey("pockets.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    from_pocket: Mapped["Pocket"] = relationship("Pocket", foreign_keys=[from_pocket_id])
    to_pocket: Mapped["Pocket"] = relationship("Pocket", foreign_keys=[to_pocket_id])

    __table_args__ = (
        Index("ix_pocket_transfers_user_created", "user_id", "created_at"),
        CheckConstraint("amount_cents > 0", name="ck_pocket_transfer_amount_positive"),
        CheckConstraint(
            "from_pocket_id != to_pocket_id", name="ck_pocket_transfer_distinct"
        ),
    )


class DueItem(Base, TimestampMixin):
    __tablename__ = "due_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    direction: Mapped[DueDirection] = mapped_column(SAEnum(DueDirection), nullable=False)
    counterparty: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[DueStatus] = mapped_column(
        SAEnum(DueStatus), default=DueStatus.pending, nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_due_items_status_due", "status", "due_date"),
        Index("ix_due_items_user_due", "user_id", "due_date"),
        CheckConstraint("amount_cents >= 0", name="ck_due_items_amount_positive"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deadline: Mapped[Optional[date]] = mapped_column(Date)
    is_priority: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint("target_cents >= 0", name="ck_goals_target_positive"),
    )


class Notification(Base, TimestampMixin):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(200))
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("ix_notifications_user_created", "user_id", "created_at"),)
