import datetime as dt
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    DueDirection,
    FamilyType,
    PocketKind,
    TransactionDirection,
    UserRole,
)


class UserScheduleConfig(BaseModel):
    """Per-user schedule and alert preferences, read from ``User.settings``.

    Unknown keys are ignored so older settings blobs keep loading. ``brief_time``
    is kept as the raw string here; the scheduler validates it at use time.
    """

    model_config = ConfigDict(extra="ignore")

    brief_time: str = "20:00"
    daily_brief: bool = True
    budget_alerts: bool = True
    dues_reminders: bool = True


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.member
    family_type: FamilyType = FamilyType.single
    linked_admin_id: Optional[int] = None


class UserSettingsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    brief_time: Optional[str] = Field(default=None, max_length=5)
    daily_brief: Optional[bool] = None
    budget_alerts: Optional[bool] = None
    dues_reminders: Optional[bool] = None


class TransactionIn(BaseModel):
    direction: TransactionDirection
    amount_cents: int = Field(..., ge=0)
    category: str = Field(..., min_length=1, max_length=100)
    date: date
    merchant: Optional[str] = Field(default=None, max_length=200)
    note: Optional[str] = Field(default=None, max_length=500)
    is_shared: bool = False


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    direction: Optional[TransactionDirection] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    # Matched against Budget.category verbatim; no trimming or case folding.
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    date: Optional[dt.date] = None
    merchant: Optional[str] = Field(default=None, max_length=200)
    note: Optional[str] = Field(default=None, max_length=500)
    is_shared: Optional[bool] = None


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    limit_cents: int = Field(..., ge=0)


class PocketIn(BaseModel):
    kind: PocketKind
    name: str = Field(..., min_length=1, max_length=100)
    balance_cents: int = Field(default=0, ge=0)


class PocketAmountIn(BaseModel):
    amount_cents: int


class TransferIn(BaseModel):
    from_pocket_id: int
    to_pocket_id: int
    amount_cents: int
    note: Optional[str] = Field(default=None, max_length=200)


class DueItemIn(BaseModel):
    direction: DueDirection
    counterparty: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0)
    due_date: date
    note: Optional[str] = Field(default=None, max_length=200)


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    target_cents: int = Field(..., ge=0)
    current_cents: int = Field(default=0, ge=0)
    deadline: Optional[date] = None
    is_priority: bool = False


class NotificationAction(BaseModel):
    action: str
    title: str


class NotificationPayload(BaseModel):
    title: str
    body: str
    icon: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    actions: list[NotificationAction] = Field(default_factory=list)

    @property
    def kind(self) -> str:
        return str(self.data.get("type", "generic"))
