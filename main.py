from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from database import SessionLocal
from models import (
    Budget,
    DueItem,
    DueStatus,
    Goal,
    Notification,
    Pocket,
    PocketTransfer,
    Transaction,
    User,
)
from periods import local_today, month_key, resolve_period
from reconciler import LockTimeout
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    DueItemIn,
    GoalIn,
    PocketAmountIn,
    PocketIn,
    TransactionIn,
    TransactionPatch,
    TransferIn,
    UserIn,
    UserSettingsIn,
)
from services import (
    BudgetService,
    DueService,
    EditWindowExpired,
    GoalService,
    InsufficientBalance,
    NotFound,
    NotificationService,
    PocketService,
    TransactionService,
    UserService,
)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Family Ledger", version=APP_VERSION)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: int = Header(...)) -> int:
    # Supplied by the identity provider in front of this service; not re-checked.
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _raise_http(exc: Exception) -> None:
    if isinstance(exc, NotFound):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, (InsufficientBalance, EditWindowExpired)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, LockTimeout):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def user_out(user: User, db: Session) -> dict[str, Any]:
    config = UserService(db).schedule_config(user)
    return {
        "id": user.id,
        "name": user.name,
        "role": user.role.value,
        "family_type": user.family_type.value,
        "linked_admin_id": user.linked_admin_id,
        "settings": config.model_dump(),
    }


def transaction_out(txn: Transaction, editable: Optional[bool] = None) -> dict[str, Any]:
    out = {
        "id": txn.id,
        "direction": txn.direction.value,
        "amount_cents": txn.amount_cents,
        "category": txn.category,
        "date": txn.date.isoformat(),
        "merchant": txn.merchant,
        "note": txn.note,
        "is_shared": txn.is_shared,
        "created_at": txn.created_at.isoformat(),
    }
    if editable is not None:
        out["editable"] = editable
    return out


def budget_out(budget: Budget) -> dict[str, Any]:
    return {
        "id": budget.id,
        "category": budget.category,
        "month": budget.month,
        "limit_cents": budget.limit_cents,
        "spent_cents": budget.spent_cents,
        "remaining_cents": budget.limit_cents - budget.spent_cents,
    }


def pocket_out(pocket: Pocket) -> dict[str, Any]:
    return {
        "id": pocket.id,
        "kind": pocket.kind.value,
        "name": pocket.name,
        "balance_cents": pocket.balance_cents,
        "spent_cents": pocket.spent_cents,
        "is_hidden": pocket.is_hidden,
    }


def transfer_out(record: PocketTransfer) -> dict[str, Any]:
    return {
        "id": record.id,
        "from_pocket_id": record.from_pocket_id,
        "to_pocket_id": record.to_pocket_id,
        "amount_cents": record.amount_cents,
        "note": record.note,
        "created_at": record.created_at.isoformat(),
    }


def due_out(item: DueItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "direction": item.direction.value,
        "counterparty": item.counterparty,
        "amount_cents": item.amount_cents,
        "due_date": item.due_date.isoformat(),
        "status": item.status.value,
        "note": item.note,
    }


def goal_out(goal: Goal) -> dict[str, Any]:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_cents": goal.target_cents,
        "current_cents": goal.current_cents,
        "deadline": goal.deadline.isoformat() if goal.deadline else None,
        "is_priority": goal.is_priority,
    }


def notification_out(note: Notification) -> dict[str, Any]:
    return {
        "id": note.id,
        "kind": note.kind,
        "title": note.title,
        "body": note.body,
        "icon": note.icon,
        "data": note.data,
        "created_at": note.created_at.isoformat(),
        "read": note.read_at is not None,
    }


@app.get("/healthz")
def healthz():
    return {"status": "ok", "version": APP_VERSION}


# Users


@app.post("/api/users", status_code=201)
def create_user(data: UserIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).create(data)
    except ValueError as exc:
        _raise_http(exc)
    return user_out(user, db)


@app.get("/api/me")
def get_me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    try:
        user = UserService(db).get(user_id)
    except ValueError as exc:
        _raise_http(exc)
    return user_out(user, db)


@app.patch("/api/me/settings")
def update_settings(
    data: UserSettingsIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        config = UserService(db).update_settings(user_id, data)
    except ValueError as exc:
        _raise_http(exc)
    return config.model_dump()


# Transactions


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    limit: int = 50,
    offset: int = 0,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    params = request.query_params
    try:
        period = resolve_period(
            params.get("period"),
            params.get("start"),
            params.get("end"),
            today=local_today(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service = TransactionService(db, user_id)
    txns = service.list(period, limit=min(limit, 200), offset=offset)
    now = datetime.utcnow()
    return {
        "period": {"slug": period.slug, "start": period.start, "end": period.end},
        "transactions": [transaction_out(t, service.is_editable(t, now)) for t in txns],
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).create(data)
    except (ValueError, LockTimeout) as exc:
        _raise_http(exc)
    return transaction_out(txn, editable=True)


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    patch: TransactionPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, patch)
    except (ValueError, LockTimeout) as exc:
        _raise_http(exc)
    return transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except (ValueError, LockTimeout) as exc:
        _raise_http(exc)


# Budgets


@app.get("/api/budgets")
def list_budgets(
    month: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    month = month or month_key(local_today())
    budgets = BudgetService(db, user_id).list_for_month(month)
    return {"month": month, "budgets": [budget_out(b) for b in budgets]}


@app.post("/api/budgets", status_code=201)
def create_budget(
    data: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user_id).create(data)
    except (ValueError, LockTimeout) as exc:
        _raise_http(exc)
    return budget_out(budget)


@app.post("/api/budgets/{budget_id}/recompute")
def recompute_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user_id).recompute(budget_id)
    except (ValueError, LockTimeout) as exc:
        _raise_http(exc)
    return budget_out(budget)


# Pockets


@app.get("/api/pockets")
def list_pockets(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return {"pockets": [pocket_out(p) for p in PocketService(db, user_id).list_all()]}


@app.post("/api/pockets", status_code=201)
def create_pocket(
    data: PocketIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return pocket_out(PocketService(db, user_id).create(data))


@app.post("/api/pockets/{pocket_id}/add")
def add_money(
    pocket_id: int,
    data: PocketAmountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        pocket = PocketService(db, user_id).add_money(pocket_id, data.amount_cents)
    except (ValueError, LockTimeout) as exc:
        _raise_http(exc)
    return pocket_out(pocket)


@app.post("/api/pockets/{pocket_id}/spend")
def record_spend(
    pocket_id: int,
    data: PocketAmountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        pocket = PocketService(db, user_id).record_spend(pocket_id, data.amount_cents)
    except (ValueError, LockTimeout) as exc:
        _raise_http(exc)
    return pocket_out(pocket)


@app.post("/api/pockets/transfer", status_code=201)
def transfer_between_pockets(
    data: TransferIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        record = PocketService(db, user_id).transfer(
            data.from_pocket_id, data.to_pocket_id, data.amount_cents, data.note
        )
    except (ValueError, LockTimeout) as exc:
        _raise_http(exc)
    return transfer_out(record)


@app.get("/api/pockets/transfers")
def list_transfers(
    limit: int = 50,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    records = PocketService(db, user_id).transfers(limit=min(limit, 200))
    return {"transfers": [transfer_out(r) for r in records]}


# Dues


@app.get("/api/dues")
def list_dues(
    status: Optional[DueStatus] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return {"dues": [due_out(d) for d in DueService(db, user_id).list_all(status)]}


@app.post("/api/dues", status_code=201)
def create_due(
    data: DueItemIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return due_out(DueService(db, user_id).create(data))


@app.post("/api/dues/{due_id}/settle")
def settle_due(
    due_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        item = DueService(db, user_id).settle(due_id)
    except ValueError as exc:
        _raise_http(exc)
    return due_out(item)


# Goals


@app.get("/api/goals")
def list_goals(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return {"goals": [goal_out(g) for g in GoalService(db, user_id).list_all()]}


@app.post("/api/goals", status_code=201)
def create_goal(
    data: GoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return goal_out(GoalService(db, user_id).create(data))


@app.post("/api/goals/{goal_id}/contribute")
def contribute_to_goal(
    goal_id: int,
    data: PocketAmountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        goal = GoalService(db, user_id).contribute(goal_id, data.amount_cents)
    except ValueError as exc:
        _raise_http(exc)
    return goal_out(goal)


# Notifications and insights


@app.get("/api/notifications")
def list_notifications(
    unread: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    notes = NotificationService(db, user_id).list_recent(unread_only=unread)
    return {"notifications": [notification_out(n) for n in notes]}


@app.post("/api/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        note = NotificationService(db, user_id).mark_read(notification_id)
    except ValueError as exc:
        _raise_http(exc)
    return notification_out(note)


@app.post("/api/insights/daily-brief")
def trigger_daily_brief(user_id: int = Depends(current_user_id)):
    try:
        payload = scheduler_manager.trigger_daily_brief(user_id)
    except ValueError as exc:
        _raise_http(exc)
    return payload.model_dump(mode="json")


@app.post("/api/insights/budget-alerts")
def trigger_budget_alerts(user_id: int = Depends(current_user_id)):
    try:
        alerts = scheduler_manager.trigger_budget_alerts(user_id)
    except ValueError as exc:
        _raise_http(exc)
    return {"alerts": [a.model_dump(mode="json") for a in alerts]}
