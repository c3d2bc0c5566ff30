"""Brief, budget-alert and dues-reminder generation.

These functions only read ledger, budget and dues state and return notification
payloads. They know nothing about timers, so the scheduler and the manual trigger
endpoints share them.
"""

from __future__ import annotations

from datetime import date, timedelta
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    Budget,
    DueDirection,
    DueItem,
    DueStatus,
    FamilyType,
    Goal,
    Transaction,
    TransactionDirection,
    User,
    UserRole,
)
from periods import local_date, month_bounds, month_key, previous_day
from schemas import NotificationAction, NotificationPayload

ICON = "/logo.png"
WARNING_THRESHOLD = 0.75
CRITICAL_THRESHOLD = 0.90
DUES_LOOKAHEAD_DAYS = 3


class AlertLevel(str, Enum):
    warning = "warning"
    critical = "critical"


def format_amount(cents: int) -> str:
    symbol = get_settings().currency_symbol
    if cents % 100 == 0:
        return f"{symbol}{cents // 100:,}"
    return f"{symbol}{cents / 100:,.2f}"


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return (part * 100 + whole // 2) // whole


def _label(today: date) -> str:
    return f"{today.day} {today:%b}"


def classify_usage(spent_cents: int, limit_cents: int) -> Optional[AlertLevel]:
    """Map budget usage to at most one alert level; critical wins over warning."""
    usage = spent_cents / limit_cents if limit_cents > 0 else 0.0
    if usage >= CRITICAL_THRESHOLD:
        return AlertLevel.critical
    if usage >= WARNING_THRESHOLD:
        return AlertLevel.warning
    return None


def _sum_amounts(
    session: Session,
    user_ids: Iterable[int],
    direction: TransactionDirection,
    start: date,
    end: date,
    *,
    shared_only: bool = False,
) -> int:
    stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
        Transaction.user_id.in_(list(user_ids)),
        Transaction.direction == direction,
        Transaction.date.between(start, end),
    )
    if shared_only:
        stmt = stmt.where(Transaction.is_shared.is_(True))
    return int(session.execute(stmt).scalar_one() or 0)


def _goals_on_track(goals: list[Goal]) -> int:
    return sum(
        1 for g in goals if g.target_cents > 0 and g.current_cents * 2 >= g.target_cents
    )


def personal_brief(session: Session, user: User, today: date) -> NotificationPayload:
    day = previous_day(today)
    spent = _sum_amounts(session, [user.id], TransactionDirection.debit, day.start, day.end)
    income = _sum_amounts(
        session, [user.id], TransactionDirection.credit, day.start, day.end
    )

    amount = func.sum(Transaction.amount_cents).label("amount")
    top_rows = session.execute(
        select(Transaction.category, amount)
        .where(
            Transaction.user_id == user.id,
            Transaction.direction == TransactionDirection.debit,
            Transaction.date.between(day.start, day.end),
        )
        .group_by(Transaction.category)
        .order_by(amount.desc(), Transaction.category)
        .limit(3)
    ).all()
    top_categories = [{"category": row[0], "amount": int(row[1])} for row in top_rows]

    month_start, _ = month_bounds(today)
    month_spent = _sum_amounts(
        session, [user.id], TransactionDirection.debit, month_start, today
    )
    total_limit = int(
        session.execute(
            select(func.coalesce(func.sum(Budget.limit_cents), 0)).where(
                Budget.user_id == user.id, Budget.month == month_key(today)
            )
        ).scalar_one()
        or 0
    )
    budget_used = _percent(month_spent, total_limit)

    goals = session.scalars(select(Goal).where(Goal.user_id == user.id)).all()
    on_track = _goals_on_track(goals)

    body = f"Yesterday: Spent {format_amount(spent)} | Income {format_amount(income)}"
    if total_limit > 0:
        body += f"\nMonth: {budget_used}% budget used"
    if goals:
        body += f" | {on_track} goals on track"
    if top_categories:
        top = ", ".join(
            f"{c['category']} ({format_amount(c['amount'])})" for c in top_categories
        )
        body += f"\nTop: {top}"

    return NotificationPayload(
        title=f"📊 Daily Brief — {_label(today)}",
        body=body,
        icon=ICON,
        data={
            "type": "daily_brief",
            "user_id": user.id,
            "date": day.start.isoformat(),
            "stats": {
                "spent": spent,
                "income": income,
                "budget_used": budget_used,
                "top_categories": top_categories,
                "goals_on_track": on_track,
            },
        },
    )


def family_brief(session: Session, admin: User, today: date) -> NotificationPayload:
    day = previous_day(today)
    members = session.scalars(
        select(User).where(User.linked_admin_id == admin.id).order_by(User.id)
    ).all()
    family = [admin, *members]
    family_ids = [u.id for u in family]

    debit = TransactionDirection.debit
    total_spent = _sum_amounts(session, family_ids, debit, day.start, day.end)
    shared_spent = _sum_amounts(
        session, family_ids, debit, day.start, day.end, shared_only=True
    )

    by_user = dict(
        session.execute(
            select(Transaction.user_id, func.sum(Transaction.amount_cents))
            .where(
                Transaction.user_id.in_(family_ids),
                Transaction.direction == debit,
                Transaction.date.between(day.start, day.end),
            )
            .group_by(Transaction.user_id)
        ).all()
    )
    ranking = sorted(
        (
            {"user_id": u.id, "name": u.name, "amount": int(by_user.get(u.id) or 0)}
            for u in family
        ),
        key=lambda m: (-m["amount"], m["name"]),
    )
    top_spender = ranking[0] if total_spent > 0 else None

    new_members = [m.name for m in members if local_date(m.created_at) == day.start]

    month_start, _ = month_bounds(today)
    month_total = _sum_amounts(session, family_ids, debit, month_start, today)
    month_shared = _sum_amounts(
        session, family_ids, debit, month_start, today, shared_only=True
    )
    shared_percentage = _percent(month_shared, month_total)

    priority_goals = session.scalars(
        select(Goal)
        .where(Goal.user_id == admin.id, Goal.is_priority.is_(True))
        .order_by(Goal.id)
    ).all()
    goal_progress = [
        {"name": g.name, "percent": _percent(g.current_cents, g.target_cents)}
        for g in priority_goals
    ]
    on_track = _goals_on_track(priority_goals)

    body = f"Yesterday: {format_amount(total_spent)} (Shared: {format_amount(shared_spent)})"
    if top_spender:
        body += f"\nTop: {top_spender['name']} ({format_amount(top_spender['amount'])})"
    else:
        body += "\nTop: None"
    if new_members:
        body += f"\nNew Members: {', '.join(new_members)}"
    if priority_goals:
        body += f" | {on_track} goals on track"
    body += f"\nMonth: {format_amount(month_total)} ({shared_percentage}% shared)"

    return NotificationPayload(
        title=f"👨‍👩‍👧‍👦 Family Brief — {_label(today)}",
        body=body,
        icon=ICON,
        data={
            "type": "family_brief",
            "admin_id": admin.id,
            "date": day.start.isoformat(),
            "stats": {
                "total_spent": total_spent,
                "shared_spent": shared_spent,
                "per_member": ranking,
                "top_spender": top_spender,
                "new_members": new_members,
                "month_total": month_total,
                "shared_percentage": shared_percentage,
                "goal_progress": goal_progress,
                "goals_on_track": on_track,
            },
        },
    )


def is_family_admin(user: User) -> bool:
    return user.family_type == FamilyType.joint and user.role == UserRole.admin


def daily_brief(session: Session, user: User, today: date) -> NotificationPayload:
    if is_family_admin(user):
        return family_brief(session, user, today)
    return personal_brief(session, user, today)


def budget_alerts(session: Session, user: User, today: date) -> list[NotificationPayload]:
    budgets = session.scalars(
        select(Budget)
        .where(Budget.user_id == user.id, Budget.month == month_key(today))
        .order_by(Budget.category)
    ).all()

    alerts: list[NotificationPayload] = []
    for budget in budgets:
        level = classify_usage(budget.spent_cents, budget.limit_cents)
        if level is None:
            continue
        usage = _percent(budget.spent_cents, budget.limit_cents)
        totals = f"{format_amount(budget.spent_cents)} / {format_amount(budget.limit_cents)}"
        if level == AlertLevel.critical:
            title = "🚨 Budget Alert"
            kind = "budget_alert"
            totals += " spent this month"
        else:
            title = "⚠️ Budget Warning"
            kind = "budget_warning"
        alerts.append(
            NotificationPayload(
                title=title,
                body=f"You've used {usage}% of your {budget.category} budget\n{totals}",
                icon=ICON,
                data={
                    "type": kind,
                    "level": level.value,
                    "budget_id": budget.id,
                    "category": budget.category,
                    "month": budget.month,
                    "usage": usage,
                },
            )
        )
    return alerts


def _reminder(item: DueItem) -> NotificationPayload:
    amount = format_amount(item.amount_cents)
    if item.direction == DueDirection.owed_to_me:
        title = "💸 Money to Collect"
        body = f"{item.counterparty} owes you {amount}"
    else:
        title = "💰 Payment Due Soon"
        body = f"You owe {item.counterparty} {amount}"
    return NotificationPayload(
        title=title,
        body=f"{body}\nDue: {item.due_date:%d/%m/%Y}",
        icon=ICON,
        data={
            "type": "dues_reminder",
            "due_id": item.id,
            "direction": item.direction.value,
            "due_date": item.due_date.isoformat(),
        },
        actions=[
            NotificationAction(action="view", title="View Details"),
            NotificationAction(action="settle", title="Mark Settled"),
        ],
    )


def dues_reminders(
    session: Session, today: date, user_id: Optional[int] = None
) -> list[tuple[int, NotificationPayload]]:
    """Reminders for pending dues falling in ``[today, today + 3 days]``."""
    stmt = (
        select(DueItem)
        .where(
            DueItem.status == DueStatus.pending,
            DueItem.due_date.between(
                today, today + timedelta(days=DUES_LOOKAHEAD_DAYS)
            ),
        )
        .order_by(DueItem.due_date, DueItem.id)
    )
    if user_id is not None:
        stmt = stmt.where(DueItem.user_id == user_id)
    return [(item.user_id, _reminder(item)) for item in session.scalars(stmt).all()]
