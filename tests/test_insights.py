from datetime import date, datetime, time

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import Base
from insights import (
    AlertLevel,
    budget_alerts,
    classify_usage,
    daily_brief,
    dues_reminders,
    format_amount,
)
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
from periods import local_date, parse_time_of_day, resolve_period

TODAY = date(2025, 11, 20)
YESTERDAY = date(2025, 11, 19)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, name="Asha", **kwargs) -> User:
    user = User(name=name, settings={}, **kwargs)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def add_txn(session, user, direction, amount, category, day, is_shared=False) -> None:
    session.add(
        Transaction(
            user_id=user.id,
            direction=direction,
            amount_cents=amount,
            category=category,
            date=day,
            is_shared=is_shared,
        )
    )
    session.commit()


def test_personal_brief_summarises_previous_day() -> None:
    session = make_session()
    user = make_user(session)
    debit, credit = TransactionDirection.debit, TransactionDirection.credit
    add_txn(session, user, debit, 1_200, "Food", YESTERDAY)
    add_txn(session, user, debit, 800, "Travel", YESTERDAY)
    add_txn(session, user, debit, 300, "Food", TODAY)
    add_txn(session, user, credit, 5_000, "Salary", YESTERDAY)
    session.add_all(
        [
            Budget(user_id=user.id, category="Food", month="2025-11", limit_cents=11_500),
            Goal(user_id=user.id, name="Laptop", target_cents=1_000, current_cents=600),
            Goal(user_id=user.id, name="Trip", target_cents=1_000, current_cents=100),
        ]
    )
    session.commit()

    brief = daily_brief(session, user, TODAY)

    assert brief.data["type"] == "daily_brief"
    assert brief.title == "📊 Daily Brief — 20 Nov"
    stats = brief.data["stats"]
    assert stats["spent"] == 2_000
    assert stats["income"] == 5_000
    assert stats["top_categories"] == [
        {"category": "Food", "amount": 1_200},
        {"category": "Travel", "amount": 800},
    ]
    assert stats["budget_used"] == 20
    assert stats["goals_on_track"] == 1


def test_family_brief_for_joint_admin() -> None:
    session = make_session()
    admin = make_user(
        session, "Asha", role=UserRole.admin, family_type=FamilyType.joint
    )
    member = make_user(
        session, "Ravi", family_type=FamilyType.joint, linked_admin_id=admin.id
    )
    outsider = make_user(session, "Meera")
    debit = TransactionDirection.debit
    add_txn(session, admin, debit, 1_000, "Groceries", YESTERDAY, is_shared=True)
    add_txn(session, member, debit, 3_000, "Fuel", YESTERDAY)
    add_txn(session, outsider, debit, 9_000, "Rent", YESTERDAY)
    session.add(
        Goal(
            user_id=admin.id,
            name="Emergency fund",
            target_cents=10_000,
            current_cents=2_500,
            is_priority=True,
        )
    )
    session.commit()

    brief = daily_brief(session, admin, TODAY)

    assert brief.data["type"] == "family_brief"
    assert brief.title.startswith("👨‍👩‍👧‍👦 Family Brief")
    stats = brief.data["stats"]
    assert stats["total_spent"] == 4_000
    assert stats["shared_spent"] == 1_000
    assert stats["top_spender"]["name"] == "Ravi"
    assert [m["name"] for m in stats["per_member"]] == ["Ravi", "Asha"]
    assert stats["new_members"] == []
    assert stats["month_total"] == 4_000
    assert stats["shared_percentage"] == 25
    assert stats["goal_progress"] == [{"name": "Emergency fund", "percent": 25}]
    assert stats["goals_on_track"] == 0


def test_family_brief_without_spend_has_no_top_spender() -> None:
    session = make_session()
    admin = make_user(
        session, "Asha", role=UserRole.admin, family_type=FamilyType.joint
    )

    stats = daily_brief(session, admin, TODAY).data["stats"]
    assert stats["total_spent"] == 0
    assert stats["top_spender"] is None
    assert stats["shared_percentage"] == 0


def test_non_joint_admin_gets_personal_brief() -> None:
    session = make_session()
    admin = make_user(session, role=UserRole.admin, family_type=FamilyType.couple)

    assert daily_brief(session, admin, TODAY).data["type"] == "daily_brief"


def test_classify_usage_bands() -> None:
    assert classify_usage(7_499, 10_000) is None
    assert classify_usage(7_500, 10_000) == AlertLevel.warning
    assert classify_usage(8_999, 10_000) == AlertLevel.warning
    assert classify_usage(9_000, 10_000) == AlertLevel.critical
    assert classify_usage(12_000, 10_000) == AlertLevel.critical
    assert classify_usage(500, 0) is None


def test_budget_alert_at_92_percent_is_critical_only() -> None:
    session = make_session()
    user = make_user(session)
    session.add(
        Budget(
            user_id=user.id,
            category="Dining",
            month="2025-11",
            limit_cents=10_000,
            spent_cents=9_200,
        )
    )
    session.commit()

    alerts = budget_alerts(session, user, TODAY)
    assert len(alerts) == 1
    assert alerts[0].title == "🚨 Budget Alert"
    assert alerts[0].data["level"] == "critical"
    assert alerts[0].data["usage"] == 92
    assert "Dining" in alerts[0].body


def test_budget_alerts_only_for_current_month() -> None:
    session = make_session()
    user = make_user(session)
    rows = [
        ("Food", "2025-11", 10_000, 8_000),
        ("Fuel", "2025-11", 10_000, 1_000),
        ("Gifts", "2025-11", 0, 0),
        ("Rent", "2025-10", 10_000, 10_000),
    ]
    for category, month, limit, spent in rows:
        session.add(
            Budget(
                user_id=user.id,
                category=category,
                month=month,
                limit_cents=limit,
                spent_cents=spent,
            )
        )
    session.commit()

    alerts = budget_alerts(session, user, TODAY)
    assert [(a.data["category"], a.data["type"]) for a in alerts] == [
        ("Food", "budget_warning")
    ]
    assert alerts[0].title == "⚠️ Budget Warning"


def test_dues_reminders_cover_three_day_window() -> None:
    session = make_session()
    user = make_user(session)
    items = [
        (DueDirection.owed_to_me, "Ravi", date(2025, 11, 19), DueStatus.pending),
        (DueDirection.owed_to_me, "Ravi", date(2025, 11, 20), DueStatus.pending),
        (DueDirection.owed_by_me, "Landlord", date(2025, 11, 23), DueStatus.pending),
        (DueDirection.owed_by_me, "Landlord", date(2025, 11, 24), DueStatus.pending),
        (DueDirection.owed_to_me, "Meera", date(2025, 11, 21), DueStatus.settled),
    ]
    for direction, counterparty, due, status in items:
        session.add(
            DueItem(
                user_id=user.id,
                direction=direction,
                counterparty=counterparty,
                amount_cents=150_000,
                due_date=due,
                status=status,
            )
        )
    session.commit()

    reminders = dues_reminders(session, TODAY)
    assert [p.data["due_date"] for _, p in reminders] == ["2025-11-20", "2025-11-23"]
    assert all(uid == user.id for uid, _ in reminders)

    collect, pay = (p for _, p in reminders)
    assert collect.title == "💸 Money to Collect"
    assert collect.body.startswith("Ravi owes you")
    assert pay.title == "💰 Payment Due Soon"
    assert [a.action for a in pay.actions] == ["view", "settle"]
    assert pay.kind == "dues_reminder"


def test_format_amount() -> None:
    assert format_amount(150_000).endswith("1,500")
    assert format_amount(1_050).endswith("10.50")


def test_parse_time_of_day() -> None:
    assert parse_time_of_day("20:00") == time(20, 0)
    assert parse_time_of_day("7:05") == time(7, 5)
    assert parse_time_of_day(" 08:30 ") == time(8, 30)
    for bad in ("24:00", "12:60", "8pm", "", None, "20"):
        assert parse_time_of_day(bad) is None


def test_resolve_period() -> None:
    assert resolve_period("last_month", None, None, today=date(2026, 1, 15)).start == date(
        2025, 12, 1
    )
    everything = resolve_period(None, None, None, today=TODAY)
    assert everything.slug == "all"
    custom = resolve_period("custom", "2025-11-01", "2025-11-10", today=TODAY)
    assert (custom.start, custom.end) == (date(2025, 11, 1), date(2025, 11, 10))
    assert resolve_period("this_month", None, None, today=TODAY).end == date(2025, 11, 30)


def test_local_date_reads_naive_timestamps_as_utc(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "timezone", "Asia/Kolkata")
    assert local_date(datetime(2025, 11, 9, 18, 29)) == date(2025, 11, 9)
    assert local_date(datetime(2025, 11, 9, 18, 30)) == date(2025, 11, 10)


def test_new_member_counted_on_local_join_day(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "timezone", "Asia/Kolkata")
    session = make_session()
    admin = make_user(
        session, "Asha", role=UserRole.admin, family_type=FamilyType.joint
    )
    kid = make_user(
        session, "Kid", family_type=FamilyType.joint, linked_admin_id=admin.id
    )
    # 21:30 UTC on the 9th is 03:00 IST on the 10th.
    kid.created_at = datetime(2025, 11, 9, 21, 30)
    session.commit()

    brief = daily_brief(session, admin, date(2025, 11, 11))
    assert brief.data["stats"]["new_members"] == ["Kid"]
    brief = daily_brief(session, admin, date(2025, 11, 10))
    assert brief.data["stats"]["new_members"] == []
