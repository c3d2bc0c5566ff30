import threading
import time
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Budget, DueDirection, DueItem, User
from scheduler import SchedulerManager
from services import NotFound

TZ = ZoneInfo("Asia/Kolkata")


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def factory_for(session):
    @contextmanager
    def scope():
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise

    return scope


class RecordingDispatcher:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, user_id, payload):
        if user_id in self.fail_for:
            raise RuntimeError("push endpoint unavailable")
        self.sent.append((user_id, payload))


def make_user(session, name="Asha", **settings) -> User:
    user = User(name=name, settings=settings)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_manager(session, dispatcher=None) -> SchedulerManager:
    return SchedulerManager(
        session_factory=factory_for(session),
        dispatcher=dispatcher or RecordingDispatcher(),
    )


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=TZ)


def test_brief_fires_once_per_day_at_configured_hour() -> None:
    session = make_session()
    user = make_user(session, brief_time="20:00")
    dispatcher = RecordingDispatcher()
    manager = make_manager(session, dispatcher)
    day = date(2025, 11, 20)

    sent_by_hour = {hour: manager.run_daily_briefs(at(day, hour)) for hour in range(24)}
    assert sent_by_hour[20] == 1
    assert sum(sent_by_hour.values()) == 1

    assert manager.run_daily_briefs(at(day + timedelta(days=1), 20)) == 1
    assert [uid for uid, _ in dispatcher.sent] == [user.id, user.id]
    assert dispatcher.sent[0][1].data["type"] == "daily_brief"
    manager.stop()


def test_default_brief_time_applies_when_unset() -> None:
    session = make_session()
    make_user(session)
    manager = make_manager(session)
    day = date(2025, 11, 20)

    default_hour = int(manager.settings.default_brief_time.split(":")[0])
    assert manager.run_daily_briefs(at(day, default_hour)) == 1
    assert manager.run_daily_briefs(at(day, (default_hour + 1) % 24)) == 0
    manager.stop()


def test_invalid_brief_time_never_fires() -> None:
    session = make_session()
    make_user(session, "Broken", brief_time="25:99")
    healthy = make_user(session, "Healthy", brief_time="20:00")
    dispatcher = RecordingDispatcher()
    manager = make_manager(session, dispatcher)
    day = date(2025, 11, 20)

    total = sum(manager.run_daily_briefs(at(day, hour)) for hour in range(24))
    assert total == 1
    assert [uid for uid, _ in dispatcher.sent] == [healthy.id]
    manager.stop()


def test_disabled_brief_is_skipped() -> None:
    session = make_session()
    make_user(session, brief_time="20:00", daily_brief=False)
    manager = make_manager(session)

    assert manager.run_daily_briefs(at(date(2025, 11, 20), 20)) == 0
    manager.stop()


def test_dispatch_failure_does_not_stop_other_users() -> None:
    session = make_session()
    first = make_user(session, "Asha", brief_time="20:00")
    second = make_user(session, "Ravi", brief_time="20:00")
    dispatcher = RecordingDispatcher(fail_for=[first.id])
    manager = make_manager(session, dispatcher)

    assert manager.run_daily_briefs(at(date(2025, 11, 20), 20)) == 1
    assert [uid for uid, _ in dispatcher.sent] == [second.id]
    manager.stop()


def test_slow_dispatch_times_out(monkeypatch) -> None:
    class SlowDispatcher:
        def send(self, user_id, payload):
            time.sleep(0.5)

    session = make_session()
    make_user(session, brief_time="20:00")
    manager = make_manager(session, SlowDispatcher())
    monkeypatch.setattr(manager.settings, "dispatch_timeout_secs", 0.05)

    assert manager.run_daily_briefs(at(date(2025, 11, 20), 20)) == 0
    manager.stop()


def test_budget_alert_job_respects_preferences() -> None:
    session = make_session()
    alerted = make_user(session, "Asha")
    muted = make_user(session, "Ravi", budget_alerts=False)
    for user in (alerted, muted):
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
    dispatcher = RecordingDispatcher()
    manager = make_manager(session, dispatcher)

    assert manager.run_budget_alerts(at(date(2025, 11, 20), 12)) == 1
    (uid, payload), = dispatcher.sent
    assert uid == alerted.id
    assert payload.data["level"] == "critical"
    manager.stop()


def test_dues_reminder_job() -> None:
    session = make_session()
    reminded = make_user(session, "Asha")
    muted = make_user(session, "Ravi", dues_reminders=False)
    for user in (reminded, muted):
        session.add(
            DueItem(
                user_id=user.id,
                direction=DueDirection.owed_by_me,
                counterparty="Landlord",
                amount_cents=2_500_000,
                due_date=date(2025, 11, 22),
            )
        )
    session.commit()
    dispatcher = RecordingDispatcher()
    manager = make_manager(session, dispatcher)

    assert manager.run_dues_reminders(at(date(2025, 11, 20), 6)) == 1
    assert [uid for uid, _ in dispatcher.sent] == [reminded.id]
    assert manager.run_dues_reminders(at(date(2025, 11, 26), 6)) == 0
    manager.stop()


def test_manual_triggers_reuse_generation() -> None:
    session = make_session()
    user = make_user(session)
    session.add(
        Budget(
            user_id=user.id,
            category="Fuel",
            month="2025-11",
            limit_cents=4_000,
            spent_cents=3_100,
        )
    )
    session.commit()
    dispatcher = RecordingDispatcher()
    manager = make_manager(session, dispatcher)
    now = at(date(2025, 11, 20), 9, 30)

    brief = manager.trigger_daily_brief(user.id, now=now)
    alerts = manager.trigger_budget_alerts(user.id, now=now)

    assert brief.data["type"] == "daily_brief"
    assert [a.data["type"] for a in alerts] == ["budget_warning"]
    assert [p for _, p in dispatcher.sent] == [brief, *alerts]

    with pytest.raises(NotFound):
        manager.trigger_daily_brief(999, now=now)
    manager.stop()


def test_start_registers_jobs_and_stop_shuts_down() -> None:
    session = make_session()
    manager = make_manager(session)

    manager.start()
    try:
        job_ids = {job.id for job in manager.scheduler.get_jobs()}
        assert job_ids == {"daily_brief", "budget_alerts", "dues_reminders"}
        assert manager.scheduler.running
    finally:
        manager.stop()
    assert not manager.scheduler.running


def test_hung_delivery_does_not_starve_other_users(monkeypatch) -> None:
    release = threading.Event()

    class HangingDispatcher:
        def __init__(self, hang_for):
            self.hang_for = hang_for
            self.calls = []
            self.delivered = []

        def send(self, user_id, payload):
            self.calls.append(user_id)
            if user_id == self.hang_for:
                release.wait(5)
                return
            self.delivered.append(user_id)

    session = make_session()
    slow = make_user(session, "Slow")
    fast = make_user(session, "Fast")
    budgets = {slow: ["Dining", "Fuel", "Rent", "Travel"], fast: ["Dining"]}
    for user, categories in budgets.items():
        for category in categories:
            session.add(
                Budget(
                    user_id=user.id,
                    category=category,
                    month="2025-11",
                    limit_cents=10_000,
                    spent_cents=9_500,
                )
            )
    session.commit()
    dispatcher = HangingDispatcher(hang_for=slow.id)
    manager = make_manager(session, dispatcher)
    monkeypatch.setattr(manager.settings, "dispatch_timeout_secs", 0.2)

    try:
        assert manager.run_budget_alerts(at(date(2025, 11, 20), 12)) == 1
        assert dispatcher.delivered == [fast.id]
        # The remaining alerts for the hung user are skipped, not queued.
        assert dispatcher.calls.count(slow.id) == 1

        assert manager.run_budget_alerts(at(date(2025, 11, 21), 12)) == 1
        assert dispatcher.delivered == [fast.id, fast.id]
    finally:
        release.set()
        manager.stop()
