import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from insights import budget_alerts, daily_brief, dues_reminders
from models import User
from notifications import Dispatcher, SessionFactory, build_dispatcher
from periods import parse_time_of_day
from schemas import NotificationPayload, UserScheduleConfig
from services import UserService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Runs the three insight jobs on their own cadences.

    Each job scans every user, generates payloads with the functions in
    ``insights`` and hands them to the dispatcher. Failures are contained per
    user; a slow dispatcher is cut off after ``dispatch_timeout_secs``.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        dispatcher: Optional[Dispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = get_settings()
        self.tz = ZoneInfo(self.settings.timezone)
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)
        self.session_factory = session_factory or session_scope
        self.dispatcher = dispatcher or build_dispatcher()
        self.clock = clock or (lambda: datetime.now(self.tz))
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=4, thread_name_prefix="dispatch"
                )
            return self._executor

    def _retire_executor(self, executor: ThreadPoolExecutor) -> None:
        # The hung worker keeps running; later dispatches go to a fresh pool.
        with self._executor_lock:
            if self._executor is executor:
                self._executor = None
        executor.shutdown(wait=False)

    def _dispatch(
        self,
        user_id: int,
        payload: NotificationPayload,
        stalled: Optional[set[int]] = None,
    ) -> bool:
        """Send one payload, waiting at most ``dispatch_timeout_secs``.

        A user whose delivery times out is added to ``stalled`` and skipped for
        the rest of the run, so one hung channel holds at most one worker.
        """
        if stalled is not None and user_id in stalled:
            logger.warning(
                f"dispatch_skipped: user={user_id} kind={payload.kind} reason=stalled"
            )
            return False
        executor = self._ensure_executor()
        future = executor.submit(self.dispatcher.send, user_id, payload)
        try:
            future.result(timeout=self.settings.dispatch_timeout_secs)
        except FuturesTimeout:
            logger.error(f"dispatch_timeout: user={user_id} kind={payload.kind}")
            if stalled is not None:
                stalled.add(user_id)
            self._retire_executor(executor)
            return False
        except Exception as exc:
            logger.error(f"dispatch_failed: user={user_id} kind={payload.kind} error={exc!r}")
            return False
        return True

    @staticmethod
    def brief_due(user: User, config: UserScheduleConfig, now: datetime) -> bool:
        # Minutes are ignored so the brief fires once within the configured hour.
        brief_at = parse_time_of_day(config.brief_time)
        if brief_at is None:
            logger.warning(
                f"invalid_brief_time: user={user.id} value={config.brief_time!r}"
            )
            return False
        return brief_at.hour == now.hour

    def run_daily_briefs(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        sent = 0
        stalled: set[int] = set()
        with self.session_factory() as session:
            users = UserService(session)
            for user in users.list_all():
                try:
                    config = users.schedule_config(user)
                    if not config.daily_brief or not self.brief_due(user, config, now):
                        continue
                    payload = daily_brief(session, user, now.date())
                except Exception:
                    session.rollback()
                    logger.exception(f"daily_brief_failed: user={user.id}")
                    continue
                if self._dispatch(user.id, payload, stalled):
                    sent += 1
        logger.info(f"scheduler_run: job=daily_brief hour={now.hour} sent={sent}")
        return sent

    def run_budget_alerts(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        sent = 0
        stalled: set[int] = set()
        with self.session_factory() as session:
            users = UserService(session)
            for user in users.list_all():
                try:
                    if not users.schedule_config(user).budget_alerts:
                        continue
                    alerts = budget_alerts(session, user, now.date())
                except Exception:
                    session.rollback()
                    logger.exception(f"budget_alerts_failed: user={user.id}")
                    continue
                for alert in alerts:
                    if self._dispatch(user.id, alert, stalled):
                        sent += 1
        logger.info(f"scheduler_run: job=budget_alerts sent={sent}")
        return sent

    def run_dues_reminders(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        sent = 0
        stalled: set[int] = set()
        with self.session_factory() as session:
            users = UserService(session)
            enabled: dict[int, bool] = {}
            for user_id, reminder in dues_reminders(session, now.date()):
                if user_id not in enabled:
                    try:
                        config = users.schedule_config(users.get(user_id))
                        enabled[user_id] = config.dues_reminders
                    except Exception:
                        session.rollback()
                        logger.exception(f"dues_reminder_failed: user={user_id}")
                        enabled[user_id] = False
                if enabled[user_id] and self._dispatch(user_id, reminder, stalled):
                    sent += 1
        logger.info(f"scheduler_run: job=dues_reminders sent={sent}")
        return sent

    def trigger_daily_brief(
        self, user_id: int, now: Optional[datetime] = None
    ) -> NotificationPayload:
        now = now or self.clock()
        with self.session_factory() as session:
            user = UserService(session).get(user_id)
            payload = daily_brief(session, user, now.date())
        self._dispatch(user_id, payload)
        return payload

    def trigger_budget_alerts(
        self, user_id: int, now: Optional[datetime] = None
    ) -> list[NotificationPayload]:
        now = now or self.clock()
        with self.session_factory() as session:
            user = UserService(session).get(user_id)
            alerts = budget_alerts(session, user, now.date())
        stalled: set[int] = set()
        for alert in alerts:
            self._dispatch(user_id, alert, stalled)
        return alerts

    def _run_job(self, name: str, job: Callable[[], int]) -> None:
        try:
            job()
        except Exception:
            logger.exception(f"scheduler_job_failed: job={name}")

    def start(self) -> None:
        jobs = [
            ("daily_brief", self.run_daily_briefs, CronTrigger(minute=0)),
            ("budget_alerts", self.run_budget_alerts, CronTrigger(hour=12, minute=0)),
            ("dues_reminders", self.run_dues_reminders, CronTrigger(hour="*/6", minute=0)),
        ]
        for job_id, job, trigger in jobs:
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=[job_id, job],
                id=job_id,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
                misfire_grace_time=300,
            )

        self.scheduler.start()
        logger.info("Scheduler started: hourly briefs, daily 12:00 budget alerts, 6-hourly dues")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
