import logging
from contextlib import AbstractContextManager
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from models import Notification
from schemas import NotificationPayload

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


class DispatchFailure(RuntimeError):
    pass


class Dispatcher(Protocol):
    def send(self, user_id: int, payload: NotificationPayload) -> None: ...


class LoggingDispatcher:
    """Writes notifications to the log only. Useful when no delivery channel exists."""

    def send(self, user_id: int, payload: NotificationPayload) -> None:
        logger.info(f"notification: user={user_id} kind={payload.kind} title={payload.title!r}")


class InAppDispatcher:
    """Stores notifications for in-app retrieval.

    Push delivery (FCM/APNs/web-push) would hang off the same interface; this one
    only persists the payload so clients can poll ``/api/notifications``.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self.session_factory = session_factory or session_scope

    def send(self, user_id: int, payload: NotificationPayload) -> None:
        dumped = payload.model_dump(mode="json")
        data = dumped["data"]
        if dumped["actions"]:
            data["actions"] = dumped["actions"]
        try:
            with self.session_factory() as session:
                session.add(
                    Notification(
                        user_id=user_id,
                        kind=payload.kind,
                        title=payload.title,
                        body=payload.body,
                        icon=payload.icon,
                        data=data,
                    )
                )
        except SQLAlchemyError as exc:
            raise DispatchFailure(f"Could not store notification for user {user_id}") from exc
        logger.info(f"notification_stored: user={user_id} kind={payload.kind}")


def build_dispatcher(name: Optional[str] = None) -> Dispatcher:
    name = (name or get_settings().dispatcher).lower()
    if name == "log":
        return LoggingDispatcher()
    if name == "inapp":
        return InAppDispatcher()
    raise ValueError(f"Unsupported dispatcher: {name}")
