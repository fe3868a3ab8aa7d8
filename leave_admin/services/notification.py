"""
Notification dispatch for leave lifecycle events.

The lifecycle hands events over only after its transaction commits and never
waits for delivery. A failed delivery is logged and dropped.
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from leave_admin.models.notification import Notification

logger = logging.getLogger(__name__)


class LeaveEvent(BaseModel):
    event: str  # "submitted", "approved", "step_approved", "rejected", "cancelled", "escalated"
    request_id: int
    employee_id: int
    recipient_ids: List[int] = Field(default_factory=list)
    leave_type_code: str
    start_date: date
    end_date: date
    total_days: float
    status: str
    actor_id: Optional[int] = None
    comment: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


_TITLES = {
    "submitted": ("Leave Request Submitted", "info"),
    "awaiting_approval": ("Leave Awaiting Your Approval", "info"),
    "step_approved": ("Leave Update", "info"),
    "approved": ("Leave Approved", "success"),
    "rejected": ("Leave Rejected", "error"),
    "cancelled": ("Leave Cancelled", "warning"),
    "escalated": ("Leave Approval Escalated", "warning"),
}


def render(event: LeaveEvent):
    title, kind = _TITLES.get(event.event, ("Leave Update", "info"))
    message = (
        f"{event.leave_type_code} leave {event.start_date.isoformat()} to {event.end_date.isoformat()} "
        f"({event.total_days:g} days) is now {event.status}."
    )
    if event.comment:
        message += f" Note: {event.comment}"
    return title, message, kind


class NotificationDispatcher:
    """Interface. `dispatch` must return quickly and must not raise."""

    def dispatch(self, event: LeaveEvent) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


class NullNotificationDispatcher(NotificationDispatcher):
    def dispatch(self, event: LeaveEvent) -> None:
        logger.debug(f"Dropping leave event {event.event} for request {event.request_id}")


class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps events in memory. Used by scripts and tests that inspect what was sent."""

    def __init__(self):
        self.events: List[LeaveEvent] = []

    def dispatch(self, event: LeaveEvent) -> None:
        self.events.append(event)


class DatabaseNotificationDispatcher(NotificationDispatcher):
    """Writes in-app Notification rows on a worker thread with its own session."""

    def __init__(self, session_factory: Callable[[], Session], max_workers: int = 2):
        self.session_factory = session_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="leave-notify")

    def dispatch(self, event: LeaveEvent) -> None:
        try:
            future = self._executor.submit(self._deliver, event)
        except RuntimeError as e:
            logger.warning(f"Notification dispatcher is shut down, dropping {event.event}: {e}")
            return
        future.add_done_callback(self._log_failure)

    def _deliver(self, event: LeaveEvent) -> int:
        title, message, kind = render(event)
        recipients = event.recipient_ids or [event.employee_id]
        with self.session_factory() as db:
            for recipient_id in recipients:
                db.add(Notification(
                    recipient_id=recipient_id,
                    leave_request_id=event.request_id,
                    event=event.event,
                    severity=kind,
                    title=title,
                    message=message,
                ))
            db.commit()
        return len(recipients)

    @staticmethod
    def _log_failure(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.warning(f"Notification delivery failed: {error}", exc_info=error)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
