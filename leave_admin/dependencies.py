"""
FastAPI dependency providers for the leave services.

Each request gets services bound to its own session. The notification
dispatcher is process-wide and lives on app.state (set up in the lifespan).
"""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from leave_admin.database import get_db
from leave_admin.services.accrual_scheduler import AccrualScheduler
from leave_admin.services.conflicts import ConflictDetector
from leave_admin.services.leave_workflow import LeaveWorkflowService
from leave_admin.services.ledger import BalanceLedger
from leave_admin.services.notification import NotificationDispatcher, NullNotificationDispatcher
from leave_admin.services.policy_store import PolicyStore


def get_notifier(request: Request) -> NotificationDispatcher:
    return getattr(request.app.state, "notifier", None) or NullNotificationDispatcher()


def get_policy_store(db: Session = Depends(get_db)) -> PolicyStore:
    return PolicyStore(db)


def get_ledger(db: Session = Depends(get_db)) -> BalanceLedger:
    return BalanceLedger(db)


def get_conflict_detector(db: Session = Depends(get_db)) -> ConflictDetector:
    return ConflictDetector(db)


def get_workflow(
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier)
) -> LeaveWorkflowService:
    return LeaveWorkflowService(db, notifier=notifier)


def get_accrual_scheduler(db: Session = Depends(get_db)) -> AccrualScheduler:
    return AccrualScheduler(db)
