"""
Accrual Scheduler

Periodic job that posts due accruals for every (active employee, active leave
type) pair, expires lapsed carry-forward and rolls balances over at the policy
year boundary. Each pair is processed in its own ledger transaction so one bad
pair never blocks the rest; failures are collected in the run summary.
"""
import asyncio
import logging
import uuid
from datetime import date
from typing import Callable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from leave_admin.core.config import settings
from leave_admin.core.exceptions import AlreadyPostedError
from leave_admin.models.leave_balance import EmployeeLeaveBalance
from leave_admin.schemas.policy import LeavePolicy
from leave_admin.services.base import BaseService
from leave_admin.services.directory import EmployeeDirectory
from leave_admin.services.leave_workflow import LeaveWorkflowService
from leave_admin.services.ledger import BalanceLedger
from leave_admin.services.notification import NotificationDispatcher
from leave_admin.services.policy_store import PolicyStore

logger = logging.getLogger(__name__)

# Upper bound on missed periods caught up for one pair in a single run
MAX_CATCH_UP_PERIODS = 400


class AccrualFailure(BaseModel):
    employee_id: int
    leave_type_code: str
    error: str


class AccrualRunSummary(BaseModel):
    run_id: str
    as_of: date
    posted: int = 0
    skipped: int = 0
    failed: int = 0
    expired: int = 0
    errors: List[AccrualFailure] = Field(default_factory=list)


class CarryForwardRunSummary(BaseModel):
    run_id: str
    as_of: date
    rolled_over: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[AccrualFailure] = Field(default_factory=list)


class AccrualScheduler(BaseService):
    def __init__(
        self,
        db: Session,
        policies: Optional[PolicyStore] = None,
        directory: Optional[EmployeeDirectory] = None,
        ledger: Optional[BalanceLedger] = None
    ):
        super().__init__(db)
        self.policies = policies or PolicyStore(db)
        self.directory = directory or EmployeeDirectory(db)
        self.ledger = ledger or BalanceLedger(db, policies=self.policies, directory=self.directory)

    def _record_failure(self, summary, employee_id: int, code: str, error: Exception):
        self.db.rollback()
        summary.failed += 1
        summary.errors.append(AccrualFailure(employee_id=employee_id, leave_type_code=code, error=str(error)))
        self._logger.error(
            f"Accrual run {summary.run_id} failed for employee {employee_id} {code}: {error}",
            exc_info=True
        )

    def _accrue_pair(self, employee_id: int, policy: LeavePolicy, as_of: date, summary: AccrualRunSummary):
        employee = self.directory.get(employee_id)
        if not self.policies.is_eligible(employee, policy, as_of):
            summary.skipped += 1
            return
        if policy.accrual_rate == 0 and policy.tenure_bonus_per_year == 0:
            return

        balance = self.ledger.ensure_balance(employee_id, policy.id, as_of=as_of)
        for _ in range(MAX_CATCH_UP_PERIODS):
            due = balance.next_accrual_date
            if due is None or due > as_of:
                break
            try:
                self.ledger.post_accrual(employee_id, policy.id, due, source_ref=f"accrual-run:{summary.run_id}")
                summary.posted += 1
            except AlreadyPostedError:
                self.ledger.advance_accrual_date(employee_id, policy.id, due)
                summary.skipped += 1
            balance = self.ledger.find_balance(employee_id, policy.code)

    def run_accrual_cycle(self, as_of: Optional[date] = None) -> AccrualRunSummary:
        as_of = as_of or date.today()
        summary = AccrualRunSummary(run_id=uuid.uuid4().hex, as_of=as_of)
        policies = self.policies.list_active(skip_invalid=True)
        employee_ids = self.directory.active_employee_ids()
        self.log_info(
            f"Accrual run {summary.run_id} as of {as_of}: {len(employee_ids)} employees, {len(policies)} leave types"
        )

        for policy in policies:
            for employee_id in employee_ids:
                try:
                    self._accrue_pair(employee_id, policy, as_of, summary)
                except Exception as e:
                    self._record_failure(summary, employee_id, policy.code, e)

        self._expire_carry_forward(as_of, summary)
        self.log_info(
            f"Accrual run {summary.run_id} finished",
            posted=summary.posted, skipped=summary.skipped, failed=summary.failed, expired=summary.expired
        )
        return summary

    def _expire_carry_forward(self, as_of: date, summary: AccrualRunSummary):
        due = self.db.query(EmployeeLeaveBalance).filter(
            EmployeeLeaveBalance.carry_forward_expires_on.isnot(None),
            EmployeeLeaveBalance.carry_forward_expires_on <= as_of
        ).all()
        for balance in due:
            try:
                if self.ledger.expire_carry_forward(balance.employee_id, balance.leave_type_id, as_of):
                    summary.expired += 1
            except Exception as e:
                self._record_failure(summary, balance.employee_id, balance.leave_type_code, e)

    def run_carry_forward(self, as_of: Optional[date] = None) -> CarryForwardRunSummary:
        """Roll every balance still in an earlier policy year into as_of's year."""
        as_of = as_of or date.today()
        summary = CarryForwardRunSummary(run_id=uuid.uuid4().hex, as_of=as_of)
        balances = self.db.query(EmployeeLeaveBalance).filter(
            EmployeeLeaveBalance.policy_year < as_of.year
        ).order_by(EmployeeLeaveBalance.id).all()

        for balance in balances:
            try:
                policy = self.policies.get_active_by_code(balance.leave_type_code)
                entries = self.ledger.apply_carry_forward(balance.employee_id, policy.id, as_of)
                if entries:
                    summary.rolled_over += 1
                else:
                    summary.skipped += 1
            except Exception as e:
                self._record_failure(summary, balance.employee_id, balance.leave_type_code, e)

        self.log_info(
            f"Carry-forward run {summary.run_id} for {as_of.year} finished",
            rolled_over=summary.rolled_over, skipped=summary.skipped, failed=summary.failed
        )
        return summary


def run_scheduled_jobs(
    session_factory: Callable[[], Session],
    as_of: Optional[date] = None,
    notifier: Optional[NotificationDispatcher] = None
) -> dict:
    """One pass of every periodic leave job, each with a fresh session."""
    as_of = as_of or date.today()
    with session_factory() as db:
        scheduler = AccrualScheduler(db)
        rollover = scheduler.run_carry_forward(as_of)
        accrual = scheduler.run_accrual_cycle(as_of)
    with session_factory() as db:
        escalated = LeaveWorkflowService(db, notifier=notifier).escalate_overdue()
    return {
        "carry_forward": rollover.model_dump(mode="json"),
        "accrual": accrual.model_dump(mode="json"),
        "escalated": [r.id for r in escalated],
    }


async def accrual_loop(
    session_factory: Callable[[], Session],
    interval_seconds: Optional[int] = None,
    notifier: Optional[NotificationDispatcher] = None
):
    """Background task started from the application lifespan."""
    interval = interval_seconds or settings.scheduler.interval_seconds
    logger.info(f"Accrual scheduler started, interval {interval}s")
    while True:
        try:
            result = await asyncio.to_thread(run_scheduled_jobs, session_factory, None, notifier)
            logger.info(
                "Scheduled leave jobs completed",
                extra={
                    "posted": result["accrual"]["posted"],
                    "failed": result["accrual"]["failed"] + result["carry_forward"]["failed"],
                    "escalated": len(result["escalated"]),
                }
            )
        except Exception as e:
            logger.error(f"Scheduled leave jobs crashed: {e}", exc_info=True)
        await asyncio.sleep(interval)
