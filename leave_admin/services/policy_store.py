"""
Policy Store

Read-only access to versioned leave type definitions plus the pure policy
functions built on them: eligibility evaluation and chargeable-day counting.
Nothing here writes to the database.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from leave_admin.core.exceptions import NotFoundError, PolicyDefinitionError, ValidationError
from leave_admin.models.leave_request import DayPeriod
from leave_admin.models.leave_type import LeaveType
from leave_admin.schemas.policy import EmployeeProfile, LeavePolicy
from leave_admin.services.periods import daterange

logger = logging.getLogger(__name__)

HALF_DAY = Decimal("0.5")


def to_policy(row: LeaveType) -> LeavePolicy:
    try:
        return LeavePolicy.from_model(row)
    except PydanticValidationError as e:
        logger.error(f"Invalid leave type definition {row.code} v{row.version}: {e}")
        raise PolicyDefinitionError(
            f"Leave type {row.code} v{row.version} has an invalid definition",
            details={"errors": [err["msg"] for err in e.errors()]}
        )


def eligibility_failures(employee: EmployeeProfile, policy: LeavePolicy, as_of: Optional[date] = None) -> List[str]:
    """Evaluate every eligibility rule and collect the failure messages."""
    as_of = as_of or date.today()
    failures = []
    if not employee.is_active:
        failures.append("Employee is not active")
    for rule in policy.eligibility_rules:
        reason = rule.failure_reason(employee, as_of)
        if reason:
            failures.append(reason)
    return failures


def count_chargeable_days(
    start: date,
    end: date,
    policy: LeavePolicy,
    start_period: DayPeriod = DayPeriod.FULL,
    end_period: DayPeriod = DayPeriod.FULL
) -> Decimal:
    """
    Days a request consumes. The range is inclusive; non-chargeable days
    (weekends and holidays for business-day policies) are skipped, and a half
    period on the first or last day charges that day as 0.5.
    """
    if end < start:
        raise ValidationError("End date cannot be before start date")
    start_period = DayPeriod(start_period)
    end_period = DayPeriod(end_period)
    if not policy.allow_half_day and DayPeriod.HALF in (start_period, end_period):
        raise ValidationError(f"{policy.name} cannot be taken in half days")

    total = Decimal("0")
    for day in daterange(start, end):
        if not policy.counts_day(day):
            continue
        is_half = (day == start and start_period == DayPeriod.HALF) or (day == end and end_period == DayPeriod.HALF)
        total += HALF_DAY if is_half else Decimal("1")
    return total


class PolicyStore:
    def __init__(self, db: Session):
        self.db = db

    def get_leave_type(self, leave_type_id: int) -> LeavePolicy:
        row = self.db.get(LeaveType, leave_type_id)
        if not row:
            raise NotFoundError("LeaveType", leave_type_id)
        return to_policy(row)

    def get_active_by_code(self, code: str) -> LeavePolicy:
        row = self.db.query(LeaveType).filter(
            LeaveType.code == code,
            LeaveType.is_active.is_(True)
        ).order_by(LeaveType.version.desc()).first()
        if not row:
            raise NotFoundError("LeaveType", code)
        return to_policy(row)

    def list_active(self, skip_invalid: bool = False) -> List[LeavePolicy]:
        """Latest active version of every leave type code."""
        rows = self.db.query(LeaveType).filter(LeaveType.is_active.is_(True)).order_by(
            LeaveType.code, LeaveType.version.desc()
        ).all()
        latest = {}
        for row in rows:
            latest.setdefault(row.code, row)
        policies = []
        for row in latest.values():
            try:
                policies.append(to_policy(row))
            except PolicyDefinitionError:
                if not skip_invalid:
                    raise
        return policies

    def is_eligible(self, employee: EmployeeProfile, policy: LeavePolicy, as_of: Optional[date] = None) -> bool:
        return not eligibility_failures(employee, policy, as_of)

    def explain_eligibility(self, employee: EmployeeProfile, policy: LeavePolicy, as_of: Optional[date] = None) -> List[str]:
        return eligibility_failures(employee, policy, as_of)

    def count_chargeable_days(
        self,
        start: date,
        end: date,
        policy: LeavePolicy,
        start_period: DayPeriod = DayPeriod.FULL,
        end_period: DayPeriod = DayPeriod.FULL
    ) -> Decimal:
        return count_chargeable_days(start, end, policy, start_period, end_period)
