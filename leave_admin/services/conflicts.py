"""
Conflict Detector

Read-only team coverage analysis. For each day of a candidate range it works out
which share of a department is already on approved leave and grades it against
the configured thresholds. It also flags blackout periods and minimum-gap
clashes. The report is advisory: the lifecycle decides what blocks.
"""
import enum
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from leave_admin.core.config import settings
from leave_admin.models.employee import Employee
from leave_admin.models.leave_request import LeaveRequest, LeaveStatus
from leave_admin.schemas.policy import LeavePolicy
from leave_admin.services.directory import EmployeeDirectory
from leave_admin.services.periods import daterange

logger = logging.getLogger(__name__)


class ConflictSeverity(str, enum.Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {ConflictSeverity.HEALTHY: 0, ConflictSeverity.WARNING: 1, ConflictSeverity.CRITICAL: 2}


class ConflictKind(str, enum.Enum):
    COVERAGE = "coverage"
    BLACKOUT = "blackout"
    MINIMUM_GAP = "minimum_gap"


class ConflictFinding(BaseModel):
    kind: ConflictKind
    severity: ConflictSeverity
    message: str
    day: Optional[date] = None
    employee_ids: List[int] = Field(default_factory=list)


class DayCoverage(BaseModel):
    day: date
    absent_employee_ids: List[int]
    team_size: int
    ratio: float
    severity: ConflictSeverity


class ConflictReport(BaseModel):
    department_id: Optional[int] = None
    start: date
    end: date
    team_size: int = 0
    severity: ConflictSeverity = ConflictSeverity.HEALTHY
    days: List[DayCoverage] = Field(default_factory=list)
    findings: List[ConflictFinding] = Field(default_factory=list)

    def of_kind(self, kind: ConflictKind) -> List[ConflictFinding]:
        return [f for f in self.findings if f.kind == kind]

    @property
    def blackout_findings(self) -> List[ConflictFinding]:
        return self.of_kind(ConflictKind.BLACKOUT)

    @property
    def critical_coverage(self) -> List[ConflictFinding]:
        return [f for f in self.of_kind(ConflictKind.COVERAGE) if f.severity == ConflictSeverity.CRITICAL]

    @property
    def is_critical(self) -> bool:
        return self.severity == ConflictSeverity.CRITICAL


class CalendarEntry(BaseModel):
    request_id: int
    employee_id: int
    full_name: str
    leave_type_code: str
    start_date: date
    end_date: date
    total_days: float
    status: str


def severity_for(ratio: float) -> ConflictSeverity:
    if ratio < settings.conflicts.warning_threshold:
        return ConflictSeverity.HEALTHY
    if ratio <= settings.conflicts.critical_threshold:
        return ConflictSeverity.WARNING
    return ConflictSeverity.CRITICAL


def _worst(severities) -> ConflictSeverity:
    return max(severities, key=lambda s: s.rank, default=ConflictSeverity.HEALTHY)


class ConflictDetector:
    def __init__(self, db: Session, directory: Optional[EmployeeDirectory] = None):
        self.db = db
        self.directory = directory or EmployeeDirectory(db)

    def _requests_overlapping(
        self,
        employee_ids: List[int],
        start: date,
        end: date,
        statuses: List[str],
        excluding_request_id: Optional[int] = None
    ) -> List[LeaveRequest]:
        if not employee_ids:
            return []
        query = self.db.query(LeaveRequest).filter(
            LeaveRequest.employee_id.in_(employee_ids),
            LeaveRequest.status.in_(statuses),
            LeaveRequest.start_date <= end,
            LeaveRequest.end_date >= start
        )
        if excluding_request_id is not None:
            query = query.filter(LeaveRequest.id != excluding_request_id)
        return query.order_by(LeaveRequest.start_date).all()

    def analyze(
        self,
        department_id: Optional[int],
        start: date,
        end: date,
        employee_id: Optional[int] = None,
        policy: Optional[LeavePolicy] = None,
        excluding_request_id: Optional[int] = None
    ) -> ConflictReport:
        """
        Grade team coverage over [start, end].

        When employee_id is given that employee counts as absent on every day
        too, so the ratio describes the team as it would be if the request went
        through. An employee with no colleagues (alone in the department, or
        no department) is never graded above healthy. Days the policy does not
        charge (weekends, holidays) are left out of the coverage grid.
        """
        members = self.directory.department_member_ids(department_id) if department_id is not None else []
        if employee_id is not None and employee_id not in members:
            members.append(employee_id)
        team_size = len(members)
        # Without colleagues there is no coverage to lose
        graded = employee_id is None or team_size > 1

        approved = self._requests_overlapping(
            members, start, end, [LeaveStatus.APPROVED.value], excluding_request_id
        )
        absent_by_day: Dict[date, Set[int]] = {}
        for request in approved:
            for day in daterange(max(request.start_date, start), min(request.end_date, end)):
                absent_by_day.setdefault(day, set()).add(request.employee_id)

        days = []
        findings = []
        for day in daterange(start, end):
            if policy is not None and not policy.counts_day(day):
                continue
            absent = set(absent_by_day.get(day, set()))
            if employee_id is not None:
                absent.add(employee_id)
            ratio = len(absent) / team_size if graded and team_size else 0.0
            severity = severity_for(ratio)
            days.append(DayCoverage(
                day=day,
                absent_employee_ids=sorted(absent),
                team_size=team_size,
                ratio=round(ratio, 4),
                severity=severity,
            ))
            if severity != ConflictSeverity.HEALTHY:
                findings.append(ConflictFinding(
                    kind=ConflictKind.COVERAGE,
                    severity=severity,
                    message=f"{len(absent)} of {team_size} team members away on {day.isoformat()}",
                    day=day,
                    employee_ids=sorted(absent),
                ))

        if policy is not None:
            for blackout in policy.blackouts_overlapping(start, end):
                findings.append(ConflictFinding(
                    kind=ConflictKind.BLACKOUT,
                    severity=ConflictSeverity.CRITICAL,
                    message=f"Overlaps blackout '{blackout.name}' ({blackout.start.isoformat()} to {blackout.end.isoformat()})",
                    day=max(blackout.start, start),
                ))
            if employee_id is not None and policy.min_gap_days:
                findings.extend(self._gap_findings(employee_id, start, end, policy, excluding_request_id))

        report = ConflictReport(
            department_id=department_id,
            start=start,
            end=end,
            team_size=team_size,
            severity=_worst(f.severity for f in findings),
            days=days,
            findings=findings,
        )
        if report.severity != ConflictSeverity.HEALTHY:
            logger.info(
                f"Conflict analysis for department {department_id} {start}..{end}: {report.severity.value}",
                extra={"findings": len(findings)}
            )
        return report

    def _gap_findings(
        self,
        employee_id: int,
        start: date,
        end: date,
        policy: LeavePolicy,
        excluding_request_id: Optional[int]
    ) -> List[ConflictFinding]:
        window = timedelta(days=policy.min_gap_days)
        nearby = self.db.query(LeaveRequest).filter(
            LeaveRequest.employee_id == employee_id,
            LeaveRequest.leave_type_code == policy.code,
            LeaveRequest.status == LeaveStatus.APPROVED.value,
            LeaveRequest.start_date <= end + window,
            LeaveRequest.end_date >= start - window
        )
        if excluding_request_id is not None:
            nearby = nearby.filter(LeaveRequest.id != excluding_request_id)
        return [
            ConflictFinding(
                kind=ConflictKind.MINIMUM_GAP,
                severity=ConflictSeverity.WARNING,
                message=(
                    f"Within {policy.min_gap_days} days of approved {policy.code} leave "
                    f"{other.start_date.isoformat()} to {other.end_date.isoformat()}"
                ),
                day=other.start_date,
                employee_ids=[employee_id],
            )
            for other in nearby.all()
        ]

    def team_calendar(self, department_id: int, start: date, end: date) -> List[CalendarEntry]:
        """Approved and pending leave of a department that touches [start, end]."""
        members = self.directory.department_member_ids(department_id)
        requests = self._requests_overlapping(
            members, start, end, [LeaveStatus.APPROVED.value, LeaveStatus.PENDING.value]
        )
        names = {
            row.id: row.full_name
            for row in self.db.query(Employee.id, Employee.full_name).filter(Employee.id.in_(members)).all()
        } if members else {}
        return [
            CalendarEntry(
                request_id=r.id,
                employee_id=r.employee_id,
                full_name=names.get(r.employee_id, "Unknown"),
                leave_type_code=r.leave_type_code,
                start_date=r.start_date,
                end_date=r.end_date,
                total_days=float(r.total_days),
                status=r.status,
            )
            for r in requests
        ]
