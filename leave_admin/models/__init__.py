# Models package
# Importing modules here ensures they are registered with SQLAlchemy Base
from . import (
    department, employee,
    leave_type, leave_balance, ledger_entry, leave_request,
    audit_log, notification
)

# Explicit class exports for cleaner imports
from .department import Department
from .employee import Employee, EmployeeRole, EmploymentType
from .leave_type import LeaveType, LeaveCategory, AccrualMethod, AccrualFrequency, DayCounting
from .leave_balance import EmployeeLeaveBalance
from .ledger_entry import AccrualLedgerEntry, LedgerEntryKind
from .leave_request import (
    LeaveRequest, ApprovalStep, LeaveStatus, DayPeriod, LeavePriority, ApprovalRole, StepDecision
)
from .audit_log import AuditLog
from .notification import Notification

__all__ = [
    "Department",
    "Employee",
    "EmployeeRole",
    "EmploymentType",
    "LeaveType",
    "LeaveCategory",
    "AccrualMethod",
    "AccrualFrequency",
    "DayCounting",
    "EmployeeLeaveBalance",
    "AccrualLedgerEntry",
    "LedgerEntryKind",
    "LeaveRequest",
    "ApprovalStep",
    "LeaveStatus",
    "DayPeriod",
    "LeavePriority",
    "ApprovalRole",
    "StepDecision",
    "AuditLog",
    "Notification",
]
