from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from leave_admin.models.leave_request import DayPeriod, LeavePriority


class LeaveRequestCreate(BaseModel):
    employee_id: int
    # Either the exact policy version or the code of the active one
    leave_type_id: Optional[int] = None
    leave_type_code: Optional[str] = None
    start_date: date
    end_date: date
    start_period: DayPeriod = DayPeriod.FULL
    end_period: DayPeriod = DayPeriod.FULL
    reason: Optional[str] = Field(default=None, max_length=1000)
    is_emergency: bool = False
    priority: LeavePriority = LeavePriority.NORMAL
    override_conflict: bool = False
    actor_id: Optional[int] = None  # who is submitting, when not the employee
    save_as_draft: bool = False

    @model_validator(mode="after")
    def _leave_type_given(self):
        if self.leave_type_id is None and not self.leave_type_code:
            raise ValueError("leave_type_id or leave_type_code is required")
        return self


class DraftSubmit(BaseModel):
    actor_id: Optional[int] = None
    override_conflict: bool = False


class LeaveDecision(BaseModel):
    approver_id: int
    comment: Optional[str] = None
    override_conflict: bool = False


class LeaveRejection(BaseModel):
    approver_id: int
    reason: str = Field(min_length=1)


class LeaveCancellation(BaseModel):
    actor_id: int
    reason: Optional[str] = None


class CertificateReceipt(BaseModel):
    actor_id: Optional[int] = None


class ApprovalStepResponse(BaseModel):
    step_index: int
    role: str
    approver_id: Optional[int] = None
    decision: str
    decided_by: Optional[int] = None
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class LeaveRequestResponse(BaseModel):
    id: int
    employee_id: int
    leave_type_id: int
    leave_type_code: str
    start_date: date
    end_date: date
    start_period: str
    end_period: str
    total_days: float
    reason: Optional[str] = None
    is_emergency: bool
    priority: str
    status: str
    current_step: int
    current_approver_id: Optional[int] = None
    escalation_level: int
    auto_approved: bool
    conflict_severity: Optional[str] = None
    conflict_report: Optional[Dict[str, Any]] = None
    conflict_override: bool
    medical_certificate_required: bool
    medical_certificate_received: bool
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    steps: List[ApprovalStepResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class LeaveRequestPage(BaseModel):
    items: List[LeaveRequestResponse]
    total: int
    skip: int
    limit: int


class LeaveBalanceResponse(BaseModel):
    employee_id: int
    leave_type_code: str
    leave_type_id: int
    accrued_balance: float
    used_balance: float
    pending_balance: float
    carry_forward_balance: float
    available_balance: float
    ytd_accrued: float
    ytd_used: float
    ytd_forfeited: float
    ytd_cashed_out: float
    low_balance_threshold: float
    is_low: bool
    policy_year: int
    next_accrual_date: Optional[date] = None
    carry_forward_expires_on: Optional[date] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerEntryResponse(BaseModel):
    id: int
    created_at: datetime
    kind: str
    leave_type_id: int
    amount: float
    delta_accrued: float
    delta_used: float
    delta_pending: float
    delta_carry_forward: float
    snapshot_available: float
    request_id: Optional[int] = None
    source_ref: Optional[str] = None
    period_key: Optional[str] = None
    note: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BalanceAdjustment(BaseModel):
    amount: float
    reason: str = Field(min_length=1)
    actor_id: Optional[int] = None


class CashOutRequest(BaseModel):
    days: float = Field(gt=0)
    actor_id: Optional[int] = None


class CashOutResponse(BaseModel):
    entry_id: int
    days: float
    payout_amount: float
    balance: LeaveBalanceResponse


class JobRunRequest(BaseModel):
    as_of: Optional[date] = None


class EscalationRunRequest(BaseModel):
    now: Optional[datetime] = None


class EscalationRunResponse(BaseModel):
    escalated: List[int]
