import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Request

from leave_admin.core.exceptions import ValidationError
from leave_admin.core.limiter import limiter
from leave_admin.dependencies import get_accrual_scheduler, get_conflict_detector, get_ledger, get_workflow
from leave_admin.schemas.leave import (
    BalanceAdjustment,
    CashOutRequest,
    CashOutResponse,
    EscalationRunRequest,
    EscalationRunResponse,
    JobRunRequest,
    LeaveBalanceResponse,
    LeaveDecision,
    LeaveRejection,
    LeaveRequestResponse,
    LedgerEntryResponse,
)
from leave_admin.services.accrual_scheduler import AccrualRunSummary, AccrualScheduler, CarryForwardRunSummary
from leave_admin.services.conflicts import CalendarEntry, ConflictDetector, ConflictReport
from leave_admin.services.leave_workflow import LeaveWorkflowService
from leave_admin.services.ledger import BalanceLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leave", tags=["leave-manager"])


# Approval chain
@router.post("/requests/{request_id}/approve", response_model=LeaveRequestResponse)
def approve_leave(
    request_id: int,
    decision: LeaveDecision,
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    return workflow.approve(
        request_id,
        approver_id=decision.approver_id,
        comment=decision.comment,
        override_conflict=decision.override_conflict,
    )


@router.post("/requests/{request_id}/reject", response_model=LeaveRequestResponse)
def reject_leave(
    request_id: int,
    rejection: LeaveRejection,
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    return workflow.reject(request_id, approver_id=rejection.approver_id, reason=rejection.reason)


# Coverage
@router.get("/conflicts", response_model=ConflictReport)
def analyze_conflicts(
    department_id: int,
    start: date,
    end: date,
    employee_id: Optional[int] = None,
    leave_type_code: Optional[str] = None,
    detector: ConflictDetector = Depends(get_conflict_detector),
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    if end < start:
        raise ValidationError("End date cannot be before start date")
    policy = workflow.policies.get_active_by_code(leave_type_code) if leave_type_code else None
    return detector.analyze(department_id, start, end, employee_id=employee_id, policy=policy)


# Calendar View endpoint
@router.get("/calendar", response_model=List[CalendarEntry])
def team_calendar(
    department_id: int,
    start: date,
    end: date,
    detector: ConflictDetector = Depends(get_conflict_detector)
):
    if end < start:
        raise ValidationError("End date cannot be before start date")
    return detector.team_calendar(department_id, start, end)


# HR balance corrections
@router.post("/balances/{employee_id}/{leave_type_code}/adjust", response_model=LedgerEntryResponse)
def adjust_balance(
    employee_id: int,
    leave_type_code: str,
    adjustment: BalanceAdjustment,
    ledger: BalanceLedger = Depends(get_ledger)
):
    policy = ledger.policies.get_active_by_code(leave_type_code)
    return ledger.adjust(employee_id, policy.id, adjustment.amount, adjustment.reason, actor_id=adjustment.actor_id)


@router.post("/balances/{employee_id}/{leave_type_code}/cash-out", response_model=CashOutResponse)
def cash_out_balance(
    employee_id: int,
    leave_type_code: str,
    payload: CashOutRequest,
    ledger: BalanceLedger = Depends(get_ledger)
):
    policy = ledger.policies.get_active_by_code(leave_type_code)
    entry, payout = ledger.cash_out(employee_id, policy.id, payload.days, actor_id=payload.actor_id)
    balance = ledger.get_balance(employee_id, policy.id)
    return CashOutResponse(
        entry_id=entry.id,
        days=payload.days,
        payout_amount=float(payout),
        balance=LeaveBalanceResponse.model_validate(balance),
    )


# Periodic jobs, also run by the background scheduler
@router.post("/accruals/run", response_model=AccrualRunSummary)
@limiter.limit("10/minute")
def run_accruals(
    request: Request,
    payload: Optional[JobRunRequest] = None,
    scheduler: AccrualScheduler = Depends(get_accrual_scheduler)
):
    as_of = payload.as_of if payload else None
    logger.info(f"Manual accrual run requested as of {as_of or date.today()}")
    return scheduler.run_accrual_cycle(as_of)


@router.post("/carry-forward/run", response_model=CarryForwardRunSummary)
@limiter.limit("10/minute")
def run_carry_forward(
    request: Request,
    payload: Optional[JobRunRequest] = None,
    scheduler: AccrualScheduler = Depends(get_accrual_scheduler)
):
    as_of = payload.as_of if payload else None
    return scheduler.run_carry_forward(as_of)


@router.post("/escalations/run", response_model=EscalationRunResponse)
@limiter.limit("10/minute")
def run_escalations(
    request: Request,
    payload: Optional[EscalationRunRequest] = None,
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    escalated = workflow.escalate_overdue(payload.now if payload else None)
    return EscalationRunResponse(escalated=[r.id for r in escalated])
