from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from leave_admin.dependencies import get_ledger, get_policy_store, get_workflow
from leave_admin.schemas.leave import (
    CertificateReceipt,
    DraftSubmit,
    LeaveBalanceResponse,
    LeaveCancellation,
    LeaveRequestCreate,
    LeaveRequestPage,
    LeaveRequestResponse,
    LedgerEntryResponse,
)
from leave_admin.schemas.policy import LeavePolicy
from leave_admin.services.leave_workflow import LeaveWorkflowService
from leave_admin.services.ledger import BalanceLedger
from leave_admin.services.policy_store import PolicyStore

router = APIRouter(prefix="/leave", tags=["leave"])


@router.get("/types", response_model=List[LeavePolicy])
def list_leave_types(policies: PolicyStore = Depends(get_policy_store)):
    return policies.list_active()


@router.post("/requests", response_model=LeaveRequestResponse, status_code=201)
def submit_leave_request(
    payload: LeaveRequestCreate,
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    leave_type_id = payload.leave_type_id
    if leave_type_id is None:
        leave_type_id = workflow.policies.get_active_by_code(payload.leave_type_code).id

    if payload.save_as_draft:
        return workflow.create_draft(
            employee_id=payload.employee_id,
            leave_type_id=leave_type_id,
            start_date=payload.start_date,
            end_date=payload.end_date,
            reason=payload.reason,
            start_period=payload.start_period,
            end_period=payload.end_period,
            is_emergency=payload.is_emergency,
            priority=payload.priority,
        )
    return workflow.submit_request(
        employee_id=payload.employee_id,
        leave_type_id=leave_type_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
        start_period=payload.start_period,
        end_period=payload.end_period,
        is_emergency=payload.is_emergency,
        priority=payload.priority,
        override_conflict=payload.override_conflict,
        actor_id=payload.actor_id,
    )


@router.get("/requests", response_model=LeaveRequestPage)
def list_leave_requests(
    employee_id: Optional[int] = None,
    status: Optional[str] = None,
    leave_type_code: Optional[str] = None,
    approver_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    items, total = workflow.list_requests(
        employee_id=employee_id,
        status=status,
        leave_type_code=leave_type_code,
        approver_id=approver_id,
        start=start,
        end=end,
        skip=skip,
        limit=limit,
    )
    return LeaveRequestPage(
        items=[LeaveRequestResponse.model_validate(item) for item in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/requests/{request_id}", response_model=LeaveRequestResponse)
def get_leave_request(request_id: int, workflow: LeaveWorkflowService = Depends(get_workflow)):
    return workflow.get_request(request_id)


@router.post("/requests/{request_id}/submit", response_model=LeaveRequestResponse)
def submit_draft(
    request_id: int,
    payload: DraftSubmit,
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    return workflow.submit_draft(request_id, actor_id=payload.actor_id, override_conflict=payload.override_conflict)


@router.post("/requests/{request_id}/cancel", response_model=LeaveRequestResponse)
def cancel_leave_request(
    request_id: int,
    payload: LeaveCancellation,
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    return workflow.cancel(request_id, actor_id=payload.actor_id, reason=payload.reason)


@router.post("/requests/{request_id}/medical-certificate", response_model=LeaveRequestResponse)
def record_medical_certificate(
    request_id: int,
    payload: CertificateReceipt,
    workflow: LeaveWorkflowService = Depends(get_workflow)
):
    return workflow.record_medical_certificate(request_id, actor_id=payload.actor_id)


@router.get("/balances/{employee_id}", response_model=List[LeaveBalanceResponse])
def list_balances(employee_id: int, ledger: BalanceLedger = Depends(get_ledger)):
    return ledger.list_balances(employee_id)


@router.get("/balances/{employee_id}/{leave_type_code}", response_model=LeaveBalanceResponse)
def get_balance(employee_id: int, leave_type_code: str, ledger: BalanceLedger = Depends(get_ledger)):
    policy = ledger.policies.get_active_by_code(leave_type_code)
    return ledger.get_balance(employee_id, policy.id)


@router.get("/balances/{employee_id}/{leave_type_code}/ledger", response_model=List[LedgerEntryResponse])
def get_ledger_entries(
    employee_id: int,
    leave_type_code: str,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    ledger: BalanceLedger = Depends(get_ledger)
):
    return ledger.list_entries(employee_id, leave_type_code, limit=limit)
