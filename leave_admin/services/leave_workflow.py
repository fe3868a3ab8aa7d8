"""
Request Lifecycle

State machine for leave requests:

    draft -> pending -> approved -> cancelled
                     -> rejected
                     -> cancelled

Submission runs the policy guards in a fixed order, reserves the balance and
grades team coverage, all inside one transaction. Every transition writes its
audit entry in that transaction and notifies after commit. Balance work is
delegated to the ledger under the same per-key lock, so a request and its
ledger entries are always committed together.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from leave_admin.core.config import settings
from leave_admin.core.exceptions import (
    BlackoutConflictError,
    CoverageConflictError,
    DurationBoundsViolation,
    IneligibleError,
    InvalidStateTransition,
    MinimumGapViolation,
    NoticePeriodViolation,
    NotFoundError,
    OverlappingRequestError,
    PermissionDeniedError,
    ValidationError,
)
from leave_admin.core.retry import retry_on_conflict
from leave_admin.models.employee import EmployeeRole
from leave_admin.models.leave_request import (
    ApprovalRole,
    ApprovalStep,
    DayPeriod,
    LeavePriority,
    LeaveRequest,
    LeaveStatus,
    StepDecision,
)
from leave_admin.schemas.policy import EmployeeProfile, LeavePolicy
from leave_admin.services.audit import AuditService
from leave_admin.services.base import BaseService
from leave_admin.services.conflicts import ConflictDetector, ConflictReport
from leave_admin.services.directory import EmployeeDirectory
from leave_admin.services.ledger import BalanceLedger
from leave_admin.services.notification import LeaveEvent, NotificationDispatcher, NullNotificationDispatcher
from leave_admin.services.policy_store import PolicyStore

ALLOWED_TRANSITIONS: Dict[LeaveStatus, set] = {
    LeaveStatus.DRAFT: {LeaveStatus.PENDING},
    LeaveStatus.PENDING: {LeaveStatus.APPROVED, LeaveStatus.REJECTED, LeaveStatus.CANCELLED},
    LeaveStatus.APPROVED: {LeaveStatus.CANCELLED},
    LeaveStatus.REJECTED: set(),
    LeaveStatus.CANCELLED: set(),
}

ACTIVE_STATUSES = [LeaveStatus.PENDING.value, LeaveStatus.APPROVED.value]


def ensure_transition(request: LeaveRequest, target: LeaveStatus) -> None:
    current = LeaveStatus(request.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(current.value, target.value, request.id)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _snapshot(request: LeaveRequest) -> dict:
    return {
        "status": request.status,
        "current_step": request.current_step,
        "current_approver_id": request.current_approver_id,
        "escalation_level": request.escalation_level,
    }


def build_approval_chain(policy: LeavePolicy, employee: EmployeeProfile) -> List[Tuple[ApprovalRole, Optional[int]]]:
    chain = []
    if policy.approvals.manager:
        chain.append((ApprovalRole.MANAGER, employee.manager_id))
    if policy.approvals.hr:
        chain.append((ApprovalRole.HR, employee.hr_approver_id))
    if policy.approvals.director:
        chain.append((ApprovalRole.DIRECTOR, employee.director_id))
    return chain


class LeaveWorkflowService(BaseService):
    def __init__(
        self,
        db: Session,
        notifier: Optional[NotificationDispatcher] = None,
        policies: Optional[PolicyStore] = None,
        directory: Optional[EmployeeDirectory] = None,
        ledger: Optional[BalanceLedger] = None,
        detector: Optional[ConflictDetector] = None,
        audit: Optional[AuditService] = None
    ):
        super().__init__(db)
        self.notifier = notifier or NullNotificationDispatcher()
        self.policies = policies or PolicyStore(db)
        self.directory = directory or EmployeeDirectory(db)
        self.audit = audit or AuditService(db)
        self.ledger = ledger or BalanceLedger(db, policies=self.policies, directory=self.directory, audit=self.audit)
        self.detector = detector or ConflictDetector(db, directory=self.directory)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: int) -> LeaveRequest:
        request = self.db.get(LeaveRequest, request_id)
        if not request:
            raise NotFoundError("LeaveRequest", request_id)
        return request

    def list_requests(
        self,
        employee_id: Optional[int] = None,
        status: Optional[str] = None,
        leave_type_code: Optional[str] = None,
        approver_id: Optional[int] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[LeaveRequest], int]:
        query = self.db.query(LeaveRequest)
        if employee_id is not None:
            query = query.filter(LeaveRequest.employee_id == employee_id)
        if status:
            query = query.filter(LeaveRequest.status == status)
        if leave_type_code:
            query = query.filter(LeaveRequest.leave_type_code == leave_type_code)
        if approver_id is not None:
            query = query.filter(LeaveRequest.current_approver_id == approver_id)
        if start:
            query = query.filter(LeaveRequest.end_date >= start)
        if end:
            query = query.filter(LeaveRequest.start_date <= end)
        total = query.count()
        items = query.order_by(LeaveRequest.start_date.desc(), LeaveRequest.id.desc()).offset(skip).limit(limit).all()
        return items, total

    def _load_locked(self, request_id: int) -> LeaveRequest:
        request = self.db.query(LeaveRequest).filter(
            LeaveRequest.id == request_id
        ).populate_existing().with_for_update().first()
        if not request:
            raise NotFoundError("LeaveRequest", request_id)
        return request

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _check_eligibility(self, employee: EmployeeProfile, policy: LeavePolicy, today: date):
        failures = self.policies.explain_eligibility(employee, policy, today)
        if failures:
            raise IneligibleError(f"Not eligible for {policy.name}: {failures[0]}", details={"reasons": failures})

    def _check_notice(self, request: LeaveRequest, policy: LeavePolicy, today: date):
        if request.is_emergency:
            if not (request.reason or "").strip():
                raise ValidationError("Emergency requests require a reason")
            return
        notice = (request.start_date - today).days
        if notice < policy.min_notice_days or notice < 0:
            raise NoticePeriodViolation(
                f"{policy.name} requires {policy.min_notice_days} days notice, got {notice}",
                details={"required": policy.min_notice_days, "given": notice}
            )

    def _check_duration(self, request: LeaveRequest, policy: LeavePolicy):
        total = self.policies.count_chargeable_days(
            request.start_date, request.end_date, policy,
            DayPeriod(request.start_period), DayPeriod(request.end_period)
        )
        if total <= 0:
            raise ValidationError("The requested range contains no chargeable days")
        if policy.max_duration_days is not None and total > policy.max_duration_days:
            raise DurationBoundsViolation(
                f"{policy.name} allows at most {policy.max_duration_days} days per request, requested {total}",
                details={"max": str(policy.max_duration_days), "requested": str(total)}
            )
        if policy.max_consecutive_days is not None and total > policy.max_consecutive_days:
            raise DurationBoundsViolation(
                f"{policy.name} allows at most {policy.max_consecutive_days} consecutive days, requested {total}",
                details={"max_consecutive": str(policy.max_consecutive_days), "requested": str(total)}
            )
        request.total_days = total

    def _active_requests(self, request: LeaveRequest):
        query = self.db.query(LeaveRequest).filter(
            LeaveRequest.employee_id == request.employee_id,
            LeaveRequest.status.in_(ACTIVE_STATUSES)
        )
        if request.id is not None:
            query = query.filter(LeaveRequest.id != request.id)
        return query

    def _check_overlap_and_gap(self, request: LeaveRequest, policy: LeavePolicy):
        overlapping = self._active_requests(request).filter(
            LeaveRequest.start_date <= request.end_date,
            LeaveRequest.end_date >= request.start_date
        ).first()
        if overlapping:
            raise OverlappingRequestError(
                f"Overlaps existing {overlapping.status} request {overlapping.id}",
                details={"request_id": overlapping.id}
            )
        if not policy.min_gap_days:
            return
        window = timedelta(days=policy.min_gap_days)
        nearby = self._active_requests(request).filter(
            LeaveRequest.leave_type_code == policy.code,
            LeaveRequest.start_date <= request.end_date + window,
            LeaveRequest.end_date >= request.start_date - window
        ).first()
        if nearby:
            raise MinimumGapViolation(
                f"{policy.name} requires {policy.min_gap_days} days between requests",
                details={"request_id": nearby.id, "min_gap_days": policy.min_gap_days}
            )

    def _authorize_override(self, actor: EmployeeProfile):
        if actor.role not in settings.workflow.override_roles:
            raise PermissionDeniedError(f"Role '{actor.role}' cannot override leave conflicts")

    def _check_conflicts(self, request: LeaveRequest, report: ConflictReport, actor: EmployeeProfile, override_conflict: bool):
        blocking = report.blackout_findings or report.critical_coverage
        if not blocking or request.conflict_override:
            return
        if override_conflict:
            self._authorize_override(actor)
            request.conflict_override = True
            request.override_by = actor.id
            self.log_warning(
                f"Conflict override on leave request {request.id} by {actor.id}",
                findings=[f.message for f in blocking]
            )
            return
        if report.blackout_findings:
            raise BlackoutConflictError(
                report.blackout_findings[0].message,
                details={"findings": [f.model_dump(mode="json") for f in report.blackout_findings]}
            )
        raise CoverageConflictError(
            f"Team coverage is critical on {len(report.critical_coverage)} day(s)",
            details={"findings": [f.model_dump(mode="json") for f in report.critical_coverage]}
        )

    def _store_report(self, request: LeaveRequest, report: ConflictReport):
        request.conflict_severity = report.severity.value
        request.conflict_report = {
            "severity": report.severity.value,
            "team_size": report.team_size,
            "findings": [f.model_dump(mode="json") for f in report.findings],
        }

    def _authorize_decision(self, request: LeaveRequest, step: Optional[ApprovalStep], actor: EmployeeProfile):
        if actor.role == EmployeeRole.ADMIN.value:
            return
        if actor.id == request.employee_id:
            raise PermissionDeniedError("Employees cannot decide their own leave requests")
        if actor.id in (request.current_approver_id, step.approver_id if step else None):
            return
        if step is not None and step.approver_id is None and actor.role == step.role:
            return
        raise PermissionDeniedError(f"Employee {actor.id} is not the approver for this step")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _event(self, request: LeaveRequest, name: str, actor_id: Optional[int] = None,
               recipients: Optional[List[int]] = None, comment: Optional[str] = None) -> LeaveEvent:
        return LeaveEvent(
            event=name,
            request_id=request.id,
            employee_id=request.employee_id,
            recipient_ids=[r for r in (recipients or [request.employee_id]) if r is not None],
            leave_type_code=request.leave_type_code,
            start_date=request.start_date,
            end_date=request.end_date,
            total_days=float(request.total_days),
            status=request.status,
            actor_id=actor_id,
            comment=comment,
        )

    def _notify(self, events: List[LeaveEvent]):
        for event in events:
            try:
                self.notifier.dispatch(event)
            except Exception as e:
                self._logger.warning(f"Notification for request {event.request_id} failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _new_request(
        self,
        employee: EmployeeProfile,
        policy: LeavePolicy,
        start_date: date,
        end_date: date,
        start_period: DayPeriod,
        end_period: DayPeriod,
        reason: Optional[str],
        is_emergency: bool,
        priority: LeavePriority
    ) -> LeaveRequest:
        total = self.policies.count_chargeable_days(start_date, end_date, policy, start_period, end_period)
        return LeaveRequest(
            employee_id=employee.id,
            leave_type_id=policy.id,
            leave_type_code=policy.code,
            start_date=start_date,
            end_date=end_date,
            start_period=DayPeriod(start_period).value,
            end_period=DayPeriod(end_period).value,
            total_days=total,
            reason=reason,
            is_emergency=is_emergency,
            priority=LeavePriority(priority).value,
            status=LeaveStatus.DRAFT.value,
            current_step=0,
            escalation_level=0,
        )

    def _submit(
        self,
        request: LeaveRequest,
        policy: LeavePolicy,
        employee: EmployeeProfile,
        actor: EmployeeProfile,
        override_conflict: bool,
        today: date
    ) -> List[LeaveEvent]:
        ensure_transition(request, LeaveStatus.PENDING)
        before = _snapshot(request)

        self._check_eligibility(employee, policy, today)
        self._check_notice(request, policy, today)
        self._check_duration(request, policy)
        self._check_overlap_and_gap(request, policy)

        request.status = LeaveStatus.PENDING.value
        request.submitted_at = datetime.now(timezone.utc)
        self.db.add(request)
        self.db.flush()

        self.ledger.reserve(employee.id, policy.id, request.total_days, request.id, commit=False)

        report = self.detector.analyze(
            employee.department_id, request.start_date, request.end_date,
            employee_id=employee.id, policy=policy, excluding_request_id=request.id
        )
        self._check_conflicts(request, report, actor, override_conflict)
        self._store_report(request, report)

        if policy.requires_document_after_days is not None and request.total_days > policy.requires_document_after_days:
            request.medical_certificate_required = True

        chain = build_approval_chain(policy, employee)
        if not chain and report.is_critical:
            # An overridden critical conflict is never approved unattended
            chain = [(ApprovalRole.HR, employee.hr_approver_id)]
        auto_approve = not chain or (
            policy.auto_approve_threshold_days is not None
            and request.total_days <= policy.auto_approve_threshold_days
            and not report.is_critical
            and employee.manager_delegates_auto_approval
        )
        for index, (role, approver_id) in enumerate(chain):
            request.steps.append(ApprovalStep(
                step_index=index,
                role=role.value,
                approver_id=approver_id,
                decision=StepDecision.SKIPPED.value if auto_approve else StepDecision.PENDING.value,
            ))

        self.audit.log_action(
            action="leave_submitted",
            entity_type="leave_request",
            entity_id=request.id,
            user_id=actor.id,
            details={
                "employee_id": employee.id,
                "leave_type": policy.code,
                "policy_version": policy.version,
                "total_days": request.total_days,
                "conflict_severity": report.severity,
                "conflict_override": request.conflict_override,
            },
            before_state=before,
            after_state=_snapshot(request)
        )
        events = [self._event(request, "submitted", actor.id)]

        if auto_approve:
            ensure_transition(request, LeaveStatus.APPROVED)
            request.status = LeaveStatus.APPROVED.value
            request.approved_at = datetime.now(timezone.utc)
            request.auto_approved = True
            request.current_approver_id = None
            self.ledger.commit_usage(request.id, commit=False)
            self.audit.log_action(
                action="leave_auto_approved",
                entity_type="leave_request",
                entity_id=request.id,
                user_id=None,
                details={"threshold": policy.auto_approve_threshold_days, "total_days": request.total_days},
                before_state={"status": LeaveStatus.PENDING.value},
                after_state=_snapshot(request)
            )
            events = [self._event(request, "approved")]
        else:
            request.current_step = 0
            request.current_approver_id = chain[0][1]
            events.append(self._event(request, "awaiting_approval", recipients=[chain[0][1]]))

        self.db.flush()
        self.log_info(
            f"Leave request {request.id} submitted -> {request.status}",
            employee_id=employee.id, leave_type=policy.code, total_days=str(request.total_days)
        )
        return events

    @retry_on_conflict
    def submit_request(
        self,
        employee_id: int,
        leave_type_id: int,
        start_date: date,
        end_date: date,
        reason: Optional[str] = None,
        start_period: DayPeriod = DayPeriod.FULL,
        end_period: DayPeriod = DayPeriod.FULL,
        is_emergency: bool = False,
        priority: LeavePriority = LeavePriority.NORMAL,
        override_conflict: bool = False,
        actor_id: Optional[int] = None,
        today: Optional[date] = None
    ) -> LeaveRequest:
        """
        Create and submit a request in one step. Any guard failure rolls the
        whole submission back: no request row and no ledger entry survive.
        """
        today = today or date.today()
        policy = self.policies.get_leave_type(leave_type_id)
        employee = self.directory.get(employee_id)
        actor = self.directory.get(actor_id) if actor_id and actor_id != employee_id else employee

        with self.ledger.locked(employee.id, policy.code):
            try:
                request = self._new_request(
                    employee, policy, start_date, end_date, start_period, end_period,
                    reason, is_emergency, priority
                )
                events = self._submit(request, policy, employee, actor, override_conflict, today)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        self._notify(events)
        return request

    def create_draft(
        self,
        employee_id: int,
        leave_type_id: int,
        start_date: date,
        end_date: date,
        reason: Optional[str] = None,
        start_period: DayPeriod = DayPeriod.FULL,
        end_period: DayPeriod = DayPeriod.FULL,
        is_emergency: bool = False,
        priority: LeavePriority = LeavePriority.NORMAL
    ) -> LeaveRequest:
        """Save a request without submitting it. Drafts hold no balance."""
        policy = self.policies.get_leave_type(leave_type_id)
        employee = self.directory.get(employee_id)
        request = self._new_request(
            employee, policy, start_date, end_date, start_period, end_period, reason, is_emergency, priority
        )
        self.db.add(request)
        self.db.flush()
        self.audit.log_action(
            action="leave_draft_created",
            entity_type="leave_request",
            entity_id=request.id,
            user_id=employee.id,
            details={"leave_type": policy.code, "total_days": request.total_days}
        )
        self.commit()
        return request

    @retry_on_conflict
    def submit_draft(
        self,
        request_id: int,
        actor_id: Optional[int] = None,
        override_conflict: bool = False,
        today: Optional[date] = None
    ) -> LeaveRequest:
        today = today or date.today()
        request = self.get_request(request_id)
        policy = self.policies.get_leave_type(request.leave_type_id)
        employee = self.directory.get(request.employee_id)
        actor = self.directory.get(actor_id) if actor_id and actor_id != employee.id else employee
        if actor.id != employee.id and actor.role not in settings.workflow.approver_roles:
            raise PermissionDeniedError("Only the employee can submit their draft")

        with self.ledger.locked(employee.id, policy.code):
            try:
                request = self._load_locked(request_id)
                events = self._submit(request, policy, employee, actor, override_conflict, today)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        self._notify(events)
        return request

    @retry_on_conflict
    def approve(
        self,
        request_id: int,
        approver_id: int,
        comment: Optional[str] = None,
        override_conflict: bool = False
    ) -> LeaveRequest:
        """
        Approve the current step. The last step moves the request to approved
        and turns its reservation into usage. Team coverage is graded again
        because other leave may have been approved since submission.
        """
        request = self.get_request(request_id)
        actor = self.directory.get(approver_id)

        with self.ledger.locked(request.employee_id, request.leave_type_code):
            try:
                request = self._load_locked(request_id)
                ensure_transition(request, LeaveStatus.APPROVED)
                step = request.active_step
                self._authorize_decision(request, step, actor)
                before = _snapshot(request)

                employee = self.directory.get(request.employee_id)
                policy = self.policies.get_leave_type(request.leave_type_id)
                report = self.detector.analyze(
                    employee.department_id, request.start_date, request.end_date,
                    employee_id=employee.id, policy=policy, excluding_request_id=request.id
                )
                self._check_conflicts(request, report, actor, override_conflict)
                self._store_report(request, report)

                now = datetime.now(timezone.utc)
                if step is not None:
                    step.decision = StepDecision.APPROVED.value
                    step.decided_by = actor.id
                    step.decided_at = now
                    step.comment = comment

                next_index = request.current_step + 1
                if step is not None and next_index < len(request.steps):
                    request.current_step = next_index
                    next_step = request.steps[next_index]
                    request.current_approver_id = next_step.approver_id
                    action = "leave_step_approved"
                    events = [
                        self._event(request, "step_approved", actor.id, comment=comment),
                        self._event(request, "awaiting_approval", actor.id, recipients=[next_step.approver_id]),
                    ]
                else:
                    request.status = LeaveStatus.APPROVED.value
                    request.approved_at = now
                    request.current_approver_id = None
                    self.ledger.commit_usage(request.id, commit=False)
                    action = "leave_approved"
                    events = [self._event(request, "approved", actor.id, comment=comment)]

                self.audit.log_action(
                    action=action,
                    entity_type="leave_request",
                    entity_id=request.id,
                    user_id=actor.id,
                    details={
                        "step": step.role if step else None,
                        "comment": comment,
                        "conflict_severity": report.severity,
                        "conflict_override": request.conflict_override,
                    },
                    before_state=before,
                    after_state=_snapshot(request)
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.log_info(f"Leave request {request.id} {action} by {actor.id}")
        self._notify(events)
        return request

    @retry_on_conflict
    def reject(self, request_id: int, approver_id: int, reason: str) -> LeaveRequest:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        request = self.get_request(request_id)
        actor = self.directory.get(approver_id)

        with self.ledger.locked(request.employee_id, request.leave_type_code):
            try:
                request = self._load_locked(request_id)
                ensure_transition(request, LeaveStatus.REJECTED)
                step = request.active_step
                self._authorize_decision(request, step, actor)
                before = _snapshot(request)

                now = datetime.now(timezone.utc)
                for pending_step in request.steps:
                    if pending_step is step:
                        pending_step.decision = StepDecision.REJECTED.value
                        pending_step.decided_by = actor.id
                        pending_step.decided_at = now
                        pending_step.comment = reason.strip()
                    elif pending_step.decision == StepDecision.PENDING.value:
                        pending_step.decision = StepDecision.SKIPPED.value

                request.status = LeaveStatus.REJECTED.value
                request.rejected_at = now
                request.rejection_reason = reason.strip()
                request.current_approver_id = None
                self.ledger.release(request.id, commit=False, note="rejected")

                self.audit.log_action(
                    action="leave_rejected",
                    entity_type="leave_request",
                    entity_id=request.id,
                    user_id=actor.id,
                    details={"step": step.role if step else None, "reason": request.rejection_reason},
                    before_state=before,
                    after_state=_snapshot(request)
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.log_info(f"Leave request {request.id} rejected by {actor.id}")
        self._notify([self._event(request, "rejected", actor.id, comment=request.rejection_reason)])
        return request

    @retry_on_conflict
    def cancel(self, request_id: int, actor_id: int, reason: Optional[str] = None) -> LeaveRequest:
        """
        Withdraw a pending request (reservation released) or revoke an approved
        one (usage reversed by a compensating ledger entry; a reason is required).
        """
        request = self.get_request(request_id)
        actor = self.directory.get(actor_id)
        if actor.id != request.employee_id and actor.role not in settings.workflow.approver_roles:
            raise PermissionDeniedError("Only the employee or an approver can cancel this request")

        with self.ledger.locked(request.employee_id, request.leave_type_code):
            try:
                request = self._load_locked(request_id)
                ensure_transition(request, LeaveStatus.CANCELLED)
                was_approved = request.status == LeaveStatus.APPROVED.value
                if was_approved and not (reason or "").strip():
                    raise ValidationError("A reason is required to cancel approved leave")
                before = _snapshot(request)

                for step in request.steps:
                    if step.decision == StepDecision.PENDING.value:
                        step.decision = StepDecision.SKIPPED.value

                request.status = LeaveStatus.CANCELLED.value
                request.cancelled_at = datetime.now(timezone.utc)
                request.cancelled_by = actor.id
                request.cancellation_reason = (reason or "").strip() or None
                request.current_approver_id = None
                if was_approved:
                    self.ledger.reverse_usage(request.id, commit=False, note=request.cancellation_reason)
                else:
                    self.ledger.release(request.id, commit=False, note="cancelled")

                self.audit.log_action(
                    action="leave_cancelled",
                    entity_type="leave_request",
                    entity_id=request.id,
                    user_id=actor.id,
                    details={"was_approved": was_approved, "reason": request.cancellation_reason},
                    before_state=before,
                    after_state=_snapshot(request)
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.log_info(f"Leave request {request.id} cancelled by {actor.id}", was_approved=was_approved)
        self._notify([self._event(request, "cancelled", actor.id, comment=request.cancellation_reason)])
        return request

    def record_medical_certificate(self, request_id: int, actor_id: Optional[int] = None) -> LeaveRequest:
        request = self.get_request(request_id)
        if request.status in (LeaveStatus.REJECTED.value, LeaveStatus.CANCELLED.value):
            raise ValidationError("Request is closed")
        request.medical_certificate_received = True
        self.audit.log_action(
            action="leave_certificate_received",
            entity_type="leave_request",
            entity_id=request.id,
            user_id=actor_id,
            details={"required": request.medical_certificate_required}
        )
        self.commit()
        return request

    def _escalation_target(self, request: LeaveRequest) -> Optional[int]:
        current = self.directory.find(request.current_approver_id)
        if current and current.manager_id and current.manager_id != request.employee_id:
            return current.manager_id
        employee = self.directory.get(request.employee_id)
        if employee.director_id and employee.director_id != request.current_approver_id:
            return employee.director_id
        return request.current_approver_id

    def escalate_overdue(self, now: Optional[datetime] = None) -> List[LeaveRequest]:
        """
        Push pending requests that sat with one approver past the SLA one level
        up the management chain. Advisory: the original approver can still decide.
        """
        now = _utc(now) or datetime.now(timezone.utc)
        sla = timedelta(hours=settings.workflow.escalation_sla_hours)
        candidates = self.db.query(LeaveRequest).filter(
            LeaveRequest.status == LeaveStatus.PENDING.value
        ).order_by(LeaveRequest.id).all()

        escalated = []
        for candidate in candidates:
            waiting_since = _utc(candidate.escalated_at or candidate.submitted_at)
            if waiting_since is None or now - waiting_since < sla:
                continue
            try:
                with self.ledger.locked(candidate.employee_id, candidate.leave_type_code):
                    request = self._load_locked(candidate.id)
                    if request.status != LeaveStatus.PENDING.value:
                        self.db.rollback()
                        continue
                    before = _snapshot(request)
                    request.escalation_level += 1
                    request.escalated_at = now
                    request.current_approver_id = self._escalation_target(request)
                    self.audit.log_action(
                        action="leave_escalated",
                        entity_type="leave_request",
                        entity_id=request.id,
                        user_id=None,
                        details={"waiting_hours": round((now - waiting_since).total_seconds() / 3600, 1)},
                        before_state=before,
                        after_state=_snapshot(request)
                    )
                    self.db.commit()
            except Exception as e:
                self.db.rollback()
                self._logger.error(f"Escalation of leave request {candidate.id} failed: {e}", exc_info=True)
                continue
            escalated.append(request)
            self._notify([self._event(
                request, "escalated",
                recipients=[request.current_approver_id, request.employee_id],
                comment=f"Escalation level {request.escalation_level}"
            )])

        if escalated:
            self.log_info(f"Escalated {len(escalated)} overdue leave request(s)")
        return escalated
