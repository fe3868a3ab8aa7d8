from sqlalchemy import Column, Integer, String, Date, Numeric, Boolean, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from leave_admin.database import Base
import enum


class LeaveStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class DayPeriod(str, enum.Enum):
    FULL = "full"
    HALF = "half"


class LeavePriority(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ApprovalRole(str, enum.Enum):
    MANAGER = "manager"
    HR = "hr"
    DIRECTOR = "director"


class StepDecision(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    leave_type_id = Column(Integer, ForeignKey("leave_types.id"), nullable=False, index=True)
    leave_type_code = Column(String, nullable=False, index=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    start_period = Column(String, default=DayPeriod.FULL.value, nullable=False)
    end_period = Column(String, default=DayPeriod.FULL.value, nullable=False)
    total_days = Column(Numeric(10, 2), nullable=False)

    reason = Column(String, nullable=True)
    is_emergency = Column(Boolean, default=False, nullable=False)
    priority = Column(String, default=LeavePriority.NORMAL.value, nullable=False)
    status = Column(String, default=LeaveStatus.DRAFT.value, nullable=False, index=True)

    # Approval state machine: steps[current_step] is awaiting a decision
    current_step = Column(Integer, default=0, nullable=False)
    current_approver_id = Column(Integer, nullable=True, index=True)
    escalation_level = Column(Integer, default=0, nullable=False)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    auto_approved = Column(Boolean, default=False, nullable=False)

    # Advisory conflict data captured for the approver
    conflict_severity = Column(String, nullable=True)
    conflict_report = Column(JSON, nullable=True)
    conflict_override = Column(Boolean, default=False, nullable=False)
    override_by = Column(Integer, nullable=True)

    medical_certificate_required = Column(Boolean, default=False, nullable=False)
    medical_certificate_received = Column(Boolean, default=False, nullable=False)

    submitted_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(String, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    cancelled_by = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    steps = relationship(
        "ApprovalStep",
        back_populates="request",
        order_by="ApprovalStep.step_index",
        cascade="all, delete-orphan"
    )

    @property
    def active_step(self):
        if self.status != LeaveStatus.PENDING.value or self.current_step >= len(self.steps):
            return None
        return self.steps[self.current_step]

    def __repr__(self):
        return f"<LeaveRequest {self.id} emp={self.employee_id} {self.leave_type_code} {self.status}>"


class ApprovalStep(Base):
    __tablename__ = "leave_approval_steps"
    __table_args__ = (UniqueConstraint("request_id", "step_index", name="uq_approval_step"),)

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("leave_requests.id"), nullable=False, index=True)
    step_index = Column(Integer, nullable=False)
    role = Column(String, nullable=False)
    approver_id = Column(Integer, nullable=True)
    decision = Column(String, default=StepDecision.PENDING.value, nullable=False)
    decided_by = Column(Integer, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    comment = Column(String, nullable=True)

    request = relationship("LeaveRequest", back_populates="steps")
