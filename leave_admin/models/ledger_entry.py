from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Index, UniqueConstraint
from leave_admin.database import Base
import enum


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntryKind(str, enum.Enum):
    ACCRUAL = "accrual"
    USAGE = "usage"
    RESERVATION = "reservation"
    RELEASE = "release"
    ADJUSTMENT = "adjustment"
    CARRY_OVER = "carry_over"
    FORFEITURE = "forfeiture"
    CASH_OUT = "cash_out"


class AccrualLedgerEntry(Base):
    """
    Append-only ledger entry recording every balance-affecting event.

    The delta_* columns say how the entry moved each stored bucket; summing them
    in (created_at, id) order reproduces the balance row. The snapshot_* columns
    hold the balance right after the entry was applied.
    """
    __tablename__ = "leave_ledger_entries"
    __table_args__ = (
        Index("ix_ledger_employee_type", "employee_id", "leave_type_code"),
        # Accrual / rollover idempotency; NULL period keys never collide
        UniqueConstraint("employee_id", "leave_type_code", "kind", "period_key", name="uq_ledger_period"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_now_utc, nullable=False)
    kind = Column(String, nullable=False)

    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    leave_type_code = Column(String, nullable=False)
    leave_type_id = Column(Integer, ForeignKey("leave_types.id"), nullable=False)  # version posted under
    balance_id = Column(Integer, ForeignKey("employee_leave_balances.id"), nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)  # signed, as seen by the employee

    delta_accrued = Column(Numeric(10, 2), default=0, nullable=False)
    delta_used = Column(Numeric(10, 2), default=0, nullable=False)
    delta_pending = Column(Numeric(10, 2), default=0, nullable=False)
    delta_carry_forward = Column(Numeric(10, 2), default=0, nullable=False)

    snapshot_accrued = Column(Numeric(10, 2), nullable=False)
    snapshot_used = Column(Numeric(10, 2), nullable=False)
    snapshot_pending = Column(Numeric(10, 2), nullable=False)
    snapshot_carry_forward = Column(Numeric(10, 2), nullable=False)
    snapshot_available = Column(Numeric(10, 2), nullable=False)

    request_id = Column(Integer, ForeignKey("leave_requests.id"), nullable=True, index=True)
    source_ref = Column(String, nullable=True)  # "request:42", "accrual-run:<uuid>", "admin:7"
    period_key = Column(String, nullable=True)  # "2026-03", "2026-Q1", "carry:2026"
    note = Column(String, nullable=True)

    def __repr__(self):
        return f"<AccrualLedgerEntry {self.kind} {self.amount} emp={self.employee_id} {self.leave_type_code}>"
