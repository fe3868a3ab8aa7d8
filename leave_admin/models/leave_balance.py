from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, Date, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from leave_admin.database import Base


class EmployeeLeaveBalance(Base):
    """
    Materialized view of the ledger for one (employee, leave type code).
    Written only by services.ledger.BalanceLedger, always together with the
    ledger entry that explains the change.
    """
    __tablename__ = "employee_leave_balances"
    __table_args__ = (UniqueConstraint("employee_id", "leave_type_code", name="uq_balance_employee_type"),)

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    leave_type_code = Column(String, nullable=False, index=True)
    leave_type_id = Column(Integer, ForeignKey("leave_types.id"), nullable=False)  # version last applied

    accrued_balance = Column(Numeric(10, 2), default=0, nullable=False)
    used_balance = Column(Numeric(10, 2), default=0, nullable=False)
    pending_balance = Column(Numeric(10, 2), default=0, nullable=False)
    carry_forward_balance = Column(Numeric(10, 2), default=0, nullable=False)

    ytd_accrued = Column(Numeric(10, 2), default=0, nullable=False)
    ytd_used = Column(Numeric(10, 2), default=0, nullable=False)
    ytd_forfeited = Column(Numeric(10, 2), default=0, nullable=False)
    ytd_cashed_out = Column(Numeric(10, 2), default=0, nullable=False)
    low_balance_threshold = Column(Numeric(10, 2), default=0, nullable=False)

    policy_year = Column(Integer, nullable=False)
    next_accrual_date = Column(Date, nullable=True)
    carry_forward_expires_on = Column(Date, nullable=True)

    # Compare-and-swap counter; a stale write raises StaleDataError on flush
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    @property
    def available_balance(self) -> Decimal:
        return (
            Decimal(self.accrued_balance or 0)
            + Decimal(self.carry_forward_balance or 0)
            - Decimal(self.used_balance or 0)
            - Decimal(self.pending_balance or 0)
        )

    @property
    def is_low(self) -> bool:
        return self.available_balance <= Decimal(self.low_balance_threshold or 0)

    def __repr__(self):
        return f"<EmployeeLeaveBalance emp={self.employee_id} {self.leave_type_code} avail={self.available_balance}>"
