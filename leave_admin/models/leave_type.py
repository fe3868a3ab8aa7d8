from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql import func
from leave_admin.database import Base
import enum


class LeaveCategory(str, enum.Enum):
    STATUTORY = "statutory"
    DISCRETIONARY = "discretionary"


class AccrualMethod(str, enum.Enum):
    FIXED = "fixed"
    PRORATED = "prorated"
    TENURE_BASED = "tenure_based"


class AccrualFrequency(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class DayCounting(str, enum.Enum):
    CALENDAR = "calendar"            # every day in the range is chargeable
    BUSINESS_DAYS = "business_days"  # weekends and listed holidays are skipped


class LeaveType(Base):
    """
    Versioned leave policy definition. A policy change is a new row with a higher
    version; rows are never edited once ledger entries reference them.
    Structured rule columns (eligibility_rules, blackout_periods, holidays) are
    validated into typed models by the policy store.
    """
    __tablename__ = "leave_types"
    __table_args__ = (UniqueConstraint("code", "version", name="uq_leave_type_code_version"),)

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, nullable=False, index=True)  # "AL", "SL", ...
    version = Column(Integer, nullable=False, default=1)
    name = Column(String, nullable=False)
    category = Column(String, default=LeaveCategory.DISCRETIONARY.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Accrual
    accrual_method = Column(String, default=AccrualMethod.FIXED.value, nullable=False)
    accrual_rate = Column(Numeric(10, 2), default=0, nullable=False)  # days per period
    accrual_frequency = Column(String, default=AccrualFrequency.MONTHLY.value, nullable=False)
    accrual_cap = Column(Numeric(10, 2), nullable=True)
    tenure_bonus_per_year = Column(Numeric(10, 2), default=0, nullable=False)

    # Year-end rollover
    carry_forward_allowed = Column(Boolean, default=False, nullable=False)
    max_carry_forward_days = Column(Numeric(10, 2), default=0, nullable=False)
    carry_forward_expiry_months = Column(Integer, nullable=True)
    use_it_or_lose_it = Column(Boolean, default=False, nullable=False)
    cash_out_allowed = Column(Boolean, default=False, nullable=False)
    cash_out_rate = Column(Numeric(10, 2), default=0, nullable=False)

    # Request rules
    min_notice_days = Column(Integer, default=0, nullable=False)
    min_gap_days = Column(Integer, default=0, nullable=False)
    max_consecutive_days = Column(Numeric(10, 2), nullable=True)
    max_duration_days = Column(Numeric(10, 2), nullable=True)
    day_counting = Column(String, default=DayCounting.BUSINESS_DAYS.value, nullable=False)
    holidays = Column(JSON, default=list)
    allow_half_day = Column(Boolean, default=True, nullable=False)
    blackout_periods = Column(JSON, default=list)
    requires_document_after_days = Column(Numeric(10, 2), nullable=True)

    # Approval
    requires_manager = Column(Boolean, default=True, nullable=False)
    requires_hr = Column(Boolean, default=False, nullable=False)
    requires_director = Column(Boolean, default=False, nullable=False)
    auto_approve_threshold_days = Column(Numeric(10, 2), nullable=True)  # Requests <= this days can be auto-approved

    eligibility_rules = Column(JSON, default=list)
    low_balance_threshold = Column(Numeric(10, 2), default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<LeaveType {self.code} v{self.version}>"
