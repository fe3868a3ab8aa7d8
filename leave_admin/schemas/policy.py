"""
Typed leave policy definitions.

LeaveType rows keep their rule sets in JSON columns; this module turns them into
immutable pydantic models so the rest of the core works with concrete rule kinds
instead of untyped dicts. Eligibility rules form a discriminated union on "kind".
"""
from datetime import date
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from leave_admin.models.leave_type import AccrualFrequency, AccrualMethod, DayCounting, LeaveCategory


class EmployeeProfile(BaseModel):
    """Directory view of an employee as the leave core sees it."""
    model_config = ConfigDict(frozen=True)

    id: int
    full_name: str
    role: str
    department_id: Optional[int] = None
    manager_id: Optional[int] = None
    hire_date: date
    employment_type: str
    jurisdiction: Optional[str] = None
    gender: Optional[str] = None
    is_active: bool = True
    manager_delegates_auto_approval: bool = False
    hr_approver_id: Optional[int] = None
    director_id: Optional[int] = None


def months_of_service(hire_date: date, as_of: date) -> int:
    months = (as_of.year - hire_date.year) * 12 + (as_of.month - hire_date.month)
    if as_of.day < hire_date.day:
        months -= 1
    return max(months, 0)


class ServiceMonthsRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["service_months"] = "service_months"
    min_months: int = Field(ge=0)

    def failure_reason(self, employee: EmployeeProfile, as_of: date) -> Optional[str]:
        served = months_of_service(employee.hire_date, as_of)
        if served < self.min_months:
            return f"Requires {self.min_months} months of service, employee has {served}"
        return None


class EmploymentTypeRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["employment_type"] = "employment_type"
    allowed: List[str]

    def failure_reason(self, employee: EmployeeProfile, as_of: date) -> Optional[str]:
        if employee.employment_type not in self.allowed:
            return f"Employment type '{employee.employment_type}' is not eligible"
        return None


class JurisdictionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["jurisdiction"] = "jurisdiction"
    allowed: List[str]

    def failure_reason(self, employee: EmployeeProfile, as_of: date) -> Optional[str]:
        if employee.jurisdiction not in self.allowed:
            return f"Jurisdiction '{employee.jurisdiction}' is not covered by this leave type"
        return None


class GenderRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["gender"] = "gender"
    allowed: List[str]

    def failure_reason(self, employee: EmployeeProfile, as_of: date) -> Optional[str]:
        if employee.gender not in self.allowed:
            return "Leave type is not applicable to this employee"
        return None


EligibilityRule = Annotated[
    Union[ServiceMonthsRule, EmploymentTypeRule, JurisdictionRule, GenderRule],
    Field(discriminator="kind")
]


class BlackoutPeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    name: str = "Blackout period"

    @model_validator(mode="after")
    def _ordered(self):
        if self.end < self.start:
            raise ValueError(f"Blackout '{self.name}' ends before it starts")
        return self

    def overlaps(self, start: date, end: date) -> bool:
        return self.start <= end and start <= self.end


class ApprovalRequirements(BaseModel):
    model_config = ConfigDict(frozen=True)

    manager: bool = True
    hr: bool = False
    director: bool = False

    @property
    def required(self) -> bool:
        return self.manager or self.hr or self.director


class LeavePolicy(BaseModel):
    """Immutable snapshot of one LeaveType version."""
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    version: int = 1
    name: str
    category: LeaveCategory = LeaveCategory.DISCRETIONARY
    is_active: bool = True

    accrual_method: AccrualMethod = AccrualMethod.FIXED
    accrual_rate: Decimal = Decimal("0")
    accrual_frequency: AccrualFrequency = AccrualFrequency.MONTHLY
    accrual_cap: Optional[Decimal] = None
    tenure_bonus_per_year: Decimal = Decimal("0")

    carry_forward_allowed: bool = False
    max_carry_forward_days: Decimal = Decimal("0")
    carry_forward_expiry_months: Optional[int] = None
    use_it_or_lose_it: bool = False
    cash_out_allowed: bool = False
    cash_out_rate: Decimal = Decimal("0")

    min_notice_days: int = 0
    min_gap_days: int = 0
    max_consecutive_days: Optional[Decimal] = None
    max_duration_days: Optional[Decimal] = None
    day_counting: DayCounting = DayCounting.BUSINESS_DAYS
    holidays: List[date] = Field(default_factory=list)
    allow_half_day: bool = True
    blackout_periods: List[BlackoutPeriod] = Field(default_factory=list)
    requires_document_after_days: Optional[Decimal] = None

    approvals: ApprovalRequirements = ApprovalRequirements()
    auto_approve_threshold_days: Optional[Decimal] = None
    eligibility_rules: List[EligibilityRule] = Field(default_factory=list)
    low_balance_threshold: Decimal = Decimal("0")

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.accrual_rate < 0:
            raise ValueError("accrual_rate must be >= 0")
        if (
            not self.use_it_or_lose_it
            and self.accrual_cap is not None
            and self.max_carry_forward_days > self.accrual_cap
        ):
            raise ValueError("max_carry_forward_days cannot exceed accrual_cap unless use-it-or-lose-it applies")
        return self

    @classmethod
    def from_model(cls, row) -> "LeavePolicy":
        return cls(
            id=row.id,
            code=row.code,
            version=row.version,
            name=row.name,
            category=row.category,
            is_active=row.is_active,
            accrual_method=row.accrual_method,
            accrual_rate=row.accrual_rate or 0,
            accrual_frequency=row.accrual_frequency,
            accrual_cap=row.accrual_cap,
            tenure_bonus_per_year=row.tenure_bonus_per_year or 0,
            carry_forward_allowed=row.carry_forward_allowed,
            max_carry_forward_days=row.max_carry_forward_days or 0,
            carry_forward_expiry_months=row.carry_forward_expiry_months,
            use_it_or_lose_it=row.use_it_or_lose_it,
            cash_out_allowed=row.cash_out_allowed,
            cash_out_rate=row.cash_out_rate or 0,
            min_notice_days=row.min_notice_days or 0,
            min_gap_days=row.min_gap_days or 0,
            max_consecutive_days=row.max_consecutive_days,
            max_duration_days=row.max_duration_days,
            day_counting=row.day_counting,
            holidays=row.holidays or [],
            allow_half_day=row.allow_half_day,
            blackout_periods=row.blackout_periods or [],
            requires_document_after_days=row.requires_document_after_days,
            approvals=ApprovalRequirements(
                manager=row.requires_manager,
                hr=row.requires_hr,
                director=row.requires_director,
            ),
            auto_approve_threshold_days=row.auto_approve_threshold_days,
            eligibility_rules=row.eligibility_rules or [],
            low_balance_threshold=row.low_balance_threshold or 0,
        )

    def counts_day(self, day: date) -> bool:
        if self.day_counting == DayCounting.CALENDAR:
            return True
        return day.weekday() < 5 and day not in self.holidays

    def blackouts_overlapping(self, start: date, end: date) -> List[BlackoutPeriod]:
        return [b for b in self.blackout_periods if b.overlaps(start, end)]
