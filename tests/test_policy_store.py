import pytest
from datetime import date, timedelta
from decimal import Decimal

from pydantic import ValidationError as PydanticValidationError

from leave_admin.core.exceptions import NotFoundError, PolicyDefinitionError, ValidationError
from leave_admin.models.leave_request import DayPeriod
from leave_admin.schemas.policy import (
    EmployeeProfile,
    EmploymentTypeRule,
    GenderRule,
    JurisdictionRule,
    LeavePolicy,
    ServiceMonthsRule,
)
from leave_admin.services.policy_store import PolicyStore, count_chargeable_days, eligibility_failures

from conftest import MONDAY


def _policy(**overrides) -> LeavePolicy:
    fields = dict(id=1, code="AL", name="Annual Leave")
    fields.update(overrides)
    return LeavePolicy(**fields)


def _profile(**overrides) -> EmployeeProfile:
    fields = dict(
        id=7, full_name="Alice Able", role="employee", hire_date=date(2020, 1, 15),
        employment_type="full_time", jurisdiction="US-CA", gender="F"
    )
    fields.update(overrides)
    return EmployeeProfile(**fields)


# --- Day counting ---

def test_business_days_skip_weekends():
    policy = _policy()
    assert count_chargeable_days(MONDAY, MONDAY + timedelta(days=4), policy) == Decimal("5")
    # Monday to the following Monday spans one weekend
    assert count_chargeable_days(MONDAY, MONDAY + timedelta(days=7), policy) == Decimal("6")


def test_calendar_counting_includes_every_day():
    policy = _policy(day_counting="calendar")
    assert count_chargeable_days(MONDAY, MONDAY + timedelta(days=7), policy) == Decimal("8")


def test_holidays_are_not_charged():
    policy = _policy(holidays=[MONDAY + timedelta(days=2)])
    assert count_chargeable_days(MONDAY, MONDAY + timedelta(days=4), policy) == Decimal("4")


def test_half_day_periods():
    policy = _policy()
    friday = MONDAY + timedelta(days=4)
    assert count_chargeable_days(MONDAY, friday, policy, DayPeriod.HALF, DayPeriod.FULL) == Decimal("4.5")
    assert count_chargeable_days(MONDAY, friday, policy, DayPeriod.HALF, DayPeriod.HALF) == Decimal("4")
    assert count_chargeable_days(MONDAY, MONDAY, policy, DayPeriod.HALF, DayPeriod.HALF) == Decimal("0.5")


def test_weekend_only_range_counts_zero():
    saturday = MONDAY - timedelta(days=2)
    assert count_chargeable_days(saturday, saturday + timedelta(days=1), _policy()) == Decimal("0")


def test_end_before_start_is_rejected():
    with pytest.raises(ValidationError):
        count_chargeable_days(MONDAY, MONDAY - timedelta(days=1), _policy())


def test_half_day_rejected_when_not_allowed():
    policy = _policy(allow_half_day=False)
    with pytest.raises(ValidationError):
        count_chargeable_days(MONDAY, MONDAY, policy, DayPeriod.HALF, DayPeriod.FULL)


# --- Eligibility ---

def test_service_months_rule():
    policy = _policy(eligibility_rules=[ServiceMonthsRule(min_months=6)])
    employee = _profile(hire_date=date(2030, 1, 15))
    failures = eligibility_failures(employee, policy, date(2030, 6, 14))
    assert len(failures) == 1
    assert "6 months" in failures[0]
    assert eligibility_failures(employee, policy, date(2030, 7, 15)) == []


def test_rules_are_parsed_from_json_dicts():
    policy = _policy(eligibility_rules=[
        {"kind": "gender", "allowed": ["M"]},
        {"kind": "employment_type", "allowed": ["full_time", "part_time"]},
        {"kind": "jurisdiction", "allowed": ["US-CA"]},
    ])
    assert isinstance(policy.eligibility_rules[0], GenderRule)
    assert isinstance(policy.eligibility_rules[1], EmploymentTypeRule)
    assert isinstance(policy.eligibility_rules[2], JurisdictionRule)

    failures = eligibility_failures(_profile(gender="F", employment_type="contract"), policy, MONDAY)
    assert len(failures) == 2


def test_inactive_employee_is_never_eligible():
    assert eligibility_failures(_profile(is_active=False), _policy(), MONDAY) == ["Employee is not active"]


# --- Policy invariants ---

def test_negative_accrual_rate_is_invalid():
    with pytest.raises(PydanticValidationError):
        _policy(accrual_rate=Decimal("-1"))


def test_carry_forward_above_cap_needs_use_it_or_lose_it():
    with pytest.raises(PydanticValidationError):
        _policy(accrual_cap=Decimal("5"), max_carry_forward_days=Decimal("10"), use_it_or_lose_it=False)
    assert _policy(accrual_cap=Decimal("5"), max_carry_forward_days=Decimal("10"), use_it_or_lose_it=True)


def test_invalid_stored_definition_raises_policy_error(db_session, make_leave_type):
    broken = make_leave_type(
        "BRK", accrual_cap=Decimal("5"), max_carry_forward_days=Decimal("10"), use_it_or_lose_it=False
    )
    store = PolicyStore(db_session)
    with pytest.raises(PolicyDefinitionError):
        store.get_leave_type(broken.id)


# --- Store lookups ---

def test_latest_active_version_wins(db_session, make_leave_type):
    make_leave_type("AL", version=1, accrual_rate=Decimal("1.5"))
    v2 = make_leave_type("AL", version=2, accrual_rate=Decimal("2"))
    make_leave_type("SL", version=1)

    store = PolicyStore(db_session)
    assert store.get_active_by_code("AL").id == v2.id
    assert {p.code: p.version for p in store.list_active()} == {"AL": 2, "SL": 1}


def test_list_active_can_skip_broken_definitions(db_session, make_leave_type):
    make_leave_type("AL")
    make_leave_type("BRK", accrual_cap=Decimal("1"), max_carry_forward_days=Decimal("3"), use_it_or_lose_it=False)

    store = PolicyStore(db_session)
    with pytest.raises(PolicyDefinitionError):
        store.list_active()
    assert [p.code for p in store.list_active(skip_invalid=True)] == ["AL"]


def test_unknown_leave_type(db_session):
    with pytest.raises(NotFoundError):
        PolicyStore(db_session).get_leave_type(999)
