"""Seed the default leave type catalog (version 1 of each code)."""
from decimal import Decimal

from leave_admin.database import SessionLocal, init_db
from leave_admin.models.leave_type import LeaveCategory, LeaveType

CATALOG = [
    dict(code="AL", name="Annual Leave", category=LeaveCategory.DISCRETIONARY.value,
         accrual_rate=Decimal("1.67"), accrual_cap=Decimal("30"), carry_forward_allowed=True,
         max_carry_forward_days=Decimal("5"), carry_forward_expiry_months=3, use_it_or_lose_it=True,
         min_notice_days=7, min_gap_days=0, auto_approve_threshold_days=Decimal("1"),
         low_balance_threshold=Decimal("3")),
    dict(code="SL", name="Sick Leave", category=LeaveCategory.STATUTORY.value,
         accrual_rate=Decimal("1"), accrual_cap=Decimal("12"), min_notice_days=0,
         requires_document_after_days=Decimal("2")),
    dict(code="CL", name="Casual Leave", accrual_rate=Decimal("0.5"), accrual_cap=Decimal("6"),
         min_notice_days=1, max_consecutive_days=Decimal("3")),
    dict(code="ML", name="Maternity Leave", category=LeaveCategory.STATUTORY.value,
         accrual_method="fixed", accrual_frequency="yearly", accrual_rate=Decimal("182"),
         accrual_cap=Decimal("182"), allow_half_day=False, day_counting="calendar", requires_hr=True,
         eligibility_rules=[{"kind": "gender", "allowed": ["F"]}, {"kind": "service_months", "min_months": 6}]),
    dict(code="PL", name="Paternity Leave", category=LeaveCategory.STATUTORY.value,
         accrual_frequency="yearly", accrual_rate=Decimal("15"), accrual_cap=Decimal("15"),
         eligibility_rules=[{"kind": "gender", "allowed": ["M"]}, {"kind": "service_months", "min_months": 6}]),
    dict(code="BL", name="Bereavement Leave", accrual_frequency="yearly", accrual_rate=Decimal("5"),
         accrual_cap=Decimal("5"), min_notice_days=0),
    dict(code="MR", name="Marriage Leave", accrual_frequency="yearly", accrual_rate=Decimal("5"),
         accrual_cap=Decimal("5"), min_notice_days=14,
         eligibility_rules=[{"kind": "service_months", "min_months": 3}]),
    dict(code="CO", name="Compensatory Off", accrual_rate=Decimal("0"), requires_manager=True,
         max_duration_days=Decimal("2")),
    dict(code="LOP", name="Loss of Pay", accrual_rate=Decimal("0"), requires_hr=True),
]


def seed():
    init_db()
    db = SessionLocal()
    try:
        for fields in CATALOG:
            existing = db.query(LeaveType).filter(LeaveType.code == fields["code"]).first()
            if existing:
                print(f"Leave type {fields['code']} already exists. Skipping.")
                continue
            db.add(LeaveType(version=1, **fields))
            print(f"Created leave type {fields['code']} -> {fields['name']}")
        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    seed()
