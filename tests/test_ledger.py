import pytest
from datetime import date, timedelta
from decimal import Decimal

from leave_admin.core.exceptions import (
    AlreadyPostedError,
    InsufficientBalanceError,
    LedgerInvariantError,
    ValidationError,
)
from leave_admin.models import AccrualLedgerEntry, AuditLog, EmployeeLeaveBalance, LedgerEntryKind
from leave_admin.services.ledger import compute_accrual_amount
from leave_admin.services.periods import period_containing

from conftest import MONDAY


def _kinds(ledger, employee, code="AL"):
    return [entry.kind for entry in ledger.list_entries(employee.id, code)]


def _assert_consistent(ledger, employee, code="AL"):
    """Stored balance equals the replayed ledger and no bucket is negative."""
    replayed = ledger.verify(employee.id, code)
    balance = ledger.find_balance(employee.id, code)
    for bucket in ("accrued_balance", "used_balance", "pending_balance", "carry_forward_balance"):
        assert Decimal(getattr(balance, bucket)) >= 0
    assert balance.available_balance == replayed["available"]


def test_reserve_release_round_trip(org, annual, ledger, make_request):
    request = make_request(org.alice, annual, MONDAY, MONDAY + timedelta(days=2), status="pending")
    ledger.adjust(org.alice.id, annual.id, 10, "opening balance")

    ledger.reserve(org.alice.id, annual.id, 3, request.id)
    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.pending_balance == Decimal("3")
    assert balance.available_balance == Decimal("7")

    ledger.release(request.id)
    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.pending_balance == Decimal("0")
    assert balance.available_balance == Decimal("10")
    assert _kinds(ledger, org.alice) == ["adjustment", "reservation", "release"]

    # Nothing left to release
    assert ledger.release(request.id) is None
    _assert_consistent(ledger, org.alice)


def test_commit_usage_is_idempotent_and_reversible(org, annual, ledger, make_request):
    request = make_request(org.alice, annual, MONDAY, MONDAY + timedelta(days=2), status="pending")
    ledger.adjust(org.alice.id, annual.id, 10, "opening balance")
    ledger.reserve(org.alice.id, annual.id, 3, request.id)

    assert ledger.commit_usage(request.id) is not None
    assert ledger.commit_usage(request.id) is None
    balance = ledger.find_balance(org.alice.id, "AL")
    assert (balance.used_balance, balance.pending_balance) == (Decimal("3"), Decimal("0"))
    assert balance.available_balance == Decimal("7")
    assert balance.ytd_used == Decimal("3")

    ledger.reverse_usage(request.id)
    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.used_balance == Decimal("0")
    assert balance.available_balance == Decimal("10")
    assert ledger.reverse_usage(request.id) is None
    _assert_consistent(ledger, org.alice)


def test_insufficient_balance_writes_nothing(db_session, org, annual, ledger, make_request):
    request = make_request(org.alice, annual, MONDAY, MONDAY + timedelta(days=2), status="pending")
    ledger.adjust(org.alice.id, annual.id, 2, "opening balance")

    with pytest.raises(InsufficientBalanceError) as exc:
        ledger.reserve(org.alice.id, annual.id, 3, request.id)
    assert exc.value.available == Decimal("2")

    assert _kinds(ledger, org.alice) == ["adjustment"]
    assert ledger.find_balance(org.alice.id, "AL").pending_balance == Decimal("0")


def test_every_write_is_audited(db_session, org, annual, ledger):
    ledger.adjust(org.alice.id, annual.id, 4, "opening balance", actor_id=org.hr.id)
    audit = db_session.query(AuditLog).filter(AuditLog.action == "ledger_adjustment").one()
    assert audit.after_state["accrued"] == "4.00"
    assert audit.details["source_ref"] == f"admin:{org.hr.id}"


def test_accrual_posting_is_idempotent(org, annual, ledger):
    ledger.post_accrual(org.alice.id, annual.id, date(2030, 1, 31))
    with pytest.raises(AlreadyPostedError):
        ledger.post_accrual(org.alice.id, annual.id, date(2030, 1, 31))
    # Any day inside the period maps to the same key
    with pytest.raises(AlreadyPostedError):
        ledger.post_accrual(org.alice.id, annual.id, date(2030, 1, 10))

    entries = ledger.list_entries(org.alice.id, "AL")
    assert [(e.kind, e.period_key) for e in entries] == [("accrual", "2030-01")]
    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.accrued_balance == Decimal("2")
    assert balance.next_accrual_date == date(2030, 2, 28)
    _assert_consistent(ledger, org.alice)


def test_accrual_respects_cap(org, annual, ledger):
    ledger.adjust(org.alice.id, annual.id, 29, "opening balance")
    entry = ledger.post_accrual(org.alice.id, annual.id, date(2030, 1, 31))
    assert entry.amount == Decimal("1")
    assert ledger.find_balance(org.alice.id, "AL").available_balance == Decimal("30")

    entry = ledger.post_accrual(org.alice.id, annual.id, date(2030, 2, 28))
    assert entry.amount == Decimal("0")
    assert ledger.find_balance(org.alice.id, "AL").available_balance == Decimal("30")


def test_accrual_cap_applies_to_accrued_days_after_usage(org, make_leave_type, ledger, make_request):
    capped = make_leave_type("AL", accrual_cap=Decimal("10"))
    request = make_request(org.alice, capped, MONDAY, MONDAY + timedelta(days=4), status="pending")
    ledger.adjust(org.alice.id, capped.id, 10, "opening balance")
    ledger.reserve(org.alice.id, capped.id, 5, request.id)
    ledger.commit_usage(request.id)

    entry = ledger.post_accrual(org.alice.id, capped.id, date(2030, 1, 31))
    assert entry.amount == Decimal("0")
    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.accrued_balance == Decimal("10")
    assert balance.available_balance == Decimal("5")
    _assert_consistent(ledger, org.alice)


def test_prorated_and_tenure_amounts(org, make_leave_type, ledger):
    prorated = make_leave_type("PR", accrual_method="prorated", accrual_rate=Decimal("3"))
    tenure = make_leave_type("TN", accrual_method="tenure_based", accrual_rate=Decimal("1"),
                             tenure_bonus_per_year=Decimal("0.5"))
    january = period_containing(date(2030, 1, 1), "monthly")

    new_hire = ledger.directory.get(org.alice.id).model_copy(update={"hire_date": date(2030, 1, 16)})
    # 16 of 31 days employed
    assert compute_accrual_amount(ledger.policies.get_leave_type(prorated.id), new_hire, january) == Decimal("1.55")

    # Alice joined 2020-01-01: ten completed years by the end of January 2030
    entry = ledger.post_accrual(org.alice.id, tenure.id, date(2030, 1, 31))
    assert entry.amount == Decimal("6.00")


def test_quarterly_and_yearly_period_keys(org, make_leave_type, ledger):
    quarterly = make_leave_type("QL", accrual_frequency="quarterly")
    yearly = make_leave_type("YL", accrual_frequency="yearly", accrual_cap=None)

    assert ledger.post_accrual(org.alice.id, quarterly.id, date(2030, 3, 31)).period_key == "2030-Q1"
    assert ledger.find_balance(org.alice.id, "QL").next_accrual_date == date(2030, 6, 30)
    assert ledger.post_accrual(org.alice.id, yearly.id, date(2030, 12, 31)).period_key == "2030"


def test_carry_forward_caps_and_forfeits(org, annual, ledger, make_request):
    request = make_request(org.alice, annual, MONDAY, MONDAY + timedelta(days=1), status="pending")
    ledger.adjust(org.alice.id, annual.id, 12, "opening balance")
    ledger.reserve(org.alice.id, annual.id, 2, request.id)

    balance = ledger.find_balance(org.alice.id, "AL")
    next_year = date(balance.policy_year + 1, 1, 1)
    entries = ledger.apply_carry_forward(org.alice.id, annual.id, next_year)
    assert [e.kind for e in entries] == ["carry_over", "forfeiture"]

    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.carry_forward_balance == Decimal("5")
    assert balance.used_balance == Decimal("0")
    # The open reservation is still backed after rollover
    assert balance.pending_balance == Decimal("2")
    assert balance.available_balance == Decimal("5")
    assert balance.policy_year == next_year.year
    assert balance.ytd_accrued == Decimal("0")

    # Same year again is a no-op
    assert ledger.apply_carry_forward(org.alice.id, annual.id, next_year) == []
    assert len(ledger.list_entries(org.alice.id, "AL")) == 4
    _assert_consistent(ledger, org.alice)


def test_carry_forward_disallowed_keeps_balance_without_forfeiture(org, make_leave_type, ledger):
    flexible = make_leave_type("FX", carry_forward_allowed=False, use_it_or_lose_it=False,
                               max_carry_forward_days=Decimal("0"))
    ledger.adjust(org.alice.id, flexible.id, 8, "opening balance")
    year = ledger.find_balance(org.alice.id, "FX").policy_year

    entries = ledger.apply_carry_forward(org.alice.id, flexible.id, date(year + 1, 1, 1))
    assert [e.kind for e in entries] == ["carry_over"]
    balance = ledger.find_balance(org.alice.id, "FX")
    assert balance.carry_forward_balance == Decimal("0")
    assert balance.available_balance == Decimal("8")
    _assert_consistent(ledger, org.alice, "FX")


def test_carried_days_expire(org, make_leave_type, ledger):
    expiring = make_leave_type("EX", carry_forward_expiry_months=3)
    ledger.adjust(org.alice.id, expiring.id, 12, "opening balance")
    year = ledger.find_balance(org.alice.id, "EX").policy_year + 1
    ledger.apply_carry_forward(org.alice.id, expiring.id, date(year, 1, 1))

    balance = ledger.find_balance(org.alice.id, "EX")
    assert balance.carry_forward_expires_on == date(year, 4, 1)
    assert ledger.expire_carry_forward(org.alice.id, expiring.id, date(year, 3, 31)) is None

    entry = ledger.expire_carry_forward(org.alice.id, expiring.id, date(year, 4, 1))
    assert entry.kind == LedgerEntryKind.FORFEITURE.value
    balance = ledger.find_balance(org.alice.id, "EX")
    assert balance.carry_forward_balance == Decimal("0")
    assert balance.carry_forward_expires_on is None
    _assert_consistent(ledger, org.alice, "EX")


def test_cash_out(org, make_leave_type, annual, ledger):
    cashable = make_leave_type("CA", cash_out_allowed=True, cash_out_rate=Decimal("150"))
    ledger.adjust(org.alice.id, cashable.id, 5, "opening balance")

    entry, payout = ledger.cash_out(org.alice.id, cashable.id, 2)
    assert payout == Decimal("300.00")
    assert entry.amount == Decimal("-2")
    balance = ledger.find_balance(org.alice.id, "CA")
    assert balance.available_balance == Decimal("3")
    assert balance.ytd_cashed_out == Decimal("2")

    with pytest.raises(InsufficientBalanceError):
        ledger.cash_out(org.alice.id, cashable.id, 4)
    with pytest.raises(ValidationError):
        ledger.cash_out(org.alice.id, annual.id, 1)


def test_negative_adjustment_cannot_overdraw(org, annual, ledger):
    ledger.adjust(org.alice.id, annual.id, 3, "opening balance")
    with pytest.raises(InsufficientBalanceError):
        ledger.adjust(org.alice.id, annual.id, -4, "correction")
    with pytest.raises(ValidationError):
        ledger.adjust(org.alice.id, annual.id, 1, "   ")
    ledger.adjust(org.alice.id, annual.id, -3, "correction")
    assert ledger.find_balance(org.alice.id, "AL").available_balance == Decimal("0")


def test_get_balance_without_activity_reads_zero(org, annual, ledger, db_session):
    balance = ledger.get_balance(org.bob.id, annual.id)
    assert balance.available_balance == Decimal("0")
    assert db_session.query(EmployeeLeaveBalance).count() == 0


def test_verify_detects_drift(db_session, org, annual, ledger):
    ledger.adjust(org.alice.id, annual.id, 5, "opening balance")
    db_session.query(EmployeeLeaveBalance).filter(
        EmployeeLeaveBalance.employee_id == org.alice.id
    ).update({"accrued_balance": Decimal("9")}, synchronize_session=False)
    db_session.commit()

    with pytest.raises(LedgerInvariantError):
        ledger.verify(org.alice.id, "AL")


def test_replay_checks_snapshots(db_session, org, annual, ledger):
    ledger.adjust(org.alice.id, annual.id, 5, "opening balance")
    ledger.adjust(org.alice.id, annual.id, 1, "bonus day")
    db_session.query(AccrualLedgerEntry).filter(
        AccrualLedgerEntry.note == "bonus day"
    ).update({"snapshot_accrued": Decimal("7")}, synchronize_session=False)
    db_session.commit()

    with pytest.raises(LedgerInvariantError):
        ledger.replay(org.alice.id, "AL")
