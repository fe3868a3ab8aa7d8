import pytest
from datetime import date
from decimal import Decimal

from leave_admin.models import AccrualLedgerEntry, EmployeeLeaveBalance
from leave_admin.services.accrual_scheduler import AccrualScheduler, run_scheduled_jobs

END_OF_MARCH = date(2030, 3, 31)


@pytest.fixture
def scheduler(db_session):
    return AccrualScheduler(db_session)


def test_posts_one_period_per_employee_and_is_idempotent(scheduler, ledger, org, annual):
    summary = scheduler.run_accrual_cycle(END_OF_MARCH)
    assert (summary.posted, summary.failed) == (6, 0)

    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.accrued_balance == Decimal("2")
    assert balance.next_accrual_date == date(2030, 4, 30)

    rerun = scheduler.run_accrual_cycle(END_OF_MARCH)
    assert (rerun.posted, rerun.skipped, rerun.failed) == (0, 0, 0)
    assert len(ledger.list_entries(org.alice.id, "AL")) == 1


def test_missed_periods_are_caught_up(scheduler, ledger, org, annual):
    scheduler.run_accrual_cycle(date(2030, 1, 31))
    summary = scheduler.run_accrual_cycle(date(2030, 4, 30))

    assert summary.posted == 18
    assert ledger.find_balance(org.alice.id, "AL").accrued_balance == Decimal("8")
    keys = [e.period_key for e in ledger.list_entries(org.alice.id, "AL")]
    assert keys == ["2030-01", "2030-02", "2030-03", "2030-04"]


def test_ineligible_pairs_are_skipped(scheduler, ledger, org, annual, make_leave_type):
    make_leave_type("PL", eligibility_rules=[{"kind": "gender", "allowed": ["M"]}])

    summary = scheduler.run_accrual_cycle(END_OF_MARCH)
    assert summary.posted == 8
    assert summary.skipped == 4
    assert ledger.find_balance(org.alice.id, "PL") is None
    assert ledger.find_balance(org.bob.id, "PL").accrued_balance == Decimal("2")


def test_zero_rate_types_post_nothing(scheduler, db_session, org, make_leave_type):
    make_leave_type("LOP", accrual_rate=Decimal("0"), accrual_cap=None)
    summary = scheduler.run_accrual_cycle(END_OF_MARCH)
    assert summary.posted == 0
    assert db_session.query(AccrualLedgerEntry).count() == 0


def test_one_failure_does_not_stop_the_run(scheduler, ledger, org, annual, monkeypatch):
    original = scheduler.ledger.post_accrual

    def flaky(employee_id, *args, **kwargs):
        if employee_id == org.alice.id:
            raise RuntimeError("ledger unavailable")
        return original(employee_id, *args, **kwargs)

    monkeypatch.setattr(scheduler.ledger, "post_accrual", flaky)
    summary = scheduler.run_accrual_cycle(END_OF_MARCH)

    assert summary.posted == 5
    assert summary.failed == 1
    assert summary.errors[0].employee_id == org.alice.id
    assert "ledger unavailable" in summary.errors[0].error
    assert ledger.find_balance(org.bob.id, "AL").accrued_balance == Decimal("2")


def test_already_posted_period_is_skipped(scheduler, ledger, db_session, org, annual):
    ledger.post_accrual(org.alice.id, annual.id, END_OF_MARCH)
    # Schedule left pointing at the posted period
    db_session.query(EmployeeLeaveBalance).filter(
        EmployeeLeaveBalance.employee_id == org.alice.id
    ).update({"next_accrual_date": END_OF_MARCH}, synchronize_session=False)
    db_session.commit()

    summary = scheduler.run_accrual_cycle(END_OF_MARCH)
    assert summary.posted == 5
    assert summary.skipped == 1
    assert ledger.find_balance(org.alice.id, "AL").next_accrual_date == date(2030, 4, 30)
    assert len(ledger.list_entries(org.alice.id, "AL")) == 1


def test_year_end_rollover_and_expiry(scheduler, ledger, org, make_leave_type):
    make_leave_type("AL", carry_forward_expiry_months=3)
    scheduler.run_accrual_cycle(END_OF_MARCH)

    rollover = scheduler.run_carry_forward(date(2031, 1, 1))
    assert (rollover.rolled_over, rollover.failed) == (6, 0)
    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.policy_year == 2031
    assert balance.carry_forward_balance == Decimal("2")
    assert balance.carry_forward_expires_on == date(2031, 4, 1)

    again = scheduler.run_carry_forward(date(2031, 1, 1))
    assert again.rolled_over == 0

    summary = scheduler.run_accrual_cycle(date(2031, 4, 1))
    assert summary.expired == 6
    balance = ledger.find_balance(org.alice.id, "AL")
    assert balance.carry_forward_balance == Decimal("0")
    ledger.verify(org.alice.id, "AL")


def test_run_scheduled_jobs(session_factory, org, annual):
    result = run_scheduled_jobs(session_factory, as_of=END_OF_MARCH)
    assert result["accrual"]["posted"] == 6
    assert result["carry_forward"]["rolled_over"] == 0
    assert result["escalated"] == []
