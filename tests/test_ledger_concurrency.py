import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from leave_admin.core.exceptions import ConcurrentModificationError, InsufficientBalanceError
from leave_admin.core.locks import KeyedLockRegistry
from leave_admin.database import init_db
from leave_admin.models import Department, Employee, LeaveRequest, LeaveType
from leave_admin.services.leave_workflow import LeaveWorkflowService
from leave_admin.services.ledger import BalanceLedger

MONDAY = date(2030, 3, 4)


@pytest.fixture
def file_sessions(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


def test_parallel_reservations_never_overdraw(file_sessions):
    setup = file_sessions()
    department = Department(name="Support", code="SUP")
    setup.add(department)
    setup.flush()
    employee = Employee(full_name="Sam Support", email="sam@example.com", role="employee",
                        department_id=department.id, hire_date=date(2021, 1, 1))
    leave_type = LeaveType(code="AL", version=1, name="Annual Leave", accrual_rate=Decimal("2"),
                           accrual_cap=Decimal("30"))
    setup.add_all([employee, leave_type])
    setup.flush()
    requests = [
        LeaveRequest(employee_id=employee.id, leave_type_id=leave_type.id, leave_type_code="AL",
                     start_date=date(2030, 3, 4), end_date=date(2030, 3, 4),
                     total_days=Decimal("1"), status="pending")
        for _ in range(10)
    ]
    setup.add_all(requests)
    setup.commit()
    BalanceLedger(setup).adjust(employee.id, leave_type.id, 5, "opening balance")
    request_ids = [r.id for r in requests]
    setup.close()

    start = threading.Barrier(len(request_ids))

    def reserve(request_id):
        session = file_sessions()
        try:
            start.wait()
            BalanceLedger(session).reserve(employee.id, leave_type.id, 1, request_id)
            return "ok"
        except InsufficientBalanceError:
            return "insufficient"
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(request_ids)) as pool:
        outcomes = list(pool.map(reserve, request_ids))

    assert outcomes.count("ok") == 5
    assert outcomes.count("insufficient") == 5

    check = file_sessions()
    ledger = BalanceLedger(check)
    balance = ledger.find_balance(employee.id, "AL")
    assert balance.pending_balance == Decimal("5")
    assert balance.available_balance == Decimal("0")
    assert ledger.verify(employee.id, "AL")["available"] == Decimal("0")
    check.close()


def test_lock_registry_forgets_idle_keys():
    registry = KeyedLockRegistry()
    with registry.hold((1, "AL")):
        with registry.hold((1, "AL")):
            assert len(registry) == 1
        with registry.hold((2, "AL")):
            assert len(registry) == 2
    assert len(registry) == 0


def test_lock_registry_times_out():
    registry = KeyedLockRegistry()
    held = threading.Event()
    release = threading.Event()

    def holder():
        with registry.hold("key"):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(5)
    try:
        with pytest.raises(ConcurrentModificationError):
            with registry.hold("key", timeout=0.05):
                pass
    finally:
        release.set()
        thread.join()
    assert len(registry) == 0


def test_parallel_submissions_never_overdraw(file_sessions):
    setup = file_sessions()
    department = Department(name="Support", code="SUP")
    setup.add(department)
    setup.flush()
    manager = Employee(full_name="Mia Lead", email="mia@example.com", role="manager",
                       department_id=department.id, hire_date=date(2015, 1, 1))
    setup.add(manager)
    setup.flush()
    team = [
        Employee(full_name=f"Agent {n}", email=f"agent{n}@example.com", role="employee",
                 department_id=department.id, manager_id=manager.id, hire_date=date(2021, 1, 1))
        for n in range(4)
    ]
    leave_type = LeaveType(code="AL", version=1, name="Annual Leave", accrual_rate=Decimal("2"),
                           accrual_cap=Decimal("30"))
    setup.add_all(team + [leave_type])
    setup.commit()
    employee_id, leave_type_id = team[0].id, leave_type.id
    BalanceLedger(setup).adjust(employee_id, leave_type_id, 5, "opening balance")
    setup.close()

    # Ten one-day requests on ten different Mondays against five days of balance
    days = [MONDAY + timedelta(weeks=n) for n in range(10)]
    start = threading.Barrier(len(days))

    def submit(day):
        session = file_sessions()
        try:
            start.wait()
            LeaveWorkflowService(session).submit_request(
                employee_id, leave_type_id, day, day, today=date(2030, 2, 1)
            )
            return "ok"
        except InsufficientBalanceError:
            return "insufficient"
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(days)) as pool:
        outcomes = list(pool.map(submit, days))

    assert outcomes.count("ok") == 5
    assert outcomes.count("insufficient") == 5

    check = file_sessions()
    ledger = BalanceLedger(check)
    balance = ledger.find_balance(employee_id, "AL")
    assert balance.pending_balance == Decimal("5")
    assert balance.available_balance == Decimal("0")
    assert ledger.verify(employee_id, "AL")["available"] == Decimal("0")
    pending = check.query(LeaveRequest).filter(LeaveRequest.employee_id == employee_id).all()
    assert len(pending) == 5
    assert {r.status for r in pending} == {"pending"}
    check.close()
