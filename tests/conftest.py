import pytest
import os
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set env before importing app components
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LEDGER_RETRY_WAIT_SECONDS"] = "0.01"
os.environ["ACCRUAL_SCHEDULER_ENABLED"] = "false"

from leave_admin.database import get_db, init_db
from leave_admin.main import app
from leave_admin.models import Department, Employee, LeaveRequest, LeaveType
from leave_admin.services.ledger import BalanceLedger
from leave_admin.services.leave_workflow import LeaveWorkflowService
from leave_admin.services.notification import RecordingNotificationDispatcher
from fastapi.testclient import TestClient

# 2030-03-04 is a Monday; everything below is scheduled around it
MONDAY = date(2030, 3, 4)
TODAY = date(2030, 2, 1)


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database per test; services commit and roll back for real."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def org(db_session):
    """
    Engineering department of five (director, manager, three reports) plus an
    HR approver who sits in a separate People department.
    """
    engineering = Department(name="Engineering", code="ENG")
    people = Department(name="People", code="PPL")
    db_session.add_all([engineering, people])
    db_session.flush()

    director = Employee(full_name="Dana Director", email="dana@example.com", role="director",
                        department_id=engineering.id, hire_date=date(2012, 1, 1), gender="F")
    hr = Employee(full_name="Hugo People", email="hugo@example.com", role="hr",
                  department_id=people.id, hire_date=date(2016, 5, 1), gender="M")
    db_session.add_all([director, hr])
    db_session.flush()

    manager = Employee(full_name="Maya Manager", email="maya@example.com", role="manager",
                       department_id=engineering.id, manager_id=director.id,
                       hire_date=date(2018, 1, 1), gender="F")
    db_session.add(manager)
    db_session.flush()

    reports = [
        Employee(full_name=name, email=f"{name.split()[0].lower()}@example.com", role="employee",
                 department_id=engineering.id, manager_id=manager.id,
                 hire_date=date(2020, 1, 1), gender=gender, jurisdiction="US-CA")
        for name, gender in [("Alice Able", "F"), ("Bob Baker", "M"), ("Carol Cruz", "F")]
    ]
    db_session.add_all(reports)
    engineering.hr_approver_id = hr.id
    engineering.director_id = director.id
    db_session.commit()

    alice, bob, carol = reports
    return SimpleNamespace(
        department=engineering, people=people, director=director, hr=hr,
        manager=manager, alice=alice, bob=bob, carol=carol
    )


@pytest.fixture(scope="function")
def make_leave_type(db_session):
    def _make(code="AL", **overrides) -> LeaveType:
        fields = dict(
            code=code,
            version=1,
            name=f"{code} Leave",
            accrual_method="fixed",
            accrual_rate=Decimal("2"),
            accrual_frequency="monthly",
            accrual_cap=Decimal("30"),
            carry_forward_allowed=True,
            max_carry_forward_days=Decimal("5"),
            use_it_or_lose_it=True,
            min_notice_days=0,
            day_counting="business_days",
            allow_half_day=True,
            requires_manager=True,
            holidays=[],
            blackout_periods=[],
            eligibility_rules=[],
        )
        fields.update(overrides)
        leave_type = LeaveType(**fields)
        db_session.add(leave_type)
        db_session.commit()
        return leave_type
    return _make


@pytest.fixture(scope="function")
def annual(make_leave_type):
    return make_leave_type("AL", name="Annual Leave")


@pytest.fixture(scope="function")
def make_request(db_session):
    """Insert a request row directly, bypassing the workflow (for coverage and ledger tests)."""
    def _make(employee, leave_type, start, end, status="approved", total_days=None) -> LeaveRequest:
        request = LeaveRequest(
            employee_id=employee.id,
            leave_type_id=leave_type.id,
            leave_type_code=leave_type.code,
            start_date=start,
            end_date=end,
            total_days=Decimal(total_days if total_days is not None else (end - start).days + 1),
            status=status,
        )
        db_session.add(request)
        db_session.commit()
        return request
    return _make


@pytest.fixture(scope="function")
def ledger(db_session):
    return BalanceLedger(db_session)


@pytest.fixture(scope="function")
def notifier():
    return RecordingNotificationDispatcher()


@pytest.fixture(scope="function")
def workflow(db_session, notifier):
    return LeaveWorkflowService(db_session, notifier=notifier)


@pytest.fixture(scope="function")
def client(db_session):
    """Get a TestClient that uses the test database session via dependency override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        app.state.notifier = RecordingNotificationDispatcher()
        yield c
    app.dependency_overrides.clear()
