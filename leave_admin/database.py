from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from leave_admin.core.config import settings

DATABASE_URL = settings.database_url


def build_engine(url: str):
    if url.startswith("postgresql"):
        return create_engine(url, pool_pre_ping=True)
    # SQLite: shared across request threads; wait on the write lock instead of failing fast
    return create_engine(
        url, connect_args={"check_same_thread": False, "timeout": 30}
    )


engine = build_engine(DATABASE_URL)

# Services commit explicitly; loaded balances stay readable after commit
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


def get_db():
    """One session per request, closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create the directory, policy, ledger, request and audit tables on `bind` (default engine)."""
    from leave_admin.models import (  # noqa: F401
        department, employee, leave_type, leave_balance, ledger_entry,
        leave_request, audit_log, notification
    )
    Base.metadata.create_all(bind=bind or engine)
