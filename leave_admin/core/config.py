import os
import logging
from pydantic import BaseModel, Field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class ConflictSettings(BaseModel):
    # Share of a department concurrently on approved leave.
    # healthy < warning_threshold <= warning <= critical_threshold < critical
    warning_threshold: float = Field(default=float(os.getenv("CONFLICT_WARNING_THRESHOLD", "0.30")))
    critical_threshold: float = Field(default=float(os.getenv("CONFLICT_CRITICAL_THRESHOLD", "0.50")))


class LedgerSettings(BaseModel):
    max_retries: int = Field(default=int(os.getenv("LEDGER_MAX_RETRIES", "3")))
    retry_wait_seconds: float = Field(default=float(os.getenv("LEDGER_RETRY_WAIT_SECONDS", "0.05")))
    lock_timeout_seconds: float = Field(default=float(os.getenv("LEDGER_LOCK_TIMEOUT_SECONDS", "10")))


class WorkflowSettings(BaseModel):
    escalation_sla_hours: int = Field(default=int(os.getenv("ESCALATION_SLA_HOURS", "48")))
    # Roles allowed to push a request through a blocking conflict
    override_roles: List[str] = Field(
        default_factory=lambda: _env_list("CONFLICT_OVERRIDE_ROLES", "hr,director,admin")
    )
    # Roles allowed to act on any approval step and to cancel on behalf of others
    approver_roles: List[str] = Field(
        default_factory=lambda: _env_list("APPROVER_ROLES", "manager,hr,director,admin")
    )


class SchedulerSettings(BaseModel):
    enabled: bool = Field(default=_env_bool("ACCRUAL_SCHEDULER_ENABLED", "false"))
    interval_seconds: int = Field(default=int(os.getenv("ACCRUAL_SCHEDULER_INTERVAL_SECONDS", "3600")))


class Config(BaseModel):
    app_name: str = "Leave Administration Service"
    environment: str = os.getenv("APP_ENV", "development")
    api_prefix: str = "/api"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./leave.db")

    version: str = "1.0.0"
    build_id: str = os.getenv("BUILD_ID", "local")
    request_id_header: str = "X-Request-ID"

    # CORS: comma-separated origins from env
    cors_origins: List[str] = Field(
        default_factory=lambda: _env_list(
            "CORS_ORIGINS",
            "http://localhost:3000,http://localhost:3001,"
            "http://127.0.0.1:3000,http://127.0.0.1:3001",
        )
    )
    rate_limit_per_minute: int = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))

    conflicts: ConflictSettings = ConflictSettings()
    ledger: LedgerSettings = LedgerSettings()
    workflow: WorkflowSettings = WorkflowSettings()
    scheduler: SchedulerSettings = SchedulerSettings()


settings = Config()

# --- Startup Validation ---
_logger = logging.getLogger(__name__)
if not 0 <= settings.conflicts.warning_threshold <= settings.conflicts.critical_threshold <= 1:
    raise RuntimeError(
        "FATAL: conflict thresholds must satisfy 0 <= warning <= critical <= 1 "
        f"(got warning={settings.conflicts.warning_threshold}, critical={settings.conflicts.critical_threshold})."
    )

if settings.environment not in ("development", "testing"):
    if settings.database_url.startswith("sqlite"):
        raise RuntimeError(
            "FATAL: DATABASE_URL must point at a server database for non-development environments."
        )
elif settings.database_url.startswith("sqlite"):
    _logger.warning("Using SQLite storage; row locks are emulated in-process only.")
