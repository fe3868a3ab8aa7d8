import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from leave_admin.core.config import settings

# Correlation id of the HTTP request or scheduler job being processed
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "multipart")


class LeaveJsonFormatter(jsonlogger.JsonFormatter):
    """JSON records tagged with service, environment and correlation id."""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.app_name
        log_record["environment"] = settings.environment

        req_id = request_id_var.get()
        if req_id:
            log_record["request_id"] = req_id


def setup_logging() -> None:
    root = logging.getLogger()
    if any(isinstance(h.formatter, LeaveJsonFormatter) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(LeaveJsonFormatter("%(timestamp) %(level) %(name) %(message)"))
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
