from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from leave_admin.services.base import BaseService
from leave_admin.models.audit_log import AuditLog


def _sanitize(obj: Any) -> Any:
    """Make nested payloads JSON-column safe."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, dict):
        return {k: _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_sanitize(i) for i in obj]
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj


class AuditService(BaseService):
    def log_action(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[int],
        user_id: Optional[int],
        details: dict,
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None
    ) -> AuditLog:
        """
        Append an audit entry to the caller's transaction.
        Strictly append-only. Not committed here: the entry lands or disappears
        together with the change it describes.
        """
        db_log = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            details=_sanitize(details),
            before_state=_sanitize(before_state),
            after_state=_sanitize(after_state)
        )
        self.db.add(db_log)
        return db_log

    # Static wrapper for call sites without a service instance
    @staticmethod
    def log(db, *args, **kwargs):
        service = AuditService(db)
        return service.log_action(*args, **kwargs)
