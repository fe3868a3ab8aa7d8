from typing import Any, Dict, Optional


class AppException(Exception):
    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "BUSINESS_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class NotFoundError(AppException):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            message=f"{entity} {entity_id} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details={"entity": entity, "id": entity_id}
        )


class ValidationError(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=422, error_code="VALIDATION_FAILED", details=details)


class PermissionDeniedError(AppException):
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message=message, status_code=403, error_code="PERMISSION_DENIED")


# --- Submission guards ---

class IneligibleError(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=422, error_code="INELIGIBLE", details=details)


class NoticePeriodViolation(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=422, error_code="NOTICE_PERIOD_VIOLATION", details=details)


class DurationBoundsViolation(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=422, error_code="DURATION_BOUNDS_VIOLATION", details=details)


class MinimumGapViolation(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=409, error_code="MINIMUM_GAP_VIOLATION", details=details)


class OverlappingRequestError(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=409, error_code="OVERLAPPING_REQUEST", details=details)


class InsufficientBalanceError(AppException):
    def __init__(self, requested, available, details: Optional[Dict[str, Any]] = None):
        self.requested = requested
        self.available = available
        super().__init__(
            message=f"Insufficient balance. Requested: {requested}, Available: {available}",
            status_code=409,
            error_code="INSUFFICIENT_BALANCE",
            details={"requested": str(requested), "available": str(available), **(details or {})}
        )


class BlackoutConflictError(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=409, error_code="BLACKOUT_CONFLICT", details=details)


class CoverageConflictError(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=409, error_code="COVERAGE_CONFLICT", details=details)


# --- Lifecycle / ledger ---

class InvalidStateTransition(AppException):
    def __init__(self, current: str, target: str, request_id: Optional[int] = None):
        self.current = current
        self.target = target
        super().__init__(
            message=f"Cannot move leave request from '{current}' to '{target}'",
            status_code=409,
            error_code="INVALID_STATE_TRANSITION",
            details={"request_id": request_id, "current": current, "target": target}
        )


class AlreadyPostedError(AppException):
    def __init__(self, period_key: str, details: Optional[Dict[str, Any]] = None):
        self.period_key = period_key
        super().__init__(
            message=f"Accrual for period {period_key} has already been posted",
            status_code=409,
            error_code="ALREADY_POSTED",
            details={"period": period_key, **(details or {})}
        )


class ConcurrentModificationError(AppException):
    """Lock contention or a lost compare-and-swap on a balance row. Safe to retry."""
    def __init__(self, message: str = "Balance was modified concurrently, please retry"):
        super().__init__(message=message, status_code=409, error_code="CONCURRENT_MODIFICATION")


class LedgerInvariantError(AppException):
    """Balance no longer matches its ledger. Never retried."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, error_code="LEDGER_INVARIANT_VIOLATION", details=details)


class PolicyDefinitionError(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, error_code="INVALID_POLICY_DEFINITION", details=details)
