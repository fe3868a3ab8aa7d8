"""
Leave Administration Service - FastAPI Application

1. /docs and /openapi.json at root level (no API prefix)
2. Middleware order: CORS -> CorrelationId -> Logging
3. init_db() and the accrual scheduler are started from the lifespan
4. Domain exceptions are rendered by the handlers below
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Union

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from leave_admin.core.config import settings
from leave_admin.core.exceptions import AppException, LedgerInvariantError
from leave_admin.core.limiter import limiter
from leave_admin.core.logging import setup_logging
from leave_admin.core.middleware import CorrelationIdMiddleware, LoggingMiddleware
from leave_admin.database import SessionLocal, get_db, init_db
from leave_admin.models import LeaveType
from leave_admin.routers.api_router import api_router
from leave_admin.services.accrual_scheduler import accrual_loop
from leave_admin.services.notification import DatabaseNotificationDispatcher

# ============================================================================
# LOGGING SETUP
# ============================================================================
setup_logging()
logger = logging.getLogger(__name__)


# ============================================================================
# LIFESPAN MANAGEMENT
# ============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: initialize the schema, the notification dispatcher and, when
    enabled, the background accrual scheduler.
    Shutdown: stop the scheduler and drain pending notifications.
    """
    logger.info(f"Starting {settings.app_name} v{settings.version} ({settings.environment})")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    app.state.notifier = DatabaseNotificationDispatcher(SessionLocal)
    scheduler_task = None
    if settings.scheduler.enabled:
        scheduler_task = asyncio.create_task(accrual_loop(SessionLocal, notifier=app.state.notifier))
        logger.info("Accrual scheduler started")

    yield

    logger.info("Gracefully shutting down...")
    if scheduler_task is not None and not scheduler_task.done():
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            logger.info("Accrual scheduler stopped")
    app.state.notifier.shutdown()


# ============================================================================
# FASTAPI INSTANCE
# ============================================================================
app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Leave policies, balance ledger, team coverage and approval workflow",
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# ============================================================================
# RATE LIMITER
# ============================================================================
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ============================================================================
# MIDDLEWARE STACK (last added runs first)
# ============================================================================
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[settings.request_id_header, "X-Process-Time"],
)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request payloads that fail schema validation use the same envelope as domain errors."""
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body") or "request",
            "msg": error["msg"],
            "code": "VALIDATION_FAILED",
        }
        for error in exc.errors()
    ]
    logger.warning("Request validation failed", extra={"path": request.url.path, "errors": errors})
    return JSONResponse(
        status_code=422,
        content={"success": False, "errors": errors}
    )


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    """Handle domain-specific application exceptions."""
    if isinstance(exc, LedgerInvariantError):
        logger.error(f"Ledger invariant violation: {exc.message}", extra={"details": exc.details})
    else:
        logger.warning(f"AppException: {exc.message}", extra={"code": exc.error_code})
    error = {"msg": exc.message, "code": exc.error_code}
    if exc.details:
        error["details"] = exc.details
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "errors": [error]}
    )


@app.exception_handler(StarletteHTTPException)
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: Union[HTTPException, StarletteHTTPException]):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "errors": [{"msg": message, "code": f"HTTP_{exc.status_code}"}]}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Fallback handler for unhandled server errors."""
    logger.exception("Unhandled server error", extra={"path": request.url.path})
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "errors": [{"msg": "An unexpected server error occurred."}]
        }
    )


# ============================================================================
# ROUTER INCLUSION
# ============================================================================
app.include_router(api_router, prefix=settings.api_prefix)


# ============================================================================
# OPERATIONAL ENDPOINTS (at root level)
# ============================================================================
@app.get("/", tags=["Health"])
def root():
    return {
        "message": f"{settings.app_name} API",
        "version": settings.version,
        "api": settings.api_prefix,
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"])
def health_check():
    """Liveness only; no database round trip."""
    return {
        "status": "up",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.version,
        "build": settings.build_id,
        "environment": settings.environment,
        "scheduler": "enabled" if settings.scheduler.enabled else "disabled",
    }


@app.get("/readiness", tags=["Health"])
def readiness_check(db: Session = Depends(get_db)):
    """
    Ready once the schema answers and the policy catalog can be read.
    An empty catalog is reported but does not fail the probe.
    """
    try:
        db.execute(text("SELECT 1"))
        active_types = db.query(func.count(LeaveType.id)).filter(LeaveType.is_active.is_(True)).scalar()
    except SQLAlchemyError as e:
        logger.error(f"Readiness check failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready")
    return {
        "status": "ready",
        "components": {"database": "connected", "policy_catalog": active_types},
    }
