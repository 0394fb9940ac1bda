# roster/transport/http_app.py
"""
HTTP application.

Security layers:
1. Public: health check and Twilio webhooks (signature validated)
2. Protected: operator endpoints that start workflows (admin token)
3. No information leakage in production

Route handlers only trigger workflow starts; the work itself runs as
jobs in the worker.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from roster.config import settings
from roster.core.errors import CrewingError, ValidationError
from roster.core.notifications.jobs import JOB_CALL_CARDS
from roster.infra.audit_log import audit_event
from roster.infra.db_async import close_pool, init_pool
from roster.infra.error_tracking import SlackAlerter, get_error_tracker, init_error_tracking
from roster.infra.logging_config import get_logger, mask_address, setup_logging
from roster.infra.metrics import get_metrics_collector
from roster.infra.migrations_async import validate_schema_version
from roster.infra.pg_job_repo_async import get_job_repo
from roster.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from roster.services import Services, get_services
from roster.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from roster.transport.schemas import ActivityOut, CallCardsIn, JobQueuedOut, PushIn, PushOut
from roster.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    require_admin_auth,
    sanitize_error_message,
)
from roster.transport.twilio_webhook import delivery_status_handler, inbound_sms_handler

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def services_dep() -> Services:
    return get_services()


async def rate_limit_check(request: Request) -> None:
    """Rate limit dependency for protected endpoints"""
    await request.app.state.rate_limiter(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    logger.info(f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}")

    await init_pool()
    logger.info("Database pool initialized")

    if settings.is_production:
        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")
        if not settings.require_webhook_validation:
            logger.critical("REQUIRE_WEBHOOK_VALIDATION must be true in production")
            raise RuntimeError("Webhook validation disabled in production")

    check_configured_tokens()

    # Does NOT run migrations: python -m roster.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}", extra=schema_result)
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m roster.infra.migrate",
            exc_info=True,
        )
        raise

    init_error_tracking(settings.sentry_dsn, settings.app_env)

    services = get_services()
    fastapi_app.state.rate_limiter = RateLimitDependency(
        InMemoryRateLimiter(max_requests=settings.rate_limit_per_minute, window_seconds=60)
    )

    # Only in "all" or "worker" mode, so web replicas never run jobs twice
    job_worker = None
    if settings.run_mode in ("all", "worker") and settings.job_worker_enabled:
        from roster.infra.job_worker import JobWorker

        job_worker = JobWorker(
            repo=get_job_repo(),
            poll_interval=settings.job_worker_poll_interval,
            batch_size=settings.job_worker_batch_size,
            base_retry_delay=settings.job_worker_base_retry_delay,
            stale_timeout=settings.job_worker_stale_timeout,
            completed_ttl_days=settings.job_cleanup_completed_ttl_days,
            failed_ttl_days=settings.job_cleanup_failed_ttl_days,
            tracker=get_error_tracker(),
            alert=SlackAlerter(settings.slack_webhook_url),
        )
        services.register_jobs(job_worker)
        logger.info(f"Job worker handlers: {job_worker.job_types}")
        await job_worker.start()
    elif settings.run_mode not in ("all", "worker"):
        logger.info(f"Job worker skipped (run_mode={settings.run_mode})")
    else:
        logger.info("Job worker skipped (job_worker_enabled=false)")

    if settings.twilio_webhook_url:
        logger.info(f"Twilio inbound SMS URL: {settings.twilio_webhook_url}")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    if job_worker is not None:
        await job_worker.stop()

    from roster.infra.http_client import close_all_sessions
    await close_all_sessions()

    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Roster Outreach",
    description="Crew availability outreach and call-card delivery",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(CrewingError)
async def crewing_error_handler(request: Request, exc: CrewingError):
    if exc.status_code >= 500:
        logger.error(f"Workflow error: {exc.detail}", extra={"status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    return {"status": "healthy"}


@app.post("/webhooks/twilio/sms")
async def webhook_twilio_sms(request: Request):
    """Inbound SMS reply from a candidate. Signature validated; queued for classification."""
    return await inbound_sms_handler(request, get_job_repo())


@app.post("/webhooks/twilio/delivery-status")
async def webhook_twilio_delivery_status(request: Request, services: Services = Depends(services_dep)):
    """Twilio message status callback for call-card SMS."""
    return await delivery_status_handler(request, services.call_cards)


# ============================================================================
# OPERATOR ENDPOINTS (admin token)
# ============================================================================

_admin = [Depends(rate_limit_check), Depends(require_admin_auth)]


@app.post("/crewing/positions/{position_id}/fill", dependencies=_admin, response_model=JobQueuedOut)
async def fill_position(position_id: int, services: Services = Depends(services_dep)):
    """Start contacting the position's candidates in priority order."""
    job_id = await services.advancer.fill(position_id)
    return JobQueuedOut(job_id=job_id)


@app.post("/crewing/attempts/{attempt_id}/send", dependencies=_admin)
async def resend_attempt(attempt_id: int, services: Services = Depends(services_dep)):
    """Explicit re-send for an attempt whose outreach failed (still `pending`)."""
    sent = await services.attempts.resend(attempt_id)
    audit_event("attempt.resend", entity=f"attempt:{attempt_id}", detail=f"sent={sent}")
    return {"sent": sent}


@app.post("/call-sheets/{call_sheet_id}/call-cards", dependencies=_admin, response_model=JobQueuedOut)
async def send_call_cards(call_sheet_id: str, payload: CallCardsIn):
    if payload.mode == "single" and not payload.member_id:
        raise ValidationError("member_id is required for a single call card")
    if payload.mode == "custom" and not (payload.body and payload.member_ids):
        raise ValidationError("body and member_ids are required for a custom message")

    job_id = await get_job_repo().enqueue(
        JOB_CALL_CARDS,
        {"call_sheet_id": call_sheet_id, **payload.model_dump(exclude_none=True)},
    )
    audit_event("call_sheet.call_cards", entity=f"call_sheet:{call_sheet_id}", detail=f"mode={payload.mode}")
    return JobQueuedOut(job_id=job_id)


@app.post("/call-sheets/{call_sheet_id}/push", dependencies=_admin, response_model=PushOut)
async def push_call_sheet(call_sheet_id: str, payload: PushIn, services: Services = Depends(services_dep)):
    push = await services.push.apply_push(
        call_sheet_id,
        hours=payload.hours,
        minutes=payload.minutes,
        notify=payload.notify,
        pushed_by=payload.pushed_by,
        document_ref=payload.document_ref,
    )
    return PushOut(push_id=push.id, hours=push.hours, minutes=push.minutes, notify=push.notify)


@app.get("/call-sheets/{call_sheet_id}/activity", dependencies=_admin, response_model=list[ActivityOut])
async def call_sheet_activity(call_sheet_id: str, limit: int = 50, services: Services = Depends(services_dep)):
    records = await services.call_cards.activity(call_sheet_id, limit=min(max(limit, 1), 200))
    return [
        ActivityOut(
            type=record.type.value,
            member_id=record.member_id,
            recipient=mask_address(record.recipient_address) if record.recipient_address else None,
            external_id=record.external_id,
            created_at=record.created_at.isoformat() if record.created_at else None,
        )
        for record in records
    ]


@app.get("/metrics", dependencies=[Depends(require_admin_auth)])
def metrics():
    return get_metrics_collector().get_metrics()


@app.get("/admin/jobs", dependencies=[Depends(require_admin_auth)])
async def admin_jobs_status(status: str | None = None, limit: int = 50):
    """Job queue status: counts by status and recent jobs."""
    repo = get_job_repo()
    counts = await repo.count_by_status()
    recent = await repo.get_recent(limit=limit, status=status)
    return {
        "counts": counts,
        "recent": [
            {
                "id": j.id,
                "type": j.job_type,
                "status": j.status,
                "attempts": j.attempts,
                "max_attempts": j.max_attempts,
                "error": j.error_message,
                "scheduled_at": j.scheduled_at.isoformat(),
            }
            for j in recent
        ],
    }
