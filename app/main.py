from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app import db
from app.config import AppInfo, Settings, get_settings
from app.core.logging import get_logger, setup_logging
from app.core.runtime_state import set_scheduler_active
import app.models  # noqa: F401  registers every table
from app.routers import get_api_router
from app.services.commission import DEFAULT_COMMISSION_TIERS, validate_commission_tiers
from app.services.cron import expire_payments_once, heartbeat_scheduler_lock, payout_cycle_once
from app.services.locks import release_scheduler_lock, try_acquire_scheduler_lock
from app.utils.errors import ConfigurationError, PaymentsError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}
EXPIRY_SCAN_INTERVAL_SECONDS = 60


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    runtime_settings = get_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Idempotency-Key", "X-Actor"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_webhook_secrets(settings: Settings) -> None:
    """Fail fast when no Stripe webhook secret is configured outside dev."""

    configured = bool(settings.STRIPE_WEBHOOK_SECRET or settings.STRIPE_WEBHOOK_SECRET_NEXT)
    if configured:
        if settings.STRIPE_WEBHOOK_SECRET is None:
            logger.warning(
                "Primary Stripe webhook secret unset; relying on STRIPE_WEBHOOK_SECRET_NEXT only.",
                extra={"env": settings.app_env},
            )
        return
    if settings.app_env.lower() != "dev":
        logger.error(
            "Stripe webhook secret is missing; configure STRIPE_WEBHOOK_SECRET before startup.",
            extra={"env": settings.app_env},
        )
        raise ConfigurationError("Missing Stripe webhook secret in non-dev environment.")
    logger.warning("Stripe webhook secret is not configured; allowed in dev only.", extra={"env": settings.app_env})


def _assert_commission_table(settings: Settings) -> None:
    problems = validate_commission_tiers(DEFAULT_COMMISSION_TIERS)
    if not problems:
        return
    if settings.app_env.lower() != "dev":
        logger.error("Commission table is invalid", extra={"problems": problems})
        raise ConfigurationError("Invalid commission table.", details={"problems": problems})
    logger.warning("Commission table is invalid; allowed in dev only.", extra={"problems": problems})


def _start_scheduler(settings: Settings) -> AsyncIOScheduler:
    runner = AsyncIOScheduler()
    runner.add_job(
        payout_cycle_once,
        "interval",
        seconds=settings.PAYOUT_SCAN_INTERVAL_SECONDS,
        id="payout-cycle",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    runner.add_job(
        expire_payments_once,
        "interval",
        seconds=EXPIRY_SCAN_INTERVAL_SECONDS,
        id="expire-payments",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    runner.add_job(
        heartbeat_scheduler_lock,
        "interval",
        seconds=max(settings.SCHEDULER_LOCK_TTL_SECONDS // 3, 1),
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    runner.start()
    set_scheduler_active(True, jobs=tuple(job.id for job in runner.get_jobs()))
    return runner


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_webhook_secrets(settings)
    _assert_commission_table(settings)

    db.init_engine()
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info("Skipping create_all(); use Alembic migrations. APP_ENV=%s", settings.app_env)

    # Only the runner holding the scheduler lease runs background jobs.
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock(ttl_seconds=settings.SCHEDULER_LOCK_TTL_SECONDS)
        if lock_acquired:
            scheduler = _start_scheduler(settings)
        else:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(PaymentsError)
async def payments_exception_handler(request: Request, exc: PaymentsError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request failed",
        extra={"path": request.url.path, "code": exc.code, "status_code": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    payload = error_response("VALIDATION_ERROR", "Request validation failed.", {"errors": errors})
    return JSONResponse(status_code=422, content=payload)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


__all__ = ["app"]
