from __future__ import annotations

from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stablepay import db
from stablepay.config import AppInfo, get_settings
from stablepay.core.logging import get_logger, setup_logging
from stablepay.core.runtime_state import set_scheduler_active
import stablepay.models  # registers the tables
from stablepay.models.merchant import SettlementSchedule
from stablepay.routers import get_api_router
from stablepay.services import cron
from stablepay.services.scheduler_lock import release_scheduler_lock, try_acquire_scheduler_lock
from stablepay.utils.errors import StablePayError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    runtime_settings = get_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="stablepay")
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _build_scheduler() -> AsyncIOScheduler:
    jobs = AsyncIOScheduler(timezone="UTC")
    jobs.add_job(cron.sweep_expired_payments_once, "interval", minutes=1, id="sweep-expired-payments")
    jobs.add_job(cron.refresh_pending_transactions_once, "interval", minutes=1, id="refresh-pending-transactions")
    jobs.add_job(cron.reconcile_settlements_once, "interval", minutes=5, id="reconcile-settlements")
    jobs.add_job(
        cron.run_settlements_once,
        "cron",
        hour=0,
        minute=15,
        args=[SettlementSchedule.DAILY],
        id="settlements-daily",
    )
    jobs.add_job(
        cron.run_settlements_once,
        "cron",
        day_of_week="mon",
        hour=0,
        minute=30,
        args=[SettlementSchedule.WEEKLY],
        id="settlements-weekly",
    )
    jobs.add_job(
        cron.run_settlements_once,
        "cron",
        day=1,
        hour=1,
        minute=0,
        args=[SettlementSchedule.MONTHLY],
        id="settlements-monthly",
    )
    jobs.add_job(cron.heartbeat_scheduler_lock, "interval", seconds=60, id="scheduler-lock-heartbeat")
    return jobs


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Application startup", extra={"env": settings.app_env})
    if not settings.chain_webhook_secret:
        logger.warning("Chain webhook secret not configured; /chain/webhook will reject callbacks")

    db.init_engine()
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in ALLOWED_CREATE_ENV:
        logger.warning("Running Base.metadata.create_all(); use Alembic migrations outside dev/test")
        db.create_all()

    # Enable SCHEDULER_ENABLED on one runner; the DB lock guards against mistakes.
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            scheduler = _build_scheduler()
            scheduler.start()
            set_scheduler_active(True)
            logger.info("Scheduler started", extra={"jobs": len(scheduler.get_jobs())})
        else:
            logger.warning("Scheduler disabled because lock is held by another instance")
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


@app.exception_handler(StablePayError)
async def stablepay_exception_handler(request: Request, exc: StablePayError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("Collaborator failure", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    return JSONResponse(status_code=500, content=error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred."))


__all__ = ["app"]
