import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chairtime.api.routes import appointments, availability, reminders, sms
from chairtime.core.config import settings, _ENV_FILE
from chairtime.core.db import async_session_maker
from chairtime.core.errors import SchedulingError, TransientStoreError
from chairtime.services.booking_service import purge_cancelled_older_than
from chairtime.services.notification_gateway import get_notification_gateway
from chairtime.services.reminder_service import run_full

if os.getenv("ENV") != "production":
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60  # 24 hours


async def _run_cancelled_cleanup() -> None:
    """Purge cancelled appointments older than cancelled_retention_days."""
    try:
        async with async_session_maker() as session:
            try:
                n = await purge_cancelled_older_than(session, settings.cancelled_retention_days, datetime.now(UTC))
                await session.commit()
                if n:
                    logger.info("Appointment cleanup: purged %d cancelled record(s) older than %d days", n, settings.cancelled_retention_days)
            except Exception:
                await session.rollback()
                raise
    except Exception as e:
        logger.exception("Appointment cleanup failed: %s", e)


async def _cleanup_loop() -> None:
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
        await _run_cancelled_cleanup()


async def _reminder_loop() -> None:
    """In-process alternative to an external cron hitting /reminders/run."""
    while True:
        try:
            await run_full(async_session_maker, get_notification_gateway(), datetime.now(UTC))
        except Exception as e:
            logger.exception("Reminder run failed: %s", e)
        await asyncio.sleep(settings.reminder_run_interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    logger.info(
        "Slot grid %d min, lead time %d min, reminder runs every %d min",
        settings.slot_granularity_minutes, settings.min_lead_time_minutes, settings.reminder_run_interval_minutes,
    )
    if not settings.sms_enabled and not settings.email_enabled:
        logger.warning("No notification channel configured; reminders will be recorded as failed")
    await _run_cancelled_cleanup()
    tasks = [asyncio.create_task(_cleanup_loop())]
    if settings.reminder_loop_enabled:
        tasks.append(asyncio.create_task(_reminder_loop()))
    yield
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Chairtime API",
    description="Availability, booking and reminders for appointment shops",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(availability.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(reminders.router, prefix="/api/v1")
app.include_router(sms.router, prefix="/api/v1")


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


@app.exception_handler(SchedulingError)
async def scheduling_exception_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    """Conflicts, validation failures and store outages each keep their own status so callers can react."""
    headers = _cors_headers(request.headers.get("origin"))
    if isinstance(exc, TransientStoreError):
        headers["Retry-After"] = "5"
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__, **exc.details},
        headers=headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return actual error in JSON; include CORS so 500 responses are not blocked by browser."""
    origin = request.headers.get("origin")
    headers = _cors_headers(origin)
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )
    logger.exception("Unhandled exception: %s", exc)
    detail = f"{type(exc).__name__}: {str(exc)}"
    return JSONResponse(
        status_code=500,
        content={"detail": detail},
        headers=headers,
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
