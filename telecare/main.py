import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from telecare.api.v1.appointments import router as appointments_router
from telecare.api.v1.consultations import router as consultations_router
from telecare.api.v1.prescriptions import router as prescriptions_router
from telecare.api.v1.schedules import router as schedules_router
from telecare.api.v1.subscriptions import router as subscriptions_router
from telecare.core.config import settings
from telecare.core.db import SessionLocal
from telecare.core.errors import DomainError
from telecare.core.logging import configure_logging
from telecare.services.container import build_services

logger = logging.getLogger(__name__)


async def run_maintenance() -> dict:
    """One pass of the background jobs: expiry, stale sessions, room retries, outbox."""
    async with SessionLocal() as db:
        svc = build_services(db)
        return {
            "expired": await svc.ledger.sweep_expired(),
            "stale_sessions": await svc.care.end_stale_sessions(),
            "rooms": await svc.care.retry_pending_rooms(),
            "redelivered": await svc.bus.redeliver_pending(),
        }


async def _maintenance_loop(interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            result = await run_maintenance()
            logger.debug("Maintenance pass: %s", result)
        except Exception:
            logger.exception("Maintenance pass failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    task = None
    if settings.SUBSCRIPTION_SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_maintenance_loop(settings.SUBSCRIPTION_SWEEP_INTERVAL_SECONDS))
        logger.info("🚀 Maintenance loop every %ss", settings.SUBSCRIPTION_SWEEP_INTERVAL_SECONDS)
    yield
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="Telecare API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable},
    )


app.include_router(appointments_router)
app.include_router(consultations_router)
app.include_router(prescriptions_router)
app.include_router(schedules_router)
app.include_router(subscriptions_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
