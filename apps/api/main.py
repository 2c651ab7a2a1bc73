"""
Storage Ledger - FastAPI Backend
Storage credit accounting and upload admission control.
"""

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    storage,
    billing,
    admin,
)
from routers.errors import register_exception_handlers
from services.storage_jobs import run_reservation_sweep

logger = logging.getLogger(__name__)


async def _periodic_reservation_sweep() -> None:
    interval_minutes = max(int(settings.RESERVATION_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_reservation_sweep()
            failed = int(result.get("uploads_failed", 0) or 0)
            if failed:
                print(
                    f"🧹 Reservation sweep: failed={failed} "
                    f"released_credits={result.get('credits_released', 0)}"
                )
        except Exception as exc:
            logger.exception("Reservation sweep tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Storage Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await run_reservation_sweep()
        if recovered.get("uploads_failed"):
            print(f"♻️ Released {recovered['uploads_failed']} abandoned reservations after startup.")
    except Exception as exc:
        print(f"⚠️ Startup reservation sweep skipped: {exc}")
    sweep_task = None
    if int(settings.RESERVATION_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_reservation_sweep())
        print(
            "📅 Reservation sweep loop enabled "
            f"(every {int(settings.RESERVATION_SWEEP_INTERVAL_MINUTES)} min, "
            f"TTL {int(settings.RESERVATION_TTL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Storage Ledger API",
    description="Storage credit ledger and upload admission control",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(storage.router, prefix="/storage", tags=["Storage"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Storage Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
