"""
Storyboard Credit Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    credits,
)
from services.credit_errors import LedgerError
from services.credit_maintenance import recover_stale_reservations


async def _periodic_stale_reservation_sweep() -> None:
    interval_minutes = max(int(settings.STALE_RESERVATION_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            released = await recover_stale_reservations()
            if released:
                print(f"🧹 Stale reservation sweep released {released} reservations.")
        except Exception as exc:
            print(f"⚠️ Stale reservation sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Storyboard Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        released = await recover_stale_reservations()
        if released:
            print(f"♻️ Released {released} stale credit reservations after startup.")
    except Exception as exc:
        print(f"⚠️ Stale reservation recovery skipped: {exc}")
    sweep_task = None
    if int(settings.STALE_RESERVATION_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_stale_reservation_sweep())
        print(
            "📅 Stale reservation sweep loop enabled "
            f"(every {int(settings.STALE_RESERVATION_SWEEP_INTERVAL_MINUTES)} min)."
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
    title="Storyboard Credit Ledger API",
    description="Reserve, commit, release and refund generation credits",
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


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Storyboard Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
