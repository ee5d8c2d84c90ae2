"""
Mara Billing - FastAPI Backend
Credit ledger, purchase settlement and reading consumption API.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    accounts,
    billing,
    payments,
    readings,
    admin,
    error_reports,
)
from services.reading_queue import recover_stalled_readings


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Mara Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_readings(settings.READING_STALL_MINUTES)
        if recovered:
            print(f"♻️ Marked {recovered} stalled readings as failed after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled reading recovery skipped: {exc}")
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Mara Billing API",
    description="Prepaid credits, payment settlement and metered readings",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(payments.router, prefix="/payment", tags=["Payments"])
app.include_router(readings.router, prefix="/readings", tags=["Readings"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
app.include_router(error_reports.router, prefix="/errors", tags=["Errors"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Mara Billing API",
        "version": "0.1.0",
        "status": "running"
    }
