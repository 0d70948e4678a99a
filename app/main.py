"""
Venue Catalog - Main Application
FastAPI Entry Point with APScheduler for the Blob Orphan Sweep
"""

import os

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
import structlog

from app.config import settings
from app.database import init_db
from app.middleware import CorrelationIdMiddleware
from app.routers.records import router as records_router
from app.scheduler import start_scheduler, stop_scheduler
from app.services.monitoring import setup_logging

# Structured Logging Setup
setup_logging()
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ]
)
logger = structlog.get_logger()

# FastAPI App
app = FastAPI(
    title="Venue Catalog",
    description="Curated venue records with captioned photo attachments",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

app.add_middleware(CorrelationIdMiddleware)

# Register routers
app.include_router(records_router)

# Local blob backend: uploads are served from the public prefix
if settings.blob_backend.lower() == "local":
    os.makedirs(settings.local_upload_dir, exist_ok=True)
    app.mount(
        "/" + settings.local_public_prefix.strip("/"),
        StaticFiles(directory=settings.local_upload_dir),
        name="uploads",
    )

scheduler = None


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    global scheduler

    logger.info("startup", environment=settings.environment, blob_backend=settings.blob_backend)

    # Initialize database connection
    init_db()
    logger.info("database_initialized")

    scheduler = start_scheduler(settings.environment)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")
    stop_scheduler(scheduler)


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Venue Catalog API",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health Check Endpoint
    """
    health_status = {
        "status": "healthy",
        "environment": settings.environment,
        "services": {
            "api": "running",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
            "blob_store": settings.blob_backend,
        }
    }

    if settings.database_url:
        health_status["services"]["database"] = "configured"

    return JSONResponse(
        content=health_status,
        status_code=200
    )


@app.post("/admin/orphan-sweep/trigger")
async def trigger_orphan_sweep(dry_run: bool = False):
    """
    Manually trigger the orphan sweep.

    Runs the sweep immediately instead of waiting for the schedule.

    Returns:
        dict: Sweep results with counts and status
    """
    try:
        from app.database import SessionLocal
        from app.services.orphan_sweep import OrphanSweepService
        from app.services.storage import get_blob_store

        if SessionLocal is None:
            return {
                "status": "error",
                "message": "Database not configured"
            }

        sweep_svc = OrphanSweepService(
            session_factory=SessionLocal,
            blob_store=get_blob_store()
        )
        result = sweep_svc.run_sweep(dry_run=dry_run)

        return {
            "status": "completed",
            "result": result
        }

    except Exception as e:
        logger.error("manual_orphan_sweep_error", error=str(e), exc_info=True)
        return {
            "status": "error",
            "message": str(e)
        }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
