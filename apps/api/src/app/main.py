"""
School Portal API - Main Application Entry Point

This module initializes and configures the FastAPI application including:
- Database and Redis connections
- Background job scheduler (webhook token sweep, session expiry)
- CORS middleware
- API routing, including the public Twilio webhooks
- Health check endpoints
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.api import api_router
from app.core import redis as redis_module
from app.core.config import settings
from app.core.database import async_session_maker, close_db, init_db
from app.core.redis import close_redis, init_redis
from app.core.scheduler import JobScheduler
from app.modules.telephony import register_telephony_jobs


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events including:
    - Redis connection
    - Database connection
    - Background job scheduler
    """
    # Startup
    print(f"Starting School Portal API in {settings.python_env} mode...")

    # Initialize Redis
    try:
        await init_redis()
        print("[OK] Redis connected")
    except Exception as e:
        print(f"[FAIL] Redis connection failed: {e}")
        if settings.is_production:
            raise

    # Initialize Database
    try:
        await init_db()
        print("[OK] Database connected")
    except Exception as e:
        print(f"[FAIL] Database connection failed: {e}")
        if settings.is_production:
            raise

    # Initialize Background Job Scheduler
    scheduler = JobScheduler()
    app.state.scheduler = scheduler
    try:
        # Register jobs before starting the scheduler
        register_telephony_jobs(scheduler)

        await scheduler.start()
        print("[OK] Background scheduler started")
    except Exception as e:
        print(f"[FAIL] Background scheduler failed to start: {e}")
        if settings.is_production:
            raise

    yield  # Application runs here

    # Shutdown
    print("Shutting down School Portal API...")

    # Stop the scheduler first (wait for running jobs)
    await scheduler.stop()
    print("[OK] Background scheduler stopped")

    await close_redis()
    await close_db()
    print("[OK] Cleanup complete")


app = FastAPI(
    title="School Portal API",
    description="School portal communications API: robocalls, call recordings and 2FA",
    version="0.1.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api/v1")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint - API welcome message."""
    return {
        "message": "Welcome to the School Portal API",
        "status": "running",
        "environment": settings.python_env,
    }


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for container orchestration."""
    return {"status": "healthy"}


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, str]:
    """Readiness check endpoint."""
    return {"status": "ready"}


# ============================================
# Debug Endpoints (development only)
# ============================================
# Manual triggering of background jobs for testing and debugging. In
# production, jobs run automatically on schedule and these routes don't exist.

if settings.is_development:

    def _scheduler(request: Request) -> JobScheduler:
        scheduler = getattr(request.app.state, "scheduler", None)
        if scheduler is None:
            raise HTTPException(status_code=503, detail="Scheduler not initialized")
        return scheduler

    @app.get("/debug/db", tags=["Debug"])
    async def debug_db():
        """Test database connection."""
        try:
            async with async_session_maker() as session:
                result = await session.execute(text("SELECT 1"))
                return {"database": "connected", "result": result.scalar()}
        except Exception as e:
            return {"database": "error", "message": str(e)}

    @app.get("/debug/redis", tags=["Debug"])
    async def debug_redis():
        """Test Redis connection."""
        client = redis_module.redis_client
        try:
            if client:
                await client.ping()
                return {"redis": "connected"}
            return {"redis": "not initialized"}
        except Exception as e:
            return {"redis": "error", "message": str(e)}

    @app.get("/debug/jobs", tags=["Debug"])
    async def list_jobs(request: Request):
        """
        List all registered background jobs and their status.

        Returns:
            List of job information including next run time and pause status.
        """
        return {"jobs": _scheduler(request).list_jobs()}

    @app.post("/debug/jobs/{job_id}/trigger", tags=["Debug"])
    async def trigger_job(job_id: str, request: Request):
        """
        Manually trigger a background job.

        Args:
            job_id: The ID of the job to trigger. Available jobs:
                - telephony_sweep_webhook_tokens
                - telephony_expire_call_to_record_sessions
                - telephony_send_scheduled_robocalls

        Raises:
            HTTPException 400: If job_id is not found.
        """
        try:
            return await _scheduler(request).trigger(job_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

    @app.post("/debug/jobs/{job_id}/pause", tags=["Debug"])
    async def pause_job(job_id: str, request: Request):
        """Pause a scheduled job. Use /debug/jobs/{job_id}/resume to restart it."""
        return {"job_id": job_id, "paused": _scheduler(request).pause(job_id)}

    @app.post("/debug/jobs/{job_id}/resume", tags=["Debug"])
    async def resume_job(job_id: str, request: Request):
        return {"job_id": job_id, "resumed": _scheduler(request).resume(job_id)}
