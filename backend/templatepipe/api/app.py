"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from templatepipe import __version__, validate_dependencies
from templatepipe.db import async_session, init_database, shutdown
from templatepipe.workers.job_tasks import recover_interrupted_jobs
from templatepipe.api.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate system dependencies (ffmpeg, ffprobe)
        - Initialize database schema
        - Fail jobs interrupted by a previous shutdown

    Shutdown:
        - Close database connections
    """
    # Startup
    logger.info("Starting Template Pipeline API...")
    validate_dependencies()
    await init_database()
    async with async_session() as session:
        await recover_interrupted_jobs(session)
    logger.info("API startup complete")

    yield

    # Shutdown
    logger.info("Shutting down Template Pipeline API...")
    await shutdown()
    logger.info("API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Template Pipeline API",
    version=__version__,
    lifespan=lifespan,
)

# CORS for Vite dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include router with all endpoints
app.include_router(router)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )
