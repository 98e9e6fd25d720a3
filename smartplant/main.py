"""
SmartPlant Observation API

FastAPI application for community plant observations: photo submission
with automatic species classification, and the moderation queue that
turns pending observations into verified species records.

This is the main entry point for the application.

Usage:
    uvicorn smartplant.main:app --reload
    uvicorn smartplant.main:app --host 0.0.0.0 --port 3000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from smartplant.api.routes import health_router, observations_router, scan_router, species_router
from smartplant.api.routes.health import set_startup_time
from smartplant.core.config import get_settings
from smartplant.core.dependencies import get_archive, get_supervisor
from smartplant.core.exceptions import PipelineError
from smartplant.db.session import close_engine, init_db

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup:
    - Create missing tables
    - Spawn the classifier worker (model warm-up)

    Runs on shutdown:
    - Stop the worker
    - Dispose of the database engine
    """
    logger.info(f"Starting {settings.app_name}...")
    set_startup_time()

    init_db()

    supervisor = get_supervisor()
    try:
        await supervisor.start()
        logger.info(f"Classifier worker started (pid {supervisor.pid})")
    except PipelineError as e:
        logger.error(f"Failed to start classifier worker: {e}")
        # Continue startup - the worker is respawned on the first scan

    logger.info("Application startup complete")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    await supervisor.stop()
    close_engine()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
## SmartPlant Observation API

Community plant observations with automatic species identification.

### Flow

1. `POST /api/v1/scan` a photo; it is classified and stored as a **pending** observation
   with its top-K species candidates. Low-confidence results are auto-flagged for review.
2. Moderators page through `GET /api/v1/observations` and either confirm the
   observation as an existing species, create a new species from it, or reject it.
3. Confirmed photos are archived under `/uploads/species/<name>/` and the first one
   becomes the species image.
    """,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError):
    """Translate service errors into their HTTP status and error code."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and parameters use the same error shape as ValidationError."""
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "message": "Invalid request",
            "details": {"errors": jsonable_errors(exc)},
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred. Please try again.",
            "details": str(exc) if settings.debug else None
        }
    )


# Include routers
app.include_router(health_router, prefix=settings.api_prefix)
app.include_router(scan_router, prefix=settings.api_prefix)
app.include_router(observations_router, prefix=settings.api_prefix)
app.include_router(species_router, prefix=settings.api_prefix)


# API info endpoint
@app.get("/api", tags=["Root"])
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "documentation": "/docs",
        "health_check": f"{settings.api_prefix}/health",
        "scan_endpoint": f"{settings.api_prefix}/scan",
    }


# Uploaded photos and the species archive (must be after specific routes)
_archive = get_archive()
_archive.ensure_root()
app.mount(settings.public_upload_prefix, StaticFiles(directory=str(_archive.root)), name="uploads")


# Entry point for running with Python
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "smartplant.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
