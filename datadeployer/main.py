"""
Data Deployer - Main Application Entry Point

FastAPI backend for the deployment console: AI-generated SQL validations,
the validation case catalog, and AWS module deployments.
"""

from contextlib import asynccontextmanager
from typing import Any, cast

import logging
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from datadeployer.config import settings
from datadeployer.core.deployments import registry

APP_NAME = "Data Deployer"
APP_VERSION = "0.1.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT,
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(settings.LOG_FILE)
        if settings.LOG_FILE
        else logging.NullHandler(),
    ],
)

# Suppress verbose connector internals (handshakes, request signing)
logging.getLogger("snowflake.connector.connection").setLevel(logging.WARNING)
logging.getLogger("snowflake.connector.network").setLevel(logging.WARNING)
logging.getLogger("botocore").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager - handles startup and shutdown events.
    """
    # Startup
    logger.info(f"🚀 {APP_NAME} starting up...")
    logger.info(f"📁 Data directory: {settings.DATA_DIR.resolve()}")
    logger.info(
        f"🔧 Environment: {'Development' if settings.APP_DEBUG else 'Production'}"
    )
    for directory in (
        settings.configs_dir,
        settings.history_file.parent,
        settings.modules_dir,
        settings.uploads_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)

    yield

    # Shutdown
    logger.info(f"🛑 {APP_NAME} shutting down...")

    # Cancel in-flight deployment tasks (important for `--reload`)
    await registry.shutdown(timeout_seconds=5.0)


# Initialize FastAPI application
app = FastAPI(
    title=APP_NAME,
    description="Deployment console backend: AI SQL validations and AWS module deployments",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

# The browser console is served from a different origin
app.add_middleware(
    cast(Any, CORSMiddleware),
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Missing or malformed request fields answer 400 in the console's shape."""
    errors = exc.errors()
    messages = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        msg = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
        messages.append(f"{loc}: {msg}" if loc else msg)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "; ".join(messages) or "Invalid request"},
    )


# ============================================================================
# Health Check & Info Endpoints
# ============================================================================


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.
    """
    return {
        "status": "healthy",
        "service": "data-deployer",
        "version": APP_VERSION,
        "environment": "development" if settings.APP_DEBUG else "production",
    }


@app.get("/api/info")
async def api_info():
    """
    API information endpoint.

    Returns:
        dict: Application configuration and capabilities
    """
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "modules": settings.DEPLOY_MODULES,
        "features": {
            "self_healing_retries": settings.SELF_HEAL_MAX_RETRIES,
            "ai_model": settings.GEMINI_MODEL,
        },
        "endpoints": {
            "api_docs": "/api/docs",
            "health": "/health",
        },
    }


# ============================================================================
# API Routes
# ============================================================================

from datadeployer.api.routes import activity  # noqa: E402
from datadeployer.api.routes import ai_validations  # noqa: E402
from datadeployer.api.routes import connections  # noqa: E402
from datadeployer.api.routes import dashboard  # noqa: E402
from datadeployer.api.routes import deployments  # noqa: E402
from datadeployer.api.routes import validation_cases  # noqa: E402

app.include_router(connections.router, prefix="/api", tags=["connections"])
app.include_router(ai_validations.router, prefix="/api", tags=["ai-validations"])
app.include_router(validation_cases.router, prefix="/api", tags=["validation-cases"])
app.include_router(deployments.router, prefix="/api", tags=["deployments"])
app.include_router(activity.router, prefix="/api/activity", tags=["activity"])
app.include_router(dashboard.router, prefix="/api/dashboard", tags=["dashboard"])


def run() -> None:
    import uvicorn

    uvicorn.run(
        "datadeployer.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
