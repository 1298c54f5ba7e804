#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
FastAPI Web Server - REST API for the chapter pipeline.

Thin orchestration shell: app creation, middleware, router includes,
startup/shutdown events.

Usage:
    uvicorn api.main:app --host 0.0.0.0 --port 8000
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from pathlib import Path
import sys
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import settings
from config.logging_config import setup_logging, get_logger

setup_logging(settings.log_level, settings.logs_dir)
logger = get_logger(__name__)

from api.routes.health import router as health_router, VERSION
from api.routes.pipelines import router as pipelines_router

# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Chapter Pipeline API",
    description="Multi-agent chapter generation with streaming progress and run control",
    version=VERSION,
)

# CORS middleware: origins from settings (env var) or dev defaults
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Pipeline-Id", "X-Task-Id"],
)


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app.add_middleware(SecurityHeadersMiddleware)

# =============================================================================
# Include Routers
# =============================================================================

app.include_router(health_router)
app.include_router(pipelines_router)

# =============================================================================
# Startup / Shutdown Events
# =============================================================================


@app.on_event("startup")
async def startup_pipeline_service():
    """Initialize the pipeline service (database, agents, registry)."""
    from api.services.pipeline_service import get_pipeline_service
    service = get_pipeline_service()
    logger.info(f"Chapter pipeline service ready (agents: {type(service.agent_executor).__name__})")


@app.on_event("shutdown")
async def shutdown_pipelines():
    """Stop running pipelines; completed steps are already persisted."""
    from api.services.pipeline_service import get_pipeline_service
    try:
        await get_pipeline_service().shutdown()
    except Exception as e:
        logger.error(f"Shutdown: failed to stop pipelines: {e}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
