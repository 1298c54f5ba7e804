"""
Health check endpoint.
"""

import time

from fastapi import APIRouter

from api.services.pipeline_service import get_pipeline_service

router = APIRouter(tags=["Health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic health check endpoint"""
    service = get_pipeline_service()
    return {
        "status": "healthy",
        "version": VERSION,
        "timestamp": time.time(),
        "activePipelines": len(service.list_active()),
    }
