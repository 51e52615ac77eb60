"""Health check endpoints for DockPilot.

- GET /health/       liveness, always ok while the process serves requests
- GET /health/ready  readiness, verifies the Docker daemon answers a ping
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from dockpilot.logging import get_logger
from dockpilot.pipeline.container import RuntimeClient

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str


class ReadinessResponse(BaseModel):
    """Readiness check response model.

    Attributes:
        status: Current readiness status ("ok", "unhealthy")
        docker: Daemon connectivity status ("connected", "disconnected")
    """

    status: str
    docker: str


def get_runtime(request: Request) -> RuntimeClient:
    """Dependency that retrieves the runtime client from app state."""
    return request.app.state.runtime  # type: ignore[no-any-return]


def create_health_router() -> APIRouter:
    """Create health check router with endpoints."""
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        runtime: RuntimeClient = Depends(get_runtime),  # noqa: B008
    ) -> dict[str, Any]:
        """Readiness check with Docker daemon verification."""
        if await runtime.ping():
            logger.debug("readiness_check_passed", docker="connected")
            return {"status": "ok", "docker": "connected"}

        logger.warning("readiness_check_failed", docker="disconnected")
        return {"status": "unhealthy", "docker": "disconnected"}

    return router
