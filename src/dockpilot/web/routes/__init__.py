"""FastAPI route definitions for the DockPilot web API.

This module contains the container environment and health check routers.
"""

from __future__ import annotations

from dockpilot.web.routes.containers import (
    EnvData,
    EnvUpdate,
    RecreateData,
    RestoreBody,
    create_containers_router,
)
from dockpilot.web.routes.health import (
    HealthResponse,
    ReadinessResponse,
    create_health_router,
)

__all__ = [
    # Containers
    "EnvData",
    "EnvUpdate",
    "RecreateData",
    "RestoreBody",
    "create_containers_router",
    # Health
    "HealthResponse",
    "ReadinessResponse",
    "create_health_router",
]
