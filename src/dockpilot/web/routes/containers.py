"""Container environment REST API endpoints for DockPilot.

- GET  /api/containers/{container_id}/env           current environment
- PUT  /api/containers/{container_id}/env           recreate with a new environment
- POST /api/containers/{container_name}/env/restore put a retained backup back

Bodies and responses use camelCase keys and the ``{success, data}`` envelope.
Failures are rendered by the exception handlers registered in create_app.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dockpilot.orchestrator.recreate import (
    EnvView,
    RecreateOrchestrator,
    RecreateRequest,
    RecreateResult,
)

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class CamelModel(BaseModel):
    """Base schema that reads and writes camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EnvUpdate(CamelModel):
    """Request schema for replacing a container's environment."""

    env: dict[str, str]
    recreate: bool = False
    rollback_on_failure: bool = True
    keep_rollback_container: bool | None = None
    merge: bool = False
    health_timeout_seconds: float | None = Field(default=None, gt=0.0)


class RestoreBody(CamelModel):
    """Request schema for restoring a retained backup."""

    rollback_container_name: str = Field(..., min_length=1)


class EnvData(CamelModel):
    """Current environment of a container."""

    container_id: str
    container_name: str
    image: str
    running: bool
    env: dict[str, str]
    secret_keys: list[str]

    @classmethod
    def from_view(cls, view: EnvView) -> EnvData:
        return cls(**view.model_dump())


class RecreateData(CamelModel):
    """Outcome of a recreate or restore."""

    container_name: str
    previous_container_id: str
    new_container_id: str | None
    rollback_container_name: str | None
    rollback_available: bool
    status: str
    warnings: list[str]

    @classmethod
    def from_result(cls, result: RecreateResult) -> RecreateData:
        return cls(
            container_name=result.container_name,
            previous_container_id=result.previous_container_id,
            new_container_id=result.new_container_id,
            rollback_container_name=result.rollback_container_name,
            rollback_available=result.rollback_available,
            status=result.status.value,
            warnings=list(result.warnings),
        )


def envelope(data: CamelModel) -> dict[str, Any]:
    """Wrap a payload in the success envelope."""
    return {"success": True, "data": data.model_dump(by_alias=True)}


# --- Dependency Injection ---


def get_orchestrator(request: Request) -> RecreateOrchestrator:
    """Extract the recreate orchestrator from FastAPI app state."""
    return request.app.state.orchestrator  # type: ignore[no-any-return]


# --- Route Handlers ---


def create_containers_router() -> APIRouter:
    """Create the container environment router."""
    router = APIRouter(prefix="/api/containers", tags=["containers"])

    @router.get("/{container_id}/env")
    async def get_env(
        container_id: str,
        orchestrator: RecreateOrchestrator = Depends(get_orchestrator),  # noqa: B008
    ) -> dict[str, Any]:
        view = await orchestrator.describe_env(container_id)
        logger.info(
            "container_env_read",
            container_name=view.container_name,
            env_count=len(view.env),
        )
        return envelope(EnvData.from_view(view))

    @router.put("/{container_id}/env")
    async def update_env(
        container_id: str,
        body: EnvUpdate,
        orchestrator: RecreateOrchestrator = Depends(get_orchestrator),  # noqa: B008
    ) -> dict[str, Any]:
        """Recreate the container with the requested environment.

        The body's ``env`` is the complete new environment unless ``merge``
        is set, in which case it is overlaid on the current one.
        """
        result = await orchestrator.recreate(
            RecreateRequest(
                container=container_id,
                env=body.env,
                recreate=body.recreate,
                rollback_on_failure=body.rollback_on_failure,
                keep_rollback_container=body.keep_rollback_container,
                merge=body.merge,
                health_timeout_seconds=body.health_timeout_seconds,
            )
        )
        return envelope(RecreateData.from_result(result))

    @router.post("/{container_name}/env/restore")
    async def restore_env(
        container_name: str,
        body: RestoreBody,
        orchestrator: RecreateOrchestrator = Depends(get_orchestrator),  # noqa: B008
    ) -> dict[str, Any]:
        result = await orchestrator.restore(container_name, body.rollback_container_name)
        return envelope(RecreateData.from_result(result))

    return router
