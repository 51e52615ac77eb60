"""FastAPI application factory for DockPilot.

This module provides the main application factory function that creates
and configures a FastAPI application with:
- CORS middleware for the editor front end
- Request logging middleware with correlation IDs
- Docker client lifecycle management
- Error envelope rendering for every failure
- Container environment and health endpoints

Example usage:
    >>> from dockpilot.config import DockpilotConfig
    >>> from dockpilot.web.app import create_app
    >>>
    >>> app = create_app(DockpilotConfig())
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=3001)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dockpilot import __version__
from dockpilot.config import DockpilotConfig
from dockpilot.errors import DockpilotError
from dockpilot.logging import get_logger
from dockpilot.orchestrator.recreate import RecreateOrchestrator
from dockpilot.pipeline.container import DockerRuntimeClient, RuntimeClient
from dockpilot.web.middleware import RequestLoggingMiddleware
from dockpilot.web.routes.containers import create_containers_router
from dockpilot.web.routes.health import create_health_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage the Docker client for the lifetime of the application.

    A runtime injected through create_app is used as is and left open on
    shutdown; otherwise a DockerRuntimeClient is built from config and closed.
    """
    config: DockpilotConfig = app.state.config

    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    owned = app.state.runtime is None
    if owned:
        app.state.runtime = DockerRuntimeClient(config.docker)

    if app.state.orchestrator is None:
        app.state.orchestrator = RecreateOrchestrator(
            app.state.runtime,
            config.recreate,
            stop_timeout_seconds=config.docker.stop_timeout_seconds,
        )

    logger.info(
        "orchestrator_initialized",
        health_timeout_seconds=config.recreate.health_timeout_seconds,
        keep_rollback_container=config.recreate.keep_rollback_container,
    )

    yield

    logger.info("app_shutdown_begin")
    if owned:
        await app.state.runtime.close()


async def dockpilot_error_handler(request: Request, exc: DockpilotError) -> JSONResponse:
    """Render a DockpilotError as the failure envelope."""
    content = exc.to_envelope()
    if exc.result is not None:
        content["error"]["status"] = exc.result.status.value
        content["error"]["rollbackContainerName"] = exc.result.rollback_container_name
    logger.warning(
        "request_rejected",
        path=request.url.path,
        error_code=exc.code,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=content)


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render FastAPI body/path validation failures as VALIDATION_ERROR."""
    messages = [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {"code": "VALIDATION_ERROR", "message": "; ".join(messages)},
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render anything unexpected as INTERNAL_ERROR without leaking details."""
    logger.error(
        "unhandled_error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"},
        },
    )


def create_app(
    config: DockpilotConfig | None = None,
    *,
    runtime: RuntimeClient | None = None,
    orchestrator: RecreateOrchestrator | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application.

    Args:
        config: Optional DockpilotConfig. If None, creates default config.
        runtime: Runtime client to use instead of connecting to Docker.
        orchestrator: Orchestrator to use instead of building one from config.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = DockpilotConfig()

    if runtime is not None and orchestrator is None:
        orchestrator = RecreateOrchestrator(
            runtime,
            config.recreate,
            stop_timeout_seconds=config.docker.stop_timeout_seconds,
        )

    app = FastAPI(
        title="DockPilot",
        version=__version__,
        description="Safe container environment reconfiguration",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.runtime = runtime
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(DockpilotError, dockpilot_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(create_health_router())
    app.include_router(create_containers_router())

    logger.info("app_created", cors_origins=config.web.cors_origins, version=__version__)

    return app
