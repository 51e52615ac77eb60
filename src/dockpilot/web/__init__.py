"""Web interface for DockPilot.

This module provides the FastAPI application exposing container environment
reads, env-change recreation with automatic rollback, and backup restore.
"""

from __future__ import annotations

from dockpilot.web.app import create_app
from dockpilot.web.middleware import RequestLoggingMiddleware

__all__ = [
    "create_app",
    "RequestLoggingMiddleware",
]
