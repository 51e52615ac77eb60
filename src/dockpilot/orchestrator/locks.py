"""Per-container serialization of recreate flows.

At most one flow may be in flight for a canonical container name. A second
request for a held name is rejected immediately with ConflictError; requests
are never queued, because a queued caller's view of "the current container"
would be stale by the time it ran.

Example:
    >>> locks = PerContainerLock()
    >>> async with locks.hold("web"):
    ...     ...  # recreate "web"
"""

from __future__ import annotations

import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog

from dockpilot.errors import ConflictError

logger = structlog.get_logger(__name__)


class PerContainerLock:
    """Non-blocking lock table keyed by canonical container name."""

    def __init__(self) -> None:
        self._held: dict[str, datetime] = {}
        self._mutex = threading.Lock()
        self._logger = logger.bind(component="PerContainerLock")

    def acquire(self, container_name: str) -> None:
        """Take the lock for ``container_name``.

        Raises:
            ConflictError: If a flow already holds this name.
        """
        with self._mutex:
            if container_name in self._held:
                self._logger.warning(
                    "lock_acquisition_denied",
                    container_name=container_name,
                    held_since=self._held[container_name].isoformat(),
                )
                raise ConflictError(container_name)
            self._held[container_name] = datetime.now(timezone.utc)

        self._logger.debug("lock_acquired", container_name=container_name)

    def release(self, container_name: str) -> None:
        """Release the lock; releasing an unheld name is a no-op."""
        with self._mutex:
            released = self._held.pop(container_name, None)

        if released is not None:
            self._logger.debug("lock_released", container_name=container_name)

    def is_locked(self, container_name: str) -> bool:
        with self._mutex:
            return container_name in self._held

    def active(self) -> dict[str, datetime]:
        """Snapshot of held names and when each was acquired."""
        with self._mutex:
            return dict(self._held)

    @asynccontextmanager
    async def hold(self, container_name: str) -> AsyncIterator[None]:
        """Hold the lock for the duration of the ``async with`` block."""
        self.acquire(container_name)
        try:
            yield
        finally:
            self.release(container_name)
