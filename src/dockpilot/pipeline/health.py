"""Running-state probe for freshly started containers.

HealthProbe polls the runtime's inspect call at a fixed interval until the
container reports ``running`` for a configurable number of consecutive polls,
or until the timeout elapses. Only the process-level state is checked; no
command is executed inside the container.

Example usage:
    >>> from dockpilot.pipeline.health import HealthProbe
    >>>
    >>> probe = HealthProbe(runtime, interval_seconds=0.5, stable_checks=2)
    >>> result = await probe.wait_running(container_id, timeout_seconds=30.0)
    >>> print(result.attempts, result.elapsed_seconds)
"""

from __future__ import annotations

import asyncio
import time

from pydantic import BaseModel, Field

from dockpilot.logging import get_logger
from dockpilot.pipeline.container import (
    ContainerStatus,
    RuntimeClient,
    RuntimeNotFound,
    RuntimeOperationError,
)


class ProbeResult(BaseModel):
    """Outcome of a successful wait_running call.

    Attributes:
        container_id: Probed container
        status: Last observed State.Status
        attempts: Number of inspect polls performed
        elapsed_seconds: Time spent probing
    """

    container_id: str = Field(description="Probed container")
    status: str = Field(description="Last observed status")
    attempts: int = Field(default=0, ge=0, description="Inspect polls performed")
    elapsed_seconds: float = Field(default=0.0, ge=0.0, description="Time spent probing")


class HealthProbeTimeout(Exception):
    """Container did not reach a stable running state before the timeout."""

    def __init__(self, container_id: str, timeout_seconds: float, last_status: str | None) -> None:
        self.container_id = container_id
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status
        super().__init__(
            f"Container {container_id} not running after {timeout_seconds}s "
            f"(last status: {last_status or 'unknown'})"
        )


class HealthProbeError(Exception):
    """Probe failed early: the container vanished or is dead."""


class HealthProbe:
    """Polls inspect until a container is confirmed running.

    Attributes:
        runtime: Runtime client used for inspect calls
        interval_seconds: Delay between polls
        stable_checks: Consecutive running observations required
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        interval_seconds: float = 0.5,
        stable_checks: int = 1,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if stable_checks < 1:
            raise ValueError("stable_checks must be at least 1")
        self.runtime = runtime
        self.interval_seconds = interval_seconds
        self.stable_checks = stable_checks
        self.logger = get_logger(__name__)

    async def wait_running(self, container_id: str, timeout_seconds: float) -> ProbeResult:
        """Poll until the container is running or the timeout elapses.

        Args:
            container_id: Container ID or name to probe
            timeout_seconds: Maximum time to poll

        Returns:
            ProbeResult describing the successful probe

        Raises:
            HealthProbeTimeout: If the container is not stably running in time
            HealthProbeError: If the container disappears or is dead
        """
        start_time = time.monotonic()
        attempt = 0
        consecutive_running = 0
        last_status: str | None = None

        self.logger.info(
            "probe_started",
            container_id=container_id,
            timeout_seconds=timeout_seconds,
            interval_seconds=self.interval_seconds,
            stable_checks=self.stable_checks,
        )

        while True:
            attempt += 1
            budget = max(timeout_seconds - (time.monotonic() - start_time), 0.0)
            try:
                attrs = await asyncio.wait_for(self.runtime.inspect(container_id), timeout=budget)
            except asyncio.TimeoutError:
                self.logger.warning(
                    "probe_inspect_timeout", container_id=container_id, budget_seconds=round(budget, 2)
                )
                consecutive_running = 0
            except RuntimeNotFound as e:
                self.logger.error("probe_container_vanished", container_id=container_id)
                raise HealthProbeError(f"Container {container_id} disappeared") from e
            except RuntimeOperationError as e:
                # A transient inspect failure counts as "not running yet"
                self.logger.warning("probe_inspect_failed", container_id=container_id, error=str(e))
                consecutive_running = 0
            else:
                last_status = (attrs.get("State") or {}).get("Status")
                if last_status == ContainerStatus.RUNNING.value:
                    consecutive_running += 1
                elif last_status == ContainerStatus.DEAD.value:
                    self.logger.error("probe_container_dead", container_id=container_id)
                    raise HealthProbeError(f"Container {container_id} is dead")
                else:
                    consecutive_running = 0

            elapsed = time.monotonic() - start_time

            if consecutive_running >= self.stable_checks:
                self.logger.info(
                    "probe_succeeded",
                    container_id=container_id,
                    attempts=attempt,
                    elapsed_seconds=round(elapsed, 2),
                )
                return ProbeResult(
                    container_id=container_id,
                    status=last_status or ContainerStatus.RUNNING.value,
                    attempts=attempt,
                    elapsed_seconds=elapsed,
                )

            remaining = timeout_seconds - elapsed
            if remaining <= 0:
                self.logger.error(
                    "probe_timeout",
                    container_id=container_id,
                    attempts=attempt,
                    last_status=last_status,
                    elapsed_seconds=round(elapsed, 2),
                )
                raise HealthProbeTimeout(container_id, timeout_seconds, last_status)

            await asyncio.sleep(min(self.interval_seconds, remaining))
