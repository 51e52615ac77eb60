"""Container runtime access for DockPilot.

This module defines the RuntimeClient protocol the recreate orchestrator
depends on, and DockerRuntimeClient, its implementation over docker-py.
Every docker-py call runs in a worker thread via asyncio.to_thread, and SDK
exceptions are normalised to RuntimeNotFound / RuntimeOperationError so callers
never handle docker-py types directly.

The runtime offers no cross-call atomicity: each method is one daemon call
(or a short fixed sequence for create) that either succeeds or raises.

Example usage:
    >>> from dockpilot.config import DockerConfig
    >>> from dockpilot.pipeline.container import DockerRuntimeClient
    >>>
    >>> runtime = DockerRuntimeClient(DockerConfig())
    >>> attrs = await runtime.inspect("web")
    >>> await runtime.rename(attrs["Id"], "rollback_web")
"""

from __future__ import annotations

import asyncio
import os
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Protocol, TypeVar

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import Mount

from dockpilot.config import DockerConfig
from dockpilot.logging import get_logger

if TYPE_CHECKING:
    from dockpilot.pipeline.snapshot import ContainerSpec

T = TypeVar("T")

# Network modes that cannot be combined with user-defined network attachments
_SPECIAL_NETWORK_MODES = ("host", "none")


class ContainerStatus(str, Enum):
    """Status of a Docker container as reported by inspect.

    Attributes:
        RUNNING: Container is running
        PAUSED: Container is paused
        RESTARTING: Container is restarting
        EXITED: Container has exited
        DEAD: Container is dead (non-recoverable error state)
        CREATED: Container has been created but not started
        REMOVING: Container is being removed
    """

    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    DEAD = "dead"
    CREATED = "created"
    REMOVING = "removing"


class RuntimeOperationError(Exception):
    """A runtime call failed.

    Attributes:
        action: Runtime action that failed (inspect, rename, create, ...)
        container_ref: Container ID or name the action targeted
    """

    def __init__(self, action: str, container_ref: str, message: str) -> None:
        self.action = action
        self.container_ref = container_ref
        super().__init__(f"{action} {container_ref}: {message}")


class RuntimeNotFound(RuntimeOperationError):
    """The referenced container does not exist."""

    def __init__(self, action: str, container_ref: str) -> None:
        super().__init__(action, container_ref, "no such container")


class RuntimeClient(Protocol):
    """Operations the recreate flow needs from the container runtime."""

    async def inspect(self, container_ref: str) -> dict[str, Any]: ...

    async def rename(self, container_ref: str, new_name: str) -> None: ...

    async def create(self, spec: ContainerSpec) -> str: ...

    async def start(self, container_ref: str) -> None: ...

    async def stop(self, container_ref: str, timeout: int | None = None) -> None: ...

    async def remove(self, container_ref: str, force: bool = False) -> None: ...

    async def list_names(self) -> set[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class DockerRuntimeClient:
    """RuntimeClient backed by the Docker Engine API through docker-py.

    Attributes:
        config: Docker configuration from DockpilotConfig
        logger: Structured logger instance
    """

    def __init__(self, config: DockerConfig, client: docker.DockerClient | None = None) -> None:
        """Initialize the runtime client.

        Args:
            config: Docker configuration settings
            client: Pre-built docker client; when omitted the connection is
                deferred until first use.
        """
        self.config = config
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = client

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            try:
                base_url = self.config.base_url or os.environ.get("DOCKER_HOST")
                if base_url:
                    self._client = docker.DockerClient(base_url=base_url)
                elif self.config.rootless and hasattr(os, "getuid"):
                    xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                    try:
                        self._client = docker.DockerClient(
                            base_url=f"unix://{xdg_runtime}/docker.sock"
                        )
                    except DockerException:
                        self._client = docker.DockerClient.from_env()
                else:
                    self._client = docker.DockerClient.from_env()

                self.logger.info("docker_client_connected", rootless=self.config.rootless)
            except DockerException as e:
                self.logger.error(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

        return self._client

    async def _call(
        self, action: str, container_ref: str, fn: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T:
        """Run a blocking docker-py call in a thread and normalise its errors."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except NotFound as e:
            self.logger.warning("container_not_found", action=action, container_ref=container_ref)
            raise RuntimeNotFound(action, container_ref) from e
        except (APIError, DockerException) as e:
            self.logger.error(
                "runtime_call_failed",
                action=action,
                container_ref=container_ref,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RuntimeOperationError(action, container_ref, str(e)) from e

    async def _get_container(self, action: str, container_ref: str) -> Any:
        client = await self._call(action, container_ref, self._get_client)
        return await self._call(action, container_ref, client.containers.get, container_ref)

    async def inspect(self, container_ref: str) -> dict[str, Any]:
        """Return the Docker inspect document for a container.

        Raises:
            RuntimeNotFound: If the container does not exist
            RuntimeOperationError: On any other daemon error
        """
        container = await self._get_container("inspect", container_ref)
        await self._call("inspect", container_ref, container.reload)
        return container.attrs

    async def rename(self, container_ref: str, new_name: str) -> None:
        container = await self._get_container("rename", container_ref)
        await self._call("rename", container_ref, container.rename, new_name)
        self.logger.info("container_renamed", container_ref=container_ref, new_name=new_name)

    async def start(self, container_ref: str) -> None:
        container = await self._get_container("start", container_ref)
        await self._call("start", container_ref, container.start)
        self.logger.info("container_started", container_ref=container_ref)

    async def stop(self, container_ref: str, timeout: int | None = None) -> None:
        if timeout is None:
            timeout = self.config.stop_timeout_seconds
        container = await self._get_container("stop", container_ref)
        await self._call("stop", container_ref, container.stop, timeout=timeout)
        self.logger.info("container_stopped", container_ref=container_ref, timeout=timeout)

    async def remove(self, container_ref: str, force: bool = False) -> None:
        container = await self._get_container("remove", container_ref)
        await self._call("remove", container_ref, container.remove, force=force)
        self.logger.info("container_removed", container_ref=container_ref, force=force)

    async def list_names(self) -> set[str]:
        """Return the names of all containers, running or not."""
        client = await self._call("list", "*", self._get_client)
        summaries = await self._call("list", "*", client.api.containers, all=True)
        names: set[str] = set()
        for summary in summaries:
            for name in summary.get("Names") or []:
                names.add(name.lstrip("/"))
        return names

    async def create(self, spec: ContainerSpec) -> str:
        """Create (but do not start) a container equivalent to ``spec``.

        Additional networks are attached before returning so the container is
        complete when started. A container whose network setup fails is
        removed again before the error propagates.

        Returns:
            ID of the created container
        """
        client = await self._call("create", spec.name, self._get_client)
        kwargs = build_create_kwargs(spec)

        self.logger.info(
            "creating_container",
            name=spec.name,
            image=spec.image,
            env_count=len(spec.env),
            network_mode=spec.network_mode,
            networks=[n.name for n in spec.networks],
        )
        container = await self._call("create", spec.name, client.containers.create, **kwargs)

        try:
            await self._attach_networks(client, container, spec)
        except RuntimeOperationError:
            try:
                await self._call("create", spec.name, container.remove, force=True)
            except RuntimeOperationError as cleanup_error:
                self.logger.warning(
                    "partial_container_cleanup_failed",
                    container_id=container.id,
                    error=str(cleanup_error),
                )
            raise

        self.logger.info("container_created", name=spec.name, container_id=container.id)
        return container.id

    async def _attach_networks(self, client: Any, container: Any, spec: ContainerSpec) -> None:
        if not spec.networks or _uses_special_network_mode(spec.network_mode):
            return

        first, *rest = spec.networks
        if first.aliases:
            # containers.create cannot set aliases; reconnect the primary network with them
            network = await self._call("create", spec.name, client.networks.get, first.name)
            await self._call("create", spec.name, network.disconnect, container)
            await self._call(
                "create", spec.name, network.connect, container, aliases=list(first.aliases)
            )

        for attachment in rest:
            network = await self._call("create", spec.name, client.networks.get, attachment.name)
            await self._call(
                "create",
                spec.name,
                network.connect,
                container,
                aliases=list(attachment.aliases) or None,
            )

    async def ping(self) -> bool:
        """Check daemon connectivity without raising."""
        try:
            client = await asyncio.to_thread(self._get_client)
            return bool(await asyncio.to_thread(client.ping))
        except DockerException as e:
            self.logger.warning("docker_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the Docker client connection.

        Safe to call multiple times or if the client was never connected.
        """
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
                self.logger.info("docker_client_closed")
            except Exception as e:
                self.logger.warning("docker_client_close_error", error=str(e))
            finally:
                self._client = None


def _uses_special_network_mode(network_mode: str | None) -> bool:
    if not network_mode:
        return False
    return network_mode in _SPECIAL_NETWORK_MODES or network_mode.startswith("container:")


def build_create_kwargs(spec: ContainerSpec) -> dict[str, Any]:
    """Translate a ContainerSpec into ``containers.create`` keyword arguments."""
    kwargs: dict[str, Any] = {
        "image": spec.image,
        "name": spec.name,
        "environment": spec.env_list(),
        "labels": dict(spec.labels),
        "detach": True,
    }

    if spec.command is not None:
        kwargs["command"] = list(spec.command)
    if spec.entrypoint is not None:
        kwargs["entrypoint"] = list(spec.entrypoint)
    if spec.working_dir:
        kwargs["working_dir"] = spec.working_dir
    if spec.user:
        kwargs["user"] = spec.user
    if spec.restart_policy and spec.restart_policy.get("Name") not in (None, "", "no"):
        kwargs["restart_policy"] = dict(spec.restart_policy)

    # Exposed-only ports come from the image; publishing them here would bind random host ports
    published = {port: bindings for port, bindings in spec.ports.items() if bindings}
    if published:
        kwargs["ports"] = {
            container_port: [{"HostIp": b.host_ip, "HostPort": b.host_port} for b in bindings]
            for container_port, bindings in published.items()
        }

    if spec.volume_mounts:
        kwargs["mounts"] = [
            Mount(
                target=m.target,
                source=m.source,
                type=m.type,
                read_only=m.read_only,
            )
            for m in spec.volume_mounts
        ]

    if _uses_special_network_mode(spec.network_mode):
        kwargs["network_mode"] = spec.network_mode
    elif spec.networks:
        kwargs["network"] = spec.networks[0].name

    kwargs.update(spec.resource_limits.to_create_kwargs())
    return kwargs
