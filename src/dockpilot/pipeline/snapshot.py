"""Point-in-time snapshots of container configuration.

SpecSnapshotter reads a container's inspect document and captures everything
needed to recreate an equivalent container: image reference, the full
environment, published ports, mounts, network attachments, resource limits,
labels, command line and restart policy. A field missing here is silently lost
when the container is recreated or restored, so parsing is deliberately
verbatim.

ContainerSpec instances are frozen. A replacement spec is always derived with
``with_env`` rather than edited in place.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from dockpilot.errors import ContainerNotFoundError, SnapshotFailed
from dockpilot.logging import get_logger
from dockpilot.pipeline.container import (
    ContainerStatus,
    RuntimeClient,
    RuntimeNotFound,
    RuntimeOperationError,
)

logger = get_logger(__name__)

SECRET_KEY_PATTERN = re.compile(r"(TOKEN|SECRET|PASSWORD|KEY)", re.IGNORECASE)


class PortBinding(BaseModel):
    """One host binding of a published container port."""

    model_config = ConfigDict(frozen=True)

    host_ip: str = ""
    host_port: str = ""


class VolumeMount(BaseModel):
    """A bind mount, named/anonymous volume or tmpfs attached to the container.

    Attributes:
        type: Mount type (bind, volume, tmpfs)
        source: Host path for binds, volume name for volumes, None for tmpfs
        target: Mount point inside the container
        read_only: Whether the mount is read-only
    """

    model_config = ConfigDict(frozen=True)

    type: str = "volume"
    source: str | None = None
    target: str
    read_only: bool = False


class NetworkAttachment(BaseModel):
    """A user-defined or default network the container is connected to."""

    model_config = ConfigDict(frozen=True)

    name: str
    aliases: tuple[str, ...] = ()


class ResourceLimits(BaseModel):
    """CPU, memory and process limits from HostConfig. Zero means unset."""

    model_config = ConfigDict(frozen=True)

    memory: int = 0
    memory_swap: int = 0
    nano_cpus: int = 0
    cpu_shares: int = 0
    cpu_quota: int = 0
    cpu_period: int = 0
    pids_limit: int = 0

    def to_create_kwargs(self) -> dict[str, int]:
        """Map set limits onto docker-py ``containers.create`` arguments."""
        mapping = {
            "mem_limit": self.memory,
            "memswap_limit": self.memory_swap,
            "nano_cpus": self.nano_cpus,
            "cpu_shares": self.cpu_shares,
            "cpu_quota": self.cpu_quota,
            "cpu_period": self.cpu_period,
            "pids_limit": self.pids_limit,
        }
        return {key: value for key, value in mapping.items() if value > 0}


class ContainerSpec(BaseModel):
    """Complete description of a container at one point in time.

    Attributes:
        id: Full container ID
        name: Canonical container name (no leading slash)
        image: Image reference the container was created from
        env: Environment variables, name to value
        ports: Published ports, "<port>/<proto>" to host bindings
        volume_mounts: Mounts in inspect order
        networks: Attached networks, primary network first
        network_mode: HostConfig.NetworkMode (bridge, host, none, container:<id>, <net>)
        resource_limits: CPU/memory/pids limits
        labels: Container labels
        command: Cmd, or None for the image default
        entrypoint: Entrypoint, or None for the image default
        working_dir: Working directory override
        user: User override
        restart_policy: HostConfig.RestartPolicy
        running: Whether the container was running at snapshot time
        status: Raw State.Status at snapshot time
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    image: str
    env: dict[str, str] = Field(default_factory=dict)
    ports: dict[str, tuple[PortBinding, ...]] = Field(default_factory=dict)
    volume_mounts: tuple[VolumeMount, ...] = ()
    networks: tuple[NetworkAttachment, ...] = ()
    network_mode: str | None = None
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    labels: dict[str, str] = Field(default_factory=dict)
    command: tuple[str, ...] | None = None
    entrypoint: tuple[str, ...] | None = None
    working_dir: str | None = None
    user: str | None = None
    restart_policy: dict[str, Any] | None = None
    running: bool = False
    status: str = ContainerStatus.CREATED.value

    def with_env(self, env: dict[str, str]) -> ContainerSpec:
        """Derive a spec whose environment is exactly ``env`` (full replace)."""
        return self.model_copy(update={"env": dict(env)}, deep=True)

    def env_list(self) -> list[str]:
        """Environment in Docker's ``KEY=value`` list form."""
        return [f"{key}={value}" for key, value in self.env.items()]

    def secret_keys(self) -> list[str]:
        """Sorted names of variables that look like credentials."""
        return sorted(key for key in self.env if SECRET_KEY_PATTERN.search(key))


def parse_env(entries: list[str] | None) -> dict[str, str]:
    """Parse Docker's ``KEY=value`` list; an entry without ``=`` maps to ""."""
    env: dict[str, str] = {}
    for entry in entries or []:
        key, _, value = entry.partition("=")
        env[key] = value
    return env


def _parse_ports(port_bindings: dict[str, Any] | None) -> dict[str, tuple[PortBinding, ...]]:
    ports: dict[str, tuple[PortBinding, ...]] = {}
    for container_port, bindings in (port_bindings or {}).items():
        ports[container_port] = tuple(
            PortBinding(host_ip=b.get("HostIp") or "", host_port=b.get("HostPort") or "")
            for b in bindings or []
        )
    return ports


def _parse_mounts(mounts: list[dict[str, Any]] | None) -> tuple[VolumeMount, ...]:
    parsed = []
    for mount in mounts or []:
        mount_type = mount.get("Type", "volume")
        if mount_type == "volume":
            source = mount.get("Name")
        elif mount_type == "tmpfs":
            source = None
        else:
            source = mount.get("Source")
        parsed.append(
            VolumeMount(
                type=mount_type,
                source=source,
                target=mount["Destination"],
                read_only=not mount.get("RW", True),
            )
        )
    return tuple(parsed)


def _parse_networks(
    networks: dict[str, Any] | None, network_mode: str | None, container_id: str
) -> tuple[NetworkAttachment, ...]:
    if network_mode in ("host", "none") or (network_mode or "").startswith("container:"):
        return ()

    short_id = container_id[:12]
    attachments = [
        NetworkAttachment(
            name=name,
            # Docker adds the short ID as an alias on its own
            aliases=tuple(a for a in (endpoint or {}).get("Aliases") or [] if a != short_id),
        )
        for name, endpoint in (networks or {}).items()
    ]
    attachments.sort(key=lambda n: n.name != network_mode)
    return tuple(attachments)


def _parse_limits(host_config: dict[str, Any]) -> ResourceLimits:
    return ResourceLimits(
        memory=host_config.get("Memory") or 0,
        memory_swap=max(host_config.get("MemorySwap") or 0, 0),
        nano_cpus=host_config.get("NanoCpus") or 0,
        cpu_shares=host_config.get("CpuShares") or 0,
        cpu_quota=host_config.get("CpuQuota") or 0,
        cpu_period=host_config.get("CpuPeriod") or 0,
        pids_limit=max(host_config.get("PidsLimit") or 0, 0),
    )


def spec_from_attrs(attrs: dict[str, Any]) -> ContainerSpec:
    """Build a ContainerSpec from a Docker inspect document.

    Raises:
        KeyError: If the document lacks Id, Name or Config
    """
    config = attrs["Config"]
    host_config = attrs.get("HostConfig") or {}
    state = attrs.get("State") or {}
    network_mode = host_config.get("NetworkMode")
    status = state.get("Status", ContainerStatus.CREATED.value)

    cmd = config.get("Cmd")
    entrypoint = config.get("Entrypoint")
    if isinstance(entrypoint, str):
        entrypoint = [entrypoint]

    return ContainerSpec(
        id=attrs["Id"],
        name=attrs["Name"].lstrip("/"),
        image=config.get("Image") or attrs.get("Image", ""),
        env=parse_env(config.get("Env")),
        ports=_parse_ports(host_config.get("PortBindings")),
        volume_mounts=_parse_mounts(attrs.get("Mounts")),
        networks=_parse_networks(
            (attrs.get("NetworkSettings") or {}).get("Networks"), network_mode, attrs["Id"]
        ),
        network_mode=network_mode,
        resource_limits=_parse_limits(host_config),
        labels=dict(config.get("Labels") or {}),
        command=tuple(cmd) if cmd is not None else None,
        entrypoint=tuple(entrypoint) if entrypoint is not None else None,
        working_dir=config.get("WorkingDir") or None,
        user=config.get("User") or None,
        restart_policy=dict(host_config["RestartPolicy"])
        if host_config.get("RestartPolicy")
        else None,
        running=bool(state.get("Running", status == ContainerStatus.RUNNING.value)),
        status=status,
    )


class SpecSnapshotter:
    """Reads the current, complete configuration of a container."""

    def __init__(self, runtime: RuntimeClient) -> None:
        self.runtime = runtime
        self._logger = logger.bind(component="SpecSnapshotter")

    async def snapshot(self, container_ref: str) -> ContainerSpec:
        """Capture a ContainerSpec for ``container_ref``.

        Args:
            container_ref: Container ID or name.

        Returns:
            The captured spec.

        Raises:
            ContainerNotFoundError: If the container does not exist.
            SnapshotFailed: If the runtime call fails or the document is malformed.
        """
        try:
            attrs = await self.runtime.inspect(container_ref)
        except RuntimeNotFound as e:
            raise ContainerNotFoundError(container_ref) from e
        except RuntimeOperationError as e:
            self._logger.error("snapshot_inspect_failed", container_ref=container_ref, error=str(e))
            raise SnapshotFailed(f"Could not read configuration of {container_ref}: {e}") from e

        try:
            spec = spec_from_attrs(attrs)
        except (KeyError, TypeError, ValueError) as e:
            self._logger.error(
                "snapshot_parse_failed",
                container_ref=container_ref,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise SnapshotFailed(
                f"Could not parse configuration of {container_ref}: {e}"
            ) from e

        self._logger.debug(
            "snapshot_taken",
            container_id=spec.id,
            name=spec.name,
            image=spec.image,
            env_count=len(spec.env),
            running=spec.running,
        )
        return spec
