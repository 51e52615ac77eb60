"""Shared fixtures: an in-memory container runtime with failure injection.

FakeRuntime implements the RuntimeClient protocol over a dict of containers.
It mimics the daemon behaviour the recreate flow depends on:

- names are unique; rename/create onto a used name fails
- a container publishing a host port cannot start while another running
  container publishes the same port
- inspect returns a Docker-shaped document built from the stored spec

Failures are injected per action with ``fail(action, match=...)`` and crashes
after start with ``exit_on_start(predicate)``.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from dockpilot.config import RecreateConfig
from dockpilot.orchestrator.recreate import RecreateOrchestrator
from dockpilot.pipeline.container import RuntimeNotFound, RuntimeOperationError
from dockpilot.pipeline.snapshot import (
    ContainerSpec,
    NetworkAttachment,
    PortBinding,
    ResourceLimits,
    VolumeMount,
)


@dataclass
class FakeContainer:
    id: str
    name: str
    spec: ContainerSpec
    status: str = "created"

    @property
    def running(self) -> bool:
        return self.status == "running"

    @property
    def host_ports(self) -> set[str]:
        return {b.host_port for bindings in self.spec.ports.values() for b in bindings if b.host_port}


@dataclass
class Injection:
    action: str
    match: Callable[..., bool]
    error: Exception
    times: int = 1


@dataclass
class FakeRuntime:
    containers: dict[str, FakeContainer] = field(default_factory=dict)
    calls: list[tuple[Any, ...]] = field(default_factory=list)
    injections: list[Injection] = field(default_factory=list)
    crash_predicates: list[Callable[[ContainerSpec], bool]] = field(default_factory=list)
    gates: dict[str, asyncio.Event] = field(default_factory=dict)
    reachable: bool = True
    closed: bool = False

    # --- test helpers ---

    def add(self, spec: ContainerSpec, status: str | None = None) -> FakeContainer:
        container_id = spec.id or uuid.uuid4().hex * 2
        stored = spec.model_copy(update={"id": container_id})
        container = FakeContainer(
            id=container_id,
            name=spec.name,
            spec=stored,
            status=status or ("running" if spec.running else "exited"),
        )
        self.containers[container_id] = container
        return container

    def by_name(self, name: str) -> FakeContainer | None:
        for container in self.containers.values():
            if container.name == name:
                return container
        return None

    def fail(
        self,
        action: str,
        match: Callable[..., bool] | None = None,
        error: Exception | None = None,
        times: int = 1,
    ) -> None:
        self.injections.append(
            Injection(
                action=action,
                match=match or (lambda *args: True),
                error=error or RuntimeOperationError(action, "?", f"injected {action} failure"),
                times=times,
            )
        )

    def exit_on_start(self, predicate: Callable[[ContainerSpec], bool]) -> None:
        self.crash_predicates.append(predicate)

    def gate(self, action: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[action] = event
        return event

    def actions(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def _enter(self, action: str, *args: Any) -> None:
        self.calls.append((action, *args))
        gate = self.gates.get(action)
        if gate is not None:
            await gate.wait()
        for injection in self.injections:
            if injection.action == action and injection.times > 0 and injection.match(*args):
                injection.times -= 1
                raise injection.error

    def _resolve(self, action: str, ref: str) -> FakeContainer:
        if ref in self.containers:
            return self.containers[ref]
        for container in self.containers.values():
            if container.name == ref.lstrip("/") or (len(ref) >= 12 and container.id.startswith(ref)):
                return container
        raise RuntimeNotFound(action, ref)

    # --- RuntimeClient ---

    async def inspect(self, container_ref: str) -> dict[str, Any]:
        await self._enter("inspect", container_ref)
        return attrs_for(self._resolve("inspect", container_ref))

    async def rename(self, container_ref: str, new_name: str) -> None:
        await self._enter("rename", container_ref, new_name)
        container = self._resolve("rename", container_ref)
        holder = self.by_name(new_name)
        if holder is not None and holder is not container:
            raise RuntimeOperationError("rename", container_ref, f"name {new_name} is already in use")
        container.name = new_name
        container.spec = container.spec.model_copy(update={"name": new_name})

    async def create(self, spec: ContainerSpec) -> str:
        await self._enter("create", spec)
        if self.by_name(spec.name) is not None:
            raise RuntimeOperationError("create", spec.name, f"name {spec.name} is already in use")
        container_id = uuid.uuid4().hex * 2
        stored = spec.model_copy(update={"id": container_id, "running": False, "status": "created"})
        self.containers[container_id] = FakeContainer(id=container_id, name=spec.name, spec=stored)
        return container_id

    async def start(self, container_ref: str) -> None:
        await self._enter("start", container_ref)
        container = self._resolve("start", container_ref)
        if container.running:
            return
        for other in self.containers.values():
            if other is not container and other.running and other.host_ports & container.host_ports:
                raise RuntimeOperationError("start", container_ref, "port is already allocated")
        if any(predicate(container.spec) for predicate in self.crash_predicates):
            container.status = "exited"
            return
        container.status = "running"

    async def stop(self, container_ref: str, timeout: int | None = None) -> None:
        await self._enter("stop", container_ref)
        self._resolve("stop", container_ref).status = "exited"

    async def remove(self, container_ref: str, force: bool = False) -> None:
        await self._enter("remove", container_ref)
        container = self._resolve("remove", container_ref)
        if container.running and not force:
            raise RuntimeOperationError("remove", container_ref, "container is running")
        del self.containers[container.id]

    async def list_names(self) -> set[str]:
        await self._enter("list_names")
        return {container.name for container in self.containers.values()}

    async def ping(self) -> bool:
        return self.reachable

    async def close(self) -> None:
        self.closed = True


def attrs_for(container: FakeContainer) -> dict[str, Any]:
    """Docker inspect document for a fake container."""
    spec = container.spec
    limits = spec.resource_limits
    mounts = []
    for mount in spec.volume_mounts:
        entry: dict[str, Any] = {
            "Type": mount.type,
            "Destination": mount.target,
            "RW": not mount.read_only,
        }
        if mount.type == "volume":
            entry["Name"] = mount.source
        elif mount.type == "bind":
            entry["Source"] = mount.source
        mounts.append(entry)

    return {
        "Id": container.id,
        "Name": f"/{container.name}",
        "Config": {
            "Image": spec.image,
            "Env": spec.env_list(),
            "Labels": dict(spec.labels),
            "Cmd": list(spec.command) if spec.command is not None else None,
            "Entrypoint": list(spec.entrypoint) if spec.entrypoint is not None else None,
            "WorkingDir": spec.working_dir or "",
            "User": spec.user or "",
        },
        "HostConfig": {
            "PortBindings": {
                port: [{"HostIp": b.host_ip, "HostPort": b.host_port} for b in bindings]
                for port, bindings in spec.ports.items()
            },
            "NetworkMode": spec.network_mode,
            "RestartPolicy": spec.restart_policy,
            "Memory": limits.memory,
            "MemorySwap": limits.memory_swap,
            "NanoCpus": limits.nano_cpus,
            "CpuShares": limits.cpu_shares,
            "CpuQuota": limits.cpu_quota,
            "CpuPeriod": limits.cpu_period,
            "PidsLimit": limits.pids_limit,
        },
        "Mounts": mounts,
        "NetworkSettings": {
            "Networks": {
                network.name: {"Aliases": [*network.aliases, container.id[:12]]}
                for network in spec.networks
            }
        },
        "State": {"Status": container.status, "Running": container.running},
    }


def build_spec(
    name: str = "container-env-test",
    env: dict[str, str] | None = None,
    running: bool = True,
    **overrides: Any,
) -> ContainerSpec:
    """A fully populated spec so snapshot fidelity covers every field."""
    fields: dict[str, Any] = {
        "id": "",
        "name": name,
        "image": "nginx:1.25-alpine",
        "env": env if env is not None else {"APP_ENV": "staging", "API_TOKEN": "s3cr3t"},
        "ports": {"80/tcp": (PortBinding(host_ip="0.0.0.0", host_port="8080"),)},
        "volume_mounts": (
            VolumeMount(type="volume", source="web-data", target="/data"),
            VolumeMount(type="bind", source="/srv/conf", target="/etc/nginx/conf.d", read_only=True),
        ),
        "networks": (NetworkAttachment(name="app_net", aliases=("web",)),),
        "network_mode": "app_net",
        "resource_limits": ResourceLimits(memory=268435456, nano_cpus=500000000),
        "labels": {"com.example.stack": "demo"},
        "command": ("nginx", "-g", "daemon off;"),
        "restart_policy": {"Name": "unless-stopped", "MaximumRetryCount": 0},
        "running": running,
        "status": "running" if running else "exited",
    }
    fields.update(overrides)
    return ContainerSpec(**fields)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def recreate_config() -> RecreateConfig:
    return RecreateConfig(health_timeout_seconds=0.2, poll_interval_seconds=0.01)


@pytest.fixture
def orchestrator(runtime: FakeRuntime, recreate_config: RecreateConfig) -> RecreateOrchestrator:
    return RecreateOrchestrator(runtime, recreate_config)


@pytest.fixture
def make_spec() -> Callable[..., ContainerSpec]:
    return build_spec
