"""Container runtime pipeline for DockPilot.

This package wraps the Docker runtime (inspect, rename, create, start, stop,
remove), snapshots container configuration, and probes new containers until
they are running.
"""

from __future__ import annotations

from dockpilot.pipeline.container import (
    ContainerStatus,
    DockerRuntimeClient,
    RuntimeClient,
    RuntimeNotFound,
    RuntimeOperationError,
    build_create_kwargs,
)
from dockpilot.pipeline.health import (
    HealthProbe,
    HealthProbeError,
    HealthProbeTimeout,
    ProbeResult,
)
from dockpilot.pipeline.snapshot import (
    ContainerSpec,
    NetworkAttachment,
    PortBinding,
    ResourceLimits,
    SpecSnapshotter,
    VolumeMount,
    parse_env,
    spec_from_attrs,
)

__all__ = [
    # Runtime
    "ContainerStatus",
    "DockerRuntimeClient",
    "RuntimeClient",
    "RuntimeNotFound",
    "RuntimeOperationError",
    "build_create_kwargs",
    # Health probe
    "HealthProbe",
    "HealthProbeError",
    "HealthProbeTimeout",
    "ProbeResult",
    # Snapshots
    "ContainerSpec",
    "NetworkAttachment",
    "PortBinding",
    "ResourceLimits",
    "SpecSnapshotter",
    "VolumeMount",
    "parse_env",
    "spec_from_attrs",
]
