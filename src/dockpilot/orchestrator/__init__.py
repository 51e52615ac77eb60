"""Orchestrator subsystem for DockPilot.

This package implements the environment reconfiguration saga: the recreate
state machine, backup name allocation, per-container locking and the
orchestrator that drives recreation and rollback.
"""

from __future__ import annotations

from dockpilot.orchestrator.locks import PerContainerLock
from dockpilot.orchestrator.naming import NameAllocator
from dockpilot.orchestrator.recreate import (
    EnvView,
    RecreateOrchestrator,
    RecreateRequest,
    RecreateResult,
    RecreateStatus,
    RollbackRecord,
)
from dockpilot.orchestrator.state_machine import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    RecreateState,
    RecreateStateMachine,
    validate_transition,
)

__all__ = [
    # Locking
    "PerContainerLock",
    # Naming
    "NameAllocator",
    # Recreate
    "EnvView",
    "RecreateOrchestrator",
    "RecreateRequest",
    "RecreateResult",
    "RecreateStatus",
    "RollbackRecord",
    # State machine
    "InvalidTransitionError",
    "RecreateState",
    "RecreateStateMachine",
    "VALID_TRANSITIONS",
    "validate_transition",
]
