"""Recreate flow state machine.

This module defines the states of one environment-reconfiguration flow and the
transitions allowed between them. The flow is strictly sequential and never
re-enters a state; RecreateStateMachine records the trail of visited states
and refuses any transition not listed in VALID_TRANSITIONS.

The backup rename is the pivot: failures before it end in ABORT with nothing
to undo, failures after it run the ROLLBACK_* sequence (or end in FAILED when
the caller disabled automatic rollback).
"""

from __future__ import annotations

import enum

import structlog

logger = structlog.get_logger(__name__)


class RecreateState(str, enum.Enum):
    """States of a recreate flow."""

    IDLE = "idle"
    SNAPSHOT = "snapshot"
    RENAME_BACKUP = "rename_backup"
    STOP_BACKUP = "stop_backup"
    CREATE_NEW = "create_new"
    START_NEW = "start_new"
    HEALTH_PROBE = "health_probe"
    SUCCESS = "success"
    CLEANUP_BACKUP = "cleanup_backup"
    ROLLBACK_REMOVE_NEW = "rollback_remove_new"
    ROLLBACK_RESTORE = "rollback_restore"
    ROLLBACK_START = "rollback_start"
    RESTORED = "restored"
    ROLLBACK_FAILED = "rollback_failed"
    ABORT = "abort"
    FAILED = "failed"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current state.
        target: The attempted target state.
    """

    def __init__(self, current: RecreateState, target: RecreateState):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition from {current.value} to {target.value}")


# Authoritative state machine definition
VALID_TRANSITIONS: dict[RecreateState, set[RecreateState]] = {
    RecreateState.IDLE: {RecreateState.SNAPSHOT, RecreateState.ABORT},
    RecreateState.SNAPSHOT: {RecreateState.RENAME_BACKUP, RecreateState.ABORT},
    RecreateState.RENAME_BACKUP: {RecreateState.STOP_BACKUP, RecreateState.ABORT},
    RecreateState.STOP_BACKUP: {
        RecreateState.CREATE_NEW,
        RecreateState.ROLLBACK_RESTORE,
        RecreateState.FAILED,
    },
    RecreateState.CREATE_NEW: {
        RecreateState.START_NEW,
        RecreateState.ROLLBACK_RESTORE,
        RecreateState.FAILED,
    },
    RecreateState.START_NEW: {
        RecreateState.HEALTH_PROBE,
        RecreateState.ROLLBACK_REMOVE_NEW,
        RecreateState.FAILED,
    },
    RecreateState.HEALTH_PROBE: {
        RecreateState.SUCCESS,
        RecreateState.ROLLBACK_REMOVE_NEW,
        RecreateState.FAILED,
    },
    RecreateState.SUCCESS: {RecreateState.CLEANUP_BACKUP},
    RecreateState.CLEANUP_BACKUP: set(),
    RecreateState.ROLLBACK_REMOVE_NEW: {RecreateState.ROLLBACK_RESTORE},
    RecreateState.ROLLBACK_RESTORE: {
        RecreateState.ROLLBACK_START,
        RecreateState.RESTORED,
        RecreateState.ROLLBACK_FAILED,
    },
    RecreateState.ROLLBACK_START: {RecreateState.RESTORED, RecreateState.ROLLBACK_FAILED},
    RecreateState.RESTORED: set(),
    RecreateState.ROLLBACK_FAILED: set(),
    RecreateState.ABORT: set(),
    RecreateState.FAILED: set(),
}

TERMINAL_STATES: frozenset[RecreateState] = frozenset(
    {
        RecreateState.SUCCESS,
        RecreateState.CLEANUP_BACKUP,
        RecreateState.RESTORED,
        RecreateState.ROLLBACK_FAILED,
        RecreateState.ABORT,
        RecreateState.FAILED,
    }
)


def validate_transition(current: RecreateState, target: RecreateState) -> bool:
    """Validate if a state transition is allowed.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


class RecreateStateMachine:
    """Tracks the current state of one flow and the trail of visited states."""

    def __init__(self, container_ref: str):
        self.container_ref = container_ref
        self.state = RecreateState.IDLE
        self.history: list[RecreateState] = [RecreateState.IDLE]
        self.logger = logger.bind(component="RecreateStateMachine", container_ref=container_ref)

    def transition(self, target: RecreateState) -> RecreateState:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: If the transition is not valid or the
                target was already visited.
        """
        if not validate_transition(self.state, target) or target in self.history:
            raise InvalidTransitionError(self.state, target)

        self.logger.info(
            "recreate_transition",
            from_state=self.state.value,
            to_state=target.value,
        )
        self.state = target
        self.history.append(target)
        return target

    def visited(self, state: RecreateState) -> bool:
        return state in self.history

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
