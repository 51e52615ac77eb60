"""Error taxonomy for container reconfiguration.

Every error a reconfiguration can surface to an operator derives from
DockpilotError and carries a stable ``code`` (rendered in the API error
envelope), a human-readable ``message`` and the HTTP status the web layer
should answer with.

Errors raised after the backup rename carry the final RecreateResult on
``.result`` so callers can see whether the original container was restored.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dockpilot.orchestrator.recreate import RecreateResult


class DockpilotError(Exception):
    """Base class for errors reported to operators.

    Attributes:
        code: Machine-readable error code for the API envelope.
        message: Operator-facing message, surfaced verbatim.
        status_code: HTTP status the web layer answers with.
        result: Final RecreateResult when the error ended a recreate flow.
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, result: RecreateResult | None = None) -> None:
        self.message = message
        self.result = result
        super().__init__(message)

    def to_envelope(self) -> dict[str, Any]:
        """Render the standard ``{success: false, error: {...}}`` envelope."""
        return {"success": False, "error": {"code": self.code, "message": self.message}}


class ValidationError(DockpilotError):
    """Request rejected before any mutation (bad flags or bad env)."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ContainerNotFoundError(ValidationError):
    """Target container does not exist."""

    code = "CONTAINER_NOT_FOUND"
    status_code = 404

    def __init__(self, container_ref: str) -> None:
        self.container_ref = container_ref
        super().__init__(f"Container not found: {container_ref}")


class ConflictError(DockpilotError):
    """A recreate flow already holds this container name."""

    code = "RECREATE_IN_PROGRESS"
    status_code = 409

    def __init__(self, container_name: str) -> None:
        self.container_name = container_name
        super().__init__(f"A reconfiguration is already in progress for {container_name}")


class SnapshotFailed(DockpilotError):
    """Current configuration could not be read; nothing was changed."""

    code = "SNAPSHOT_FAILED"
    status_code = 502


class BackupFailed(DockpilotError):
    """Current container could not be renamed to its backup name; nothing was changed."""

    code = "BACKUP_FAILED"


class RestoreFailed(DockpilotError):
    """A manual restore was refused or undone; the canonical name is still served."""

    code = "RESTORE_FAILED"


class CreateFailed(DockpilotError):
    """Replacement container could not be created."""

    code = "CREATE_FAILED"


class StartFailed(DockpilotError):
    """Replacement container did not start or never reached running."""

    code = "START_FAILED"


class RollbackFailed(DockpilotError):
    """The compensating restore itself failed.

    The system is left without a working container under the canonical name.
    Never retried automatically.

    Attributes:
        cause: Description of the failure that triggered the rollback.
        detail: Description of the restore step that failed.
    """

    code = "ROLLBACK_FAILED"
    MESSAGE = "Rollback fallback also failed"

    def __init__(
        self,
        *,
        cause: str,
        detail: str,
        result: RecreateResult | None = None,
    ) -> None:
        self.cause = cause
        self.detail = detail
        super().__init__(self.MESSAGE, result=result)


class CleanupWarning(DockpilotError):
    """Backup removal after a verified success failed.

    Recorded on the result and logged; never raised out of a flow.
    """

    code = "CLEANUP_WARNING"
    status_code = 200
