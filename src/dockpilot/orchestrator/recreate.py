"""Environment reconfiguration by safe container recreation.

A running container's environment cannot be changed in place, so
RecreateOrchestrator replaces the container while guaranteeing that a failure
at any step leaves a working container under the original name:

1. Snapshot the current configuration (read only).
2. Rename the current container to a backup name. This is the pivot: it is the
   first mutation, and it is undone by another rename.
3. Stop the backup so it releases host ports and is never left running.
4. Create and start a replacement under the original name with the new env.
5. Probe until the replacement is running.
6. Remove the backup, or keep it (stopped) when the caller asks to.

Any failure after the pivot removes the replacement (best effort), renames the
backup back and restarts it if it was running. If that restore itself fails,
RollbackFailed is raised and no automatic retry is attempted.

Example:
    >>> orchestrator = RecreateOrchestrator(runtime, RecreateConfig())
    >>> result = await orchestrator.recreate(
    ...     RecreateRequest(container="web", env={"APP_ENV": "prod"}, recreate=True)
    ... )
    >>> result.rollback_container_name
    'rollback_web'
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from datetime import datetime, timezone
from enum import Enum
from typing import NoReturn, TypeVar

import structlog
from pydantic import BaseModel, Field

from dockpilot.config import RecreateConfig
from dockpilot.errors import (
    BackupFailed,
    CleanupWarning,
    ConflictError,
    ContainerNotFoundError,
    CreateFailed,
    DockpilotError,
    RestoreFailed,
    RollbackFailed,
    SnapshotFailed,
    StartFailed,
    ValidationError,
)
from dockpilot.logging import bind_recreate_context, clear_recreate_context
from dockpilot.orchestrator.locks import PerContainerLock
from dockpilot.orchestrator.naming import NameAllocator
from dockpilot.orchestrator.state_machine import RecreateState, RecreateStateMachine
from dockpilot.pipeline.container import RuntimeClient
from dockpilot.pipeline.health import HealthProbe, HealthProbeError, HealthProbeTimeout
from dockpilot.pipeline.snapshot import ContainerSpec, SpecSnapshotter

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RecreateStatus(str, Enum):
    """Final outcome of a flow."""

    SUCCESS = "success"
    RESTORED = "restored"
    ROLLBACK_FAILED = "rollback_failed"
    FAILED = "failed"


class RecreateRequest(BaseModel):
    """Input to RecreateOrchestrator.recreate.

    Attributes:
        container: Target container ID or name
        env: Complete environment for the replacement (full replace)
        recreate: Must be True; anything else is rejected
        rollback_on_failure: Restore the original automatically on failure
        keep_rollback_container: Keep the stopped backup after success
            (None uses the configured default)
        merge: Overlay ``env`` on the current environment instead of replacing it
        health_timeout_seconds: Probe timeout override
    """

    container: str = Field(min_length=1)
    env: dict[str, str] = Field(default_factory=dict)
    recreate: bool = False
    rollback_on_failure: bool = True
    keep_rollback_container: bool | None = None
    merge: bool = False
    health_timeout_seconds: float | None = Field(default=None, gt=0.0)


class RollbackRecord(BaseModel):
    """What the flow needs to undo the backup rename.

    Attributes:
        backup_name: Name the original container was renamed to
        original_name: Canonical name to restore
        snapshot: Configuration captured before the first mutation
        created_at: When the rename step began
    """

    backup_name: str
    original_name: str
    snapshot: ContainerSpec
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RecreateResult(BaseModel):
    """Outcome of a flow.

    Attributes:
        status: Final status
        container_name: Canonical container name
        previous_container_id: ID of the container that held the name before
        new_container_id: ID of the replacement (None unless it now holds the name)
        rollback_container_name: Name of a backup container that still exists
        rollback_available: Whether such a backup exists
        states: Trail of visited states
        warnings: Non-fatal problems (for example a failed backup cleanup)
        error: Failure message when status is not SUCCESS
    """

    status: RecreateStatus
    container_name: str
    previous_container_id: str
    new_container_id: str | None = None
    rollback_container_name: str | None = None
    rollback_available: bool = False
    states: list[RecreateState] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None


class EnvView(BaseModel):
    """Current environment of a container, for editors."""

    container_id: str
    container_name: str
    image: str
    running: bool
    env: dict[str, str]
    secret_keys: list[str] = Field(default_factory=list)


def validate_env(env: dict[str, str]) -> None:
    """Reject variable names Docker cannot represent.

    Raises:
        ValidationError: On an empty name, or a name containing ``=`` or NUL.
    """
    for key, value in env.items():
        if not key or not key.strip():
            raise ValidationError("Environment variable names must not be empty")
        if "=" in key or "\x00" in key:
            raise ValidationError(f"Invalid environment variable name: {key!r}")
        if "\x00" in value:
            raise ValidationError(f"Invalid value for environment variable {key!r}")


class RecreateOrchestrator:
    """Drives the recreate/rollback saga for one container at a time per name.

    Attributes:
        runtime: Container runtime client
        config: Recreate settings
        snapshotter: Reads container specs
        probe: Confirms the replacement is running
        allocator: Allocates backup names
        locks: Per-name lock table shared by all flows of this orchestrator
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        config: RecreateConfig | None = None,
        *,
        snapshotter: SpecSnapshotter | None = None,
        probe: HealthProbe | None = None,
        allocator: NameAllocator | None = None,
        locks: PerContainerLock | None = None,
        stop_timeout_seconds: int | None = None,
    ) -> None:
        self.runtime = runtime
        self.config = config or RecreateConfig()
        self.snapshotter = snapshotter or SpecSnapshotter(runtime)
        self.probe = probe or HealthProbe(
            runtime,
            interval_seconds=self.config.poll_interval_seconds,
            stable_checks=self.config.stable_checks,
        )
        self.allocator = allocator or NameAllocator(self.config.backup_prefix)
        self.locks = locks or PerContainerLock()
        self.stop_timeout_seconds = stop_timeout_seconds
        # Container ID to canonical name for flows past the lock
        self._in_flight: dict[str, str] = {}
        self._logger = logger.bind(component="RecreateOrchestrator")

    async def describe_env(self, container_ref: str) -> EnvView:
        """Return the full current environment of a container.

        Raises:
            ContainerNotFoundError: If the container does not exist.
            SnapshotFailed: If its configuration cannot be read.
        """
        spec = await self.snapshotter.snapshot(container_ref)
        return EnvView(
            container_id=spec.id,
            container_name=spec.name,
            image=spec.image,
            running=spec.running,
            env=dict(spec.env),
            secret_keys=spec.secret_keys(),
        )

    async def recreate(self, request: RecreateRequest) -> RecreateResult:
        """Replace the container with one using the requested environment.

        Returns:
            RecreateResult with status SUCCESS.

        Raises:
            ValidationError: ``recreate`` is not set or env is invalid.
            ContainerNotFoundError: The container does not exist.
            ConflictError: Another flow holds this container name.
            SnapshotFailed: Configuration could not be read; nothing changed.
            BackupFailed: The backup rename failed; nothing changed.
            CreateFailed, StartFailed: The change failed after the backup
                rename; ``.result`` tells whether the original was restored.
            RollbackFailed: The change failed and so did the restore.
        """
        if not request.recreate:
            raise ValidationError("Environment changes require recreate=true")
        validate_env(request.env)

        # Mid-flow the canonical name may briefly not exist at all
        if self.locks.is_locked(request.container):
            raise ConflictError(request.container)

        # Resolve the canonical name so the lock is keyed the same for ID and name callers
        current = await self.snapshotter.snapshot(request.container)
        name = self._in_flight.get(current.id, current.name)

        async with self.locks.hold(name):
            self._in_flight[current.id] = name
            bind_recreate_context(name)
            try:
                return await self._run_flow(request, name)
            finally:
                clear_recreate_context()
                self._in_flight.pop(current.id, None)

    async def _run_flow(self, request: RecreateRequest, name: str) -> RecreateResult:
        machine = RecreateStateMachine(name)

        machine.transition(RecreateState.SNAPSHOT)
        try:
            spec = await self.snapshotter.snapshot(name)
        except DockpilotError:
            machine.transition(RecreateState.ABORT)
            raise

        self._logger.info(
            "recreate_started",
            container_id=spec.id,
            image=spec.image,
            running=spec.running,
            env_count=len(request.env),
            merge=request.merge,
            rollback_on_failure=request.rollback_on_failure,
        )

        machine.transition(RecreateState.RENAME_BACKUP)
        try:
            taken = await self.runtime.list_names()
        except Exception as e:
            machine.transition(RecreateState.ABORT)
            raise SnapshotFailed(f"Could not list existing containers: {e}") from e

        backup_name = self.allocator.backup_name(name, taken)
        record = RollbackRecord(backup_name=backup_name, original_name=name, snapshot=spec)
        bind_recreate_context(name, backup_name)

        # The rename may complete in the daemon even if the caller goes away,
        # so everything from here on runs to a terminal state
        return await self._run_to_completion(self._pivot(machine, request, record))

    async def _pivot(
        self,
        machine: RecreateStateMachine,
        request: RecreateRequest,
        record: RollbackRecord,
    ) -> RecreateResult:
        spec = record.snapshot
        try:
            await self.runtime.rename(spec.id, record.backup_name)
        except Exception as e:
            self.allocator.release(record.backup_name)
            machine.transition(RecreateState.ABORT)
            self._logger.error("backup_rename_failed", error=str(e), error_type=type(e).__name__)
            raise BackupFailed(
                f"Could not rename {record.original_name} to {record.backup_name}: {e}"
            ) from e

        self._logger.info("backup_created", container_id=spec.id)
        return await self._after_pivot(machine, request, record)

    async def _run_to_completion(self, flow: Awaitable[T]) -> T:
        task = asyncio.ensure_future(flow)
        cancelled = False
        while not task.done():
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled():
                    raise
                cancelled = True
                self._logger.warning("recreate_cancellation_deferred")
            except Exception:
                break

        if cancelled:
            if task.exception() is not None:
                self._logger.warning("recreate_failed_after_cancellation", error=str(task.exception()))
            raise asyncio.CancelledError()
        return task.result()

    async def _after_pivot(
        self,
        machine: RecreateStateMachine,
        request: RecreateRequest,
        record: RollbackRecord,
    ) -> RecreateResult:
        spec = record.snapshot
        env = {**spec.env, **request.env} if request.merge else dict(request.env)
        new_spec = spec.with_env(env)
        new_id: str | None = None
        failure: DockpilotError | None = None

        machine.transition(RecreateState.STOP_BACKUP)
        if spec.running:
            try:
                await self.runtime.stop(spec.id, timeout=self.stop_timeout_seconds)
            except Exception as e:
                failure = CreateFailed(f"Could not stop {record.original_name} before recreating: {e}")

        if failure is None:
            machine.transition(RecreateState.CREATE_NEW)
            try:
                new_id = await self.runtime.create(new_spec)
            except Exception as e:
                failure = CreateFailed(f"Could not create replacement container: {e}")

        if failure is None:
            machine.transition(RecreateState.START_NEW)
            try:
                await self.runtime.start(new_id)
            except Exception as e:
                failure = StartFailed(f"Could not start replacement container: {e}")

        if failure is None:
            machine.transition(RecreateState.HEALTH_PROBE)
            timeout = request.health_timeout_seconds or self.config.health_timeout_seconds
            try:
                await self.probe.wait_running(new_id, timeout)
            except (HealthProbeTimeout, HealthProbeError) as e:
                failure = StartFailed(f"Replacement container is not running: {e}")
            except Exception as e:
                failure = StartFailed(f"Could not verify replacement container: {e}")

        if failure is None:
            machine.transition(RecreateState.SUCCESS)
            return await self._finish_success(machine, request, record, new_id)

        self._logger.error(
            "recreate_step_failed",
            state=machine.state.value,
            error_code=failure.code,
            error=failure.message,
        )
        await self._compensate(machine, request, record, new_id, failure)

    async def _finish_success(
        self,
        machine: RecreateStateMachine,
        request: RecreateRequest,
        record: RollbackRecord,
        new_id: str,
    ) -> RecreateResult:
        keep = request.keep_rollback_container
        if keep is None:
            keep = self.config.keep_rollback_container

        result = RecreateResult(
            status=RecreateStatus.SUCCESS,
            container_name=record.original_name,
            previous_container_id=record.snapshot.id,
            new_container_id=new_id,
            rollback_container_name=record.backup_name,
            rollback_available=True,
        )

        if keep:
            self._logger.info("backup_retained", new_container_id=new_id)
        else:
            machine.transition(RecreateState.CLEANUP_BACKUP)
            try:
                await self.runtime.remove(record.snapshot.id, force=True)
            except Exception as e:
                warning = CleanupWarning(f"Could not remove backup {record.backup_name}: {e}")
                result.warnings.append(warning.message)
                self._logger.warning("backup_cleanup_failed", error=str(e))
            else:
                self.allocator.release(record.backup_name)
                result.rollback_container_name = None
                result.rollback_available = False

        result.states = list(machine.history)
        self._logger.info(
            "recreate_succeeded",
            new_container_id=new_id,
            backup_retained=result.rollback_available,
        )
        return result

    async def _compensate(
        self,
        machine: RecreateStateMachine,
        request: RecreateRequest,
        record: RollbackRecord,
        new_id: str | None,
        failure: DockpilotError,
    ) -> NoReturn:
        spec = record.snapshot
        result = RecreateResult(
            status=RecreateStatus.FAILED,
            container_name=record.original_name,
            previous_container_id=spec.id,
            rollback_container_name=record.backup_name,
            rollback_available=True,
            error=failure.message,
        )

        if not request.rollback_on_failure:
            machine.transition(RecreateState.FAILED)
            result.new_container_id = new_id
            result.states = list(machine.history)
            self._logger.error("recreate_failed_without_rollback", new_container_id=new_id)
            failure.result = result
            raise failure

        if new_id is not None:
            machine.transition(RecreateState.ROLLBACK_REMOVE_NEW)
            try:
                await self.runtime.remove(new_id, force=True)
            except Exception as e:
                # Proceed anyway; the restore rename below reports if the name is still taken
                result.warnings.append(f"Could not remove failed container {new_id}: {e}")
                self._logger.warning("rollback_remove_new_failed", new_container_id=new_id, error=str(e))

        machine.transition(RecreateState.ROLLBACK_RESTORE)
        try:
            await self.runtime.rename(spec.id, record.original_name)
        except Exception as e:
            self._rollback_failed(
                machine, result, failure, f"Could not rename {record.backup_name} back: {e}"
            )
        result.rollback_container_name = None
        result.rollback_available = False

        if spec.running:
            machine.transition(RecreateState.ROLLBACK_START)
            try:
                await self.runtime.start(spec.id)
            except Exception as e:
                self._rollback_failed(
                    machine, result, failure, f"Could not start restored container: {e}"
                )

        machine.transition(RecreateState.RESTORED)
        self.allocator.release(record.backup_name)
        result.status = RecreateStatus.RESTORED
        result.states = list(machine.history)
        self._logger.warning("recreate_rolled_back", error=failure.message)
        failure.result = result
        raise failure

    def _rollback_failed(
        self,
        machine: RecreateStateMachine,
        result: RecreateResult,
        failure: DockpilotError,
        detail: str,
    ) -> NoReturn:
        machine.transition(RecreateState.ROLLBACK_FAILED)
        result.status = RecreateStatus.ROLLBACK_FAILED
        result.states = list(machine.history)
        self._logger.critical(
            "rollback_failed",
            cause=failure.message,
            detail=detail,
            rollback_container_name=result.rollback_container_name,
        )
        raise RollbackFailed(cause=failure.message, detail=detail, result=result)

    async def restore(self, container_name: str, backup_name: str) -> RecreateResult:
        """Put a retained backup back under ``container_name``.

        The container currently holding the name is parked under a fresh backup
        name and stopped, so the restore can itself be reverted later.

        Raises:
            ContainerNotFoundError: If the backup does not exist.
            ValidationError: If ``backup_name`` already is the canonical name.
            ConflictError: Another flow holds this container name.
            RestoreFailed: The swap failed and was undone.
            RollbackFailed: The swap failed and undoing it failed too.
        """
        if backup_name == container_name:
            raise ValidationError("Backup name and container name must differ")

        async with self.locks.hold(container_name):
            bind_recreate_context(container_name, backup_name)
            try:
                return await self._run_to_completion(self._swap(container_name, backup_name))
            finally:
                clear_recreate_context()

    async def _swap(self, container_name: str, backup_name: str) -> RecreateResult:
        backup = await self.snapshotter.snapshot(backup_name)
        try:
            current: ContainerSpec | None = await self.snapshotter.snapshot(container_name)
        except ContainerNotFoundError:
            current = None

        result = RecreateResult(
            status=RecreateStatus.SUCCESS,
            container_name=container_name,
            previous_container_id=current.id if current else backup.id,
            new_container_id=backup.id,
        )
        self._logger.info(
            "restore_started",
            backup_id=backup.id,
            current_id=current.id if current else None,
        )

        parked: str | None = None
        if current is not None:
            try:
                parked = self.allocator.backup_name(container_name, await self.runtime.list_names())
                await self.runtime.rename(current.id, parked)
            except Exception as e:
                if parked is not None:
                    self.allocator.release(parked)
                raise RestoreFailed(f"Could not park {container_name}: {e}") from e
            result.rollback_container_name = parked
            result.rollback_available = True

        try:
            if current is not None and current.running:
                await self.runtime.stop(current.id, timeout=self.stop_timeout_seconds)
            await self.runtime.rename(backup.id, container_name)
        except Exception as e:
            await self._unpark(container_name, current, parked, cause=str(e))
            raise RestoreFailed(f"Could not restore {backup_name}: {e}") from e

        try:
            await self.runtime.start(backup.id)
        except Exception as e:
            try:
                await self.runtime.rename(backup.id, backup_name)
            except Exception as rename_error:
                raise RollbackFailed(
                    cause=str(e),
                    detail=f"Could not move {container_name} back to {backup_name}: {rename_error}",
                ) from rename_error
            await self._unpark(container_name, current, parked, cause=str(e))
            raise RestoreFailed(f"Restored container did not start: {e}") from e

        self.allocator.release(backup_name)
        self._logger.info("restore_succeeded", parked_as=parked)
        return result

    async def _unpark(
        self,
        container_name: str,
        current: ContainerSpec | None,
        parked: str | None,
        cause: str,
    ) -> None:
        if current is None or parked is None:
            return
        try:
            await self.runtime.rename(current.id, container_name)
            if current.running:
                await self.runtime.start(current.id)
        except Exception as e:
            self._logger.critical("restore_undo_failed", parked_as=parked, error=str(e))
            raise RollbackFailed(cause=cause, detail=f"Could not undo restore: {e}") from e
        self.allocator.release(parked)
