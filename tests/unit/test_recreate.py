"""Unit tests for the recreate orchestrator.

Tests cover:
- Happy path with backup cleanup or retention
- Full replace and merge environment semantics
- Rejections before any mutation (validation, missing container, snapshot, backup rename)
- Automatic rollback after create/start/probe failures
- Rollback failure (no retry, critical outcome)
- Disabled rollback and cleanup warnings
- Per-container serialization and cancellation after the pivot
- Restoring a retained backup
"""

from __future__ import annotations

import asyncio

import pytest

from dockpilot.errors import (
    BackupFailed,
    ConflictError,
    ContainerNotFoundError,
    CreateFailed,
    RestoreFailed,
    RollbackFailed,
    SnapshotFailed,
    StartFailed,
    ValidationError,
)
from dockpilot.orchestrator.recreate import (
    RecreateOrchestrator,
    RecreateRequest,
    RecreateStatus,
    validate_env,
)
from dockpilot.orchestrator.state_machine import RecreateState

NAME = "container-env-test"
BACKUP = "rollback_container_env_test"


def request(env: dict[str, str], **kwargs) -> RecreateRequest:
    return RecreateRequest(container=NAME, env=env, recreate=True, **kwargs)


def holders(runtime, name: str = NAME) -> list:
    return [c for c in runtime.containers.values() if c.name == name]


class TestValidateEnv:
    """Test environment name validation."""

    def test_accepts_ordinary_variables(self) -> None:
        validate_env({"APP_ENV": "prod", "EMPTY": "", "URL": "a=b"})

    @pytest.mark.parametrize("key", ["", " ", "A=B", "A\x00B"])
    def test_rejects_invalid_names(self, key: str) -> None:
        with pytest.raises(ValidationError):
            validate_env({key: "value"})

    def test_rejects_nul_in_value(self) -> None:
        with pytest.raises(ValidationError):
            validate_env({"KEY": "a\x00b"})


class TestDescribeEnv:
    """Test reading the current environment."""

    @pytest.mark.asyncio
    async def test_returns_full_env_and_secret_keys(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())

        view = await orchestrator.describe_env(NAME)

        assert view.container_id == original.id
        assert view.container_name == NAME
        assert view.image == "nginx:1.25-alpine"
        assert view.running is True
        assert view.env == {"APP_ENV": "staging", "API_TOKEN": "s3cr3t"}
        assert view.secret_keys == ["API_TOKEN"]

    @pytest.mark.asyncio
    async def test_missing_container(self, orchestrator) -> None:
        with pytest.raises(ContainerNotFoundError):
            await orchestrator.describe_env("nope")


class TestRecreateSuccess:
    """Test successful reconfiguration."""

    @pytest.mark.asyncio
    async def test_scenario_keeps_named_backup(self, runtime, orchestrator, make_spec) -> None:
        """Replacement runs under the name, stopped original kept as rollback_container_env_test."""
        original = runtime.add(make_spec())

        result = await orchestrator.recreate(
            request({"APP_ENV": "prod"}, keep_rollback_container=True)
        )

        assert result.status == RecreateStatus.SUCCESS
        assert result.previous_container_id == original.id
        assert result.rollback_container_name == BACKUP
        assert result.rollback_available is True

        (current,) = holders(runtime)
        assert current.id == result.new_container_id
        assert current.running
        assert current.spec.env == {"APP_ENV": "prod"}

        backup = runtime.by_name(BACKUP)
        assert backup is original
        assert not backup.running
        assert backup.spec.env == {"APP_ENV": "staging", "API_TOKEN": "s3cr3t"}

    @pytest.mark.asyncio
    async def test_backup_removed_by_default(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())

        result = await orchestrator.recreate(request({"APP_ENV": "prod"}))

        assert result.status == RecreateStatus.SUCCESS
        assert result.rollback_container_name is None
        assert result.rollback_available is False
        assert original.id not in runtime.containers
        assert runtime.by_name(BACKUP) is None
        assert orchestrator.allocator.issued() == frozenset()

    @pytest.mark.asyncio
    async def test_config_default_retains_backup(self, runtime, make_spec, recreate_config) -> None:
        config = recreate_config.model_copy(update={"keep_rollback_container": True})
        orchestrator = RecreateOrchestrator(runtime, config)
        runtime.add(make_spec())

        result = await orchestrator.recreate(request({"APP_ENV": "prod"}))

        assert result.rollback_container_name == BACKUP
        assert runtime.by_name(BACKUP) is not None

    @pytest.mark.asyncio
    async def test_state_trail(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())

        result = await orchestrator.recreate(request({"APP_ENV": "prod"}))

        assert result.states == [
            RecreateState.IDLE,
            RecreateState.SNAPSHOT,
            RecreateState.RENAME_BACKUP,
            RecreateState.STOP_BACKUP,
            RecreateState.CREATE_NEW,
            RecreateState.START_NEW,
            RecreateState.HEALTH_PROBE,
            RecreateState.SUCCESS,
            RecreateState.CLEANUP_BACKUP,
        ]

    @pytest.mark.asyncio
    async def test_backup_stopped_before_replacement_created(self, runtime, orchestrator, make_spec) -> None:
        """The original releases its host port before the replacement starts."""
        original = runtime.add(make_spec())

        await orchestrator.recreate(request({"APP_ENV": "prod"}))

        actions = runtime.actions()
        assert actions.index("rename") < actions.index("stop") < actions.index("create")
        assert ("stop", original.id) in runtime.calls

    @pytest.mark.asyncio
    async def test_stopped_container_is_not_stopped_again(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec(running=False))

        result = await orchestrator.recreate(request({"APP_ENV": "prod"}))

        assert result.status == RecreateStatus.SUCCESS
        assert "stop" not in runtime.actions()

    @pytest.mark.asyncio
    async def test_full_replace_drops_unlisted_variables(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())

        await orchestrator.recreate(request({"ONLY": "1"}))

        assert runtime.by_name(NAME).spec.env == {"ONLY": "1"}

    @pytest.mark.asyncio
    async def test_merge_overlays_current_env(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())

        await orchestrator.recreate(request({"APP_ENV": "prod", "NEW": "1"}, merge=True))

        assert runtime.by_name(NAME).spec.env == {
            "APP_ENV": "prod",
            "API_TOKEN": "s3cr3t",
            "NEW": "1",
        }

    @pytest.mark.asyncio
    async def test_replacement_keeps_every_other_setting(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())

        await orchestrator.recreate(request({"APP_ENV": "prod"}))

        ignored = {"id", "name", "env", "running", "status"}
        current = runtime.by_name(NAME)
        assert current.spec.model_dump(exclude=ignored) == original.spec.model_dump(exclude=ignored)
        assert current.spec.name == NAME

    @pytest.mark.asyncio
    async def test_resolves_container_by_id(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())

        result = await orchestrator.recreate(
            RecreateRequest(container=original.id[:12], env={"A": "1"}, recreate=True)
        )

        assert result.container_name == NAME
        assert runtime.by_name(NAME).spec.env == {"A": "1"}

    @pytest.mark.asyncio
    async def test_second_run_gets_next_generation_name(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())

        first = await orchestrator.recreate(request({"V": "1"}, keep_rollback_container=True))
        second = await orchestrator.recreate(request({"V": "2"}, keep_rollback_container=True))

        assert first.rollback_container_name == BACKUP
        assert second.rollback_container_name == f"{BACKUP}_2"
        assert runtime.by_name(NAME).spec.env == {"V": "2"}
        assert runtime.by_name(f"{BACKUP}_2").spec.env == {"V": "1"}


class TestRecreateRejections:
    """Test failures before the backup rename, which change nothing."""

    @pytest.mark.asyncio
    async def test_recreate_flag_required(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())

        with pytest.raises(ValidationError):
            await orchestrator.recreate(RecreateRequest(container=NAME, env={"A": "1"}))

        assert runtime.calls == []

    @pytest.mark.asyncio
    async def test_invalid_env_rejected(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())

        with pytest.raises(ValidationError):
            await orchestrator.recreate(request({"BAD=NAME": "1"}))

        assert runtime.calls == []

    @pytest.mark.asyncio
    async def test_missing_container(self, orchestrator) -> None:
        with pytest.raises(ContainerNotFoundError) as exc_info:
            await orchestrator.recreate(request({"A": "1"}))

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_snapshot_failure(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.fail("inspect")

        with pytest.raises(SnapshotFailed):
            await orchestrator.recreate(request({"A": "1"}))

        assert "rename" not in runtime.actions()
        assert runtime.by_name(NAME) is original
        assert original.running

    @pytest.mark.asyncio
    async def test_backup_rename_failure(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.fail("rename")

        with pytest.raises(BackupFailed):
            await orchestrator.recreate(request({"A": "1"}))

        assert runtime.by_name(NAME) is original
        assert original.running
        assert original.spec.env == {"APP_ENV": "staging", "API_TOKEN": "s3cr3t"}
        assert orchestrator.allocator.issued() == frozenset()
        assert not orchestrator.locks.is_locked(NAME)


class TestRecreateRollback:
    """Test automatic restoration after failures past the backup rename."""

    @pytest.mark.asyncio
    async def test_start_failure_restores_original(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.fail("start")

        with pytest.raises(StartFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "prod"}))

        result = exc_info.value.result
        assert result.status == RecreateStatus.RESTORED
        assert result.rollback_available is False
        assert result.states[-1] == RecreateState.RESTORED
        (current,) = holders(runtime)
        assert current is original
        assert current.running
        assert current.spec.env == {"APP_ENV": "staging", "API_TOKEN": "s3cr3t"}
        assert len(runtime.containers) == 1

    @pytest.mark.asyncio
    async def test_create_failure_restores_original(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.fail("create")

        with pytest.raises(CreateFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "prod"}))

        assert exc_info.value.result.status == RecreateStatus.RESTORED
        assert RecreateState.ROLLBACK_REMOVE_NEW not in exc_info.value.result.states
        assert runtime.by_name(NAME) is original
        assert original.running

    @pytest.mark.asyncio
    async def test_stop_failure_restores_original(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.fail("stop")

        with pytest.raises(CreateFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "prod"}))

        result = exc_info.value.result
        assert result.status == RecreateStatus.RESTORED
        assert RecreateState.CREATE_NEW not in result.states
        assert RecreateState.ROLLBACK_REMOVE_NEW not in result.states
        assert "create" not in runtime.actions()
        assert runtime.by_name(NAME) is original
        assert original.running
        assert original.spec.env == {"APP_ENV": "staging", "API_TOKEN": "s3cr3t"}

    @pytest.mark.asyncio
    async def test_crashing_replacement_restores_original(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.exit_on_start(lambda spec: spec.env.get("APP_ENV") == "broken")

        with pytest.raises(StartFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "broken"}))

        assert exc_info.value.result.status == RecreateStatus.RESTORED
        assert runtime.by_name(NAME) is original
        assert original.running
        assert len(runtime.containers) == 1

    @pytest.mark.asyncio
    async def test_stopped_original_restored_stopped(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec(running=False))
        runtime.fail("start")

        with pytest.raises(StartFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "prod"}))

        assert RecreateState.ROLLBACK_START not in exc_info.value.result.states
        assert runtime.by_name(NAME) is original
        assert not original.running

    @pytest.mark.asyncio
    async def test_rollback_failure_is_reported_not_retried(self, runtime, orchestrator, make_spec) -> None:
        """Replacement fails and so does renaming the backup back."""
        original = runtime.add(make_spec())
        runtime.fail("start")
        runtime.fail("rename", match=lambda ref, new_name: new_name == NAME)

        with pytest.raises(RollbackFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "prod"}))

        error = exc_info.value
        assert error.message == "Rollback fallback also failed"
        assert error.code == "ROLLBACK_FAILED"
        assert error.result.status == RecreateStatus.ROLLBACK_FAILED
        assert error.result.rollback_container_name == BACKUP
        assert error.result.states[-1] == RecreateState.ROLLBACK_FAILED
        assert runtime.by_name(BACKUP) is original
        assert [call for call in runtime.calls if call[0] == "rename"] == [
            ("rename", original.id, BACKUP),
            ("rename", original.id, NAME),
        ]

    @pytest.mark.asyncio
    async def test_restart_failure_is_rollback_failure(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.fail("start", times=2)

        with pytest.raises(RollbackFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "prod"}))

        assert exc_info.value.result.status == RecreateStatus.ROLLBACK_FAILED
        assert runtime.by_name(NAME) is original
        assert not original.running

    @pytest.mark.asyncio
    async def test_remove_new_failure_still_attempts_restore(self, runtime, orchestrator, make_spec) -> None:
        runtime.fail("start")
        runtime.fail("remove")
        runtime.add(make_spec())

        with pytest.raises(RollbackFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "prod"}))

        # The failed replacement still holds the name, so renaming back fails
        assert exc_info.value.result.warnings
        assert runtime.actions()[-1] == "rename"

    @pytest.mark.asyncio
    async def test_rollback_disabled_leaves_failure_in_place(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.fail("start")

        with pytest.raises(StartFailed) as exc_info:
            await orchestrator.recreate(request({"APP_ENV": "prod"}, rollback_on_failure=False))

        result = exc_info.value.result
        assert result.status == RecreateStatus.FAILED
        assert result.rollback_container_name == BACKUP
        assert result.rollback_available is True
        assert runtime.by_name(NAME).id == result.new_container_id
        assert runtime.by_name(BACKUP) is original
        assert not original.running


class TestRecreateCleanup:
    """Test backup removal after success."""

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_a_warning(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        runtime.fail("remove")

        result = await orchestrator.recreate(request({"APP_ENV": "prod"}))

        assert result.status == RecreateStatus.SUCCESS
        assert result.rollback_available is True
        assert result.rollback_container_name == BACKUP
        assert any("Could not remove backup" in w for w in result.warnings)
        assert runtime.by_name(BACKUP) is original


class TestRecreateSerialization:
    """Test per-container locking and cancellation."""

    @pytest.mark.asyncio
    async def test_concurrent_request_rejected(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())
        gate = runtime.gate("stop")

        first = asyncio.create_task(orchestrator.recreate(request({"V": "1"})))
        while "stop" not in runtime.actions():
            await asyncio.sleep(0.001)

        with pytest.raises(ConflictError):
            await orchestrator.recreate(request({"V": "2"}))

        gate.set()
        result = await first
        assert result.status == RecreateStatus.SUCCESS
        assert runtime.by_name(NAME).spec.env == {"V": "1"}
        assert not orchestrator.locks.is_locked(NAME)

    @pytest.mark.asyncio
    async def test_different_containers_run_concurrently(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec(name="alpha", ports={}))
        runtime.add(make_spec(name="beta", ports={}))

        results = await asyncio.gather(
            orchestrator.recreate(RecreateRequest(container="alpha", env={"A": "1"}, recreate=True)),
            orchestrator.recreate(RecreateRequest(container="beta", env={"B": "1"}, recreate=True)),
        )

        assert [r.status for r in results] == [RecreateStatus.SUCCESS, RecreateStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_cancellation_after_pivot_completes_flow(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())
        gate = runtime.gate("start")

        task = asyncio.create_task(orchestrator.recreate(request({"APP_ENV": "prod"})))
        while "start" not in runtime.actions():
            await asyncio.sleep(0.001)

        task.cancel()
        await asyncio.sleep(0.01)
        gate.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        (current,) = holders(runtime)
        assert current.running
        assert current.spec.env == {"APP_ENV": "prod"}
        assert runtime.by_name(BACKUP) is None
        assert not orchestrator.locks.is_locked(NAME)

    @pytest.mark.asyncio
    async def test_cancellation_during_backup_rename_completes_flow(
        self, runtime, orchestrator, make_spec
    ) -> None:
        runtime.add(make_spec())
        gate = runtime.gate("rename")

        task = asyncio.create_task(orchestrator.recreate(request({"APP_ENV": "prod"})))
        while "rename" not in runtime.actions():
            await asyncio.sleep(0.001)

        task.cancel()
        await asyncio.sleep(0.01)
        gate.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        (current,) = holders(runtime)
        assert current.running
        assert current.spec.env == {"APP_ENV": "prod"}
        assert runtime.by_name(BACKUP) is None
        assert not orchestrator.locks.is_locked(NAME)

    @pytest.mark.asyncio
    async def test_cancellation_during_failed_backup_rename_releases_name(
        self, runtime, orchestrator, make_spec
    ) -> None:
        original = runtime.add(make_spec())
        gate = runtime.gate("rename")
        runtime.fail("rename")

        task = asyncio.create_task(orchestrator.recreate(request({"APP_ENV": "prod"})))
        while "rename" not in runtime.actions():
            await asyncio.sleep(0.001)

        task.cancel()
        await asyncio.sleep(0.01)
        gate.set()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert runtime.by_name(NAME) is original
        assert orchestrator.allocator.backup_name(NAME, set()) == BACKUP
        assert not orchestrator.locks.is_locked(NAME)


class TestRestore:
    """Test putting a retained backup back under the canonical name."""

    @pytest.mark.asyncio
    async def test_restore_swaps_backup_in(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        first = await orchestrator.recreate(request({"APP_ENV": "prod"}, keep_rollback_container=True))

        result = await orchestrator.restore(NAME, BACKUP)

        assert result.status == RecreateStatus.SUCCESS
        assert result.new_container_id == original.id
        assert result.previous_container_id == first.new_container_id
        assert result.rollback_container_name == f"{BACKUP}_2"
        assert runtime.by_name(NAME) is original
        assert original.running
        parked = runtime.by_name(f"{BACKUP}_2")
        assert parked.id == first.new_container_id
        assert not parked.running

    @pytest.mark.asyncio
    async def test_restore_when_name_is_free(self, runtime, orchestrator, make_spec) -> None:
        backup = runtime.add(make_spec(name=BACKUP, running=False))

        result = await orchestrator.restore(NAME, BACKUP)

        assert result.rollback_container_name is None
        assert runtime.by_name(NAME) is backup
        assert backup.running

    @pytest.mark.asyncio
    async def test_restore_start_failure_is_undone(self, runtime, orchestrator, make_spec) -> None:
        original = runtime.add(make_spec())
        first = await orchestrator.recreate(request({"APP_ENV": "prod"}, keep_rollback_container=True))
        runtime.fail("start", match=lambda ref: ref == original.id)

        with pytest.raises(RestoreFailed):
            await orchestrator.restore(NAME, BACKUP)

        current = runtime.by_name(NAME)
        assert current.id == first.new_container_id
        assert current.running
        assert runtime.by_name(BACKUP) is original

    @pytest.mark.asyncio
    async def test_restore_missing_backup(self, runtime, orchestrator, make_spec) -> None:
        runtime.add(make_spec())

        with pytest.raises(ContainerNotFoundError):
            await orchestrator.restore(NAME, BACKUP)

    @pytest.mark.asyncio
    async def test_restore_same_name_rejected(self, orchestrator) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.restore(NAME, NAME)
