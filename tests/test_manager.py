from __future__ import annotations

from contextlib import contextmanager
from unittest.mock import Mock

import pytest

from nerdy_k8s_repo_controller.commands import OperationKind
from nerdy_k8s_repo_controller.errors import CommandExecutionError, RepositoryError
from nerdy_k8s_repo_controller.locks import LockMode, RepoLocker
from nerdy_k8s_repo_controller.manager import (
    FAILURE_POLICY,
    RESTIC_MAINTENANCE_FREQUENCY,
    FailureClass,
    RepositoryManager,
)
from nerdy_k8s_repo_controller.models import (
    PHASE_READY,
    BackupRepository,
    BackupRepositorySpec,
    BackupRepositoryStatus,
    SnapshotIdentifier,
)


def _repository(name: str = "apps-default-restic") -> BackupRepository:
    return BackupRepository(
        namespace="velero",
        name=name,
        spec=BackupRepositorySpec(
            backup_storage_location="default",
            volume_namespace="apps",
            restic_identifier="s3:host/backups/restic/apps",
        ),
        status=BackupRepositoryStatus(phase=PHASE_READY),
    )


class _RecordingLocker(RepoLocker):
    def __init__(self) -> None:
        super().__init__()
        self.holds: list[tuple[str, LockMode]] = []

    @contextmanager
    def hold(self, name: str, mode: LockMode):
        self.holds.append((name, mode))
        with super().hold(name, mode):
            yield


class _RecordingExecutor:
    def __init__(self, *, fail_on: set[str] | None = None, stdout: str = "") -> None:
        self.fail_on = fail_on or set()
        self.stdout = stdout
        self.commands = []

    def run(self, command, location_name: str) -> str:
        self.commands.append((command, location_name))
        if command.operation.subcommand in self.fail_on:
            raise CommandExecutionError(
                command=str(command),
                stdout="",
                stderr=f"{command.operation.subcommand} failed",
                reason="exit status 1",
                exit_code=1,
            )
        return self.stdout


def _manager(executor: _RecordingExecutor, ensurer: Mock | None = None) -> tuple[RepositoryManager, _RecordingLocker]:
    locker = _RecordingLocker()
    manager = RepositoryManager(namespace="velero", executor=executor, ensurer=ensurer or Mock(), locker=locker)
    return manager, locker


def test_operations_take_lock_mode_matching_their_kind() -> None:
    executor = _RecordingExecutor()
    manager, locker = _manager(executor)
    repository = _repository()

    manager.init_repo(repository)
    manager.connect_to_repo(repository)
    manager.prune_repo(repository)
    manager.unlock_repo(repository)

    assert locker.holds == [
        ("apps-default-restic", LockMode.EXCLUSIVE),
        ("apps-default-restic", LockMode.SHARED),
        ("apps-default-restic", LockMode.EXCLUSIVE),
        ("apps-default-restic", LockMode.SHARED),
    ]
    assert [command.operation for command, _ in executor.commands] == [
        OperationKind.INIT,
        OperationKind.CONNECT,
        OperationKind.PRUNE,
        OperationKind.UNLOCK,
    ]
    assert {location for _, location in executor.commands} == {"default"}


def test_prepare_repo_runs_init_then_connect() -> None:
    executor = _RecordingExecutor()
    manager, _ = _manager(executor)

    manager.prepare_repo(_repository())

    assert [command.operation for command, _ in executor.commands] == [OperationKind.INIT, OperationKind.CONNECT]


def test_prepare_repo_with_init_failure_skips_connect() -> None:
    executor = _RecordingExecutor(fail_on={"init"})
    manager, _ = _manager(executor)

    with pytest.raises(CommandExecutionError, match="init failed"):
        manager.prepare_repo(_repository())

    assert [command.operation for command, _ in executor.commands] == [OperationKind.INIT]


def test_lock_is_released_after_failed_command() -> None:
    executor = _RecordingExecutor(fail_on={"prune"})
    manager, locker = _manager(executor)

    with pytest.raises(CommandExecutionError):
        manager.prune_repo(_repository())

    with locker.exclusive("apps-default-restic"):
        pass


def test_unlock_repo_with_failure_returns_advisory_result() -> None:
    executor = _RecordingExecutor(fail_on={"unlock"})
    manager, _ = _manager(executor)

    outcome = manager.unlock_repo(_repository())

    assert outcome.succeeded is False
    assert "unable to remove stale locks from velero/apps-default-restic" in outcome.message
    assert "unlock failed" in outcome.message


def test_unlock_repo_with_success_reports_success() -> None:
    manager, _ = _manager(_RecordingExecutor())

    outcome = manager.unlock_repo(_repository())

    assert outcome.succeeded is True
    assert outcome.message == ""


def test_forget_ensures_repository_then_runs_exclusive_forget() -> None:
    executor = _RecordingExecutor()
    ensurer = Mock()
    ensurer.ensure_repo.return_value = _repository()
    manager, locker = _manager(executor, ensurer)

    manager.forget(SnapshotIdentifier(volume_namespace="apps", backup_storage_location="default", snapshot_id="abc123"))

    ensurer.ensure_repo.assert_called_once_with("velero", "apps", "default")
    command, _ = executor.commands[0]
    assert command.operation is OperationKind.FORGET
    assert command.args == ["abc123"]
    assert locker.holds == [("apps-default-restic", LockMode.EXCLUSIVE)]


def test_forget_with_unavailable_repository_does_not_run_command() -> None:
    executor = _RecordingExecutor()
    ensurer = Mock()
    ensurer.ensure_repo.side_effect = RepositoryError("not ready")
    manager, _ = _manager(executor, ensurer)

    with pytest.raises(RepositoryError, match="not ready"):
        manager.forget(SnapshotIdentifier(volume_namespace="apps", backup_storage_location="default", snapshot_id="x"))

    assert executor.commands == []


def test_failure_policy_covers_every_operation() -> None:
    assert set(FAILURE_POLICY) == set(OperationKind)
    assert FAILURE_POLICY[OperationKind.INIT] is FailureClass.DEMOTE
    assert FAILURE_POLICY[OperationKind.CONNECT] is FailureClass.DEMOTE
    assert FAILURE_POLICY[OperationKind.PRUNE] is FailureClass.RECORD
    assert FAILURE_POLICY[OperationKind.FORGET] is FailureClass.RECORD
    assert FAILURE_POLICY[OperationKind.UNLOCK] is FailureClass.LOG


def test_manager_keeps_injected_locker() -> None:
    locker = RepoLocker()

    manager = RepositoryManager(namespace="velero", executor=_RecordingExecutor(), ensurer=Mock(), locker=locker)

    assert manager.locker is locker


def test_default_maintenance_frequency_is_weekly() -> None:
    manager, _ = _manager(_RecordingExecutor())

    assert manager.default_maintenance_frequency(_repository()) == RESTIC_MAINTENANCE_FREQUENCY


def test_backupper_returns_snapshot_id_from_restic_output() -> None:
    executor = _RecordingExecutor(stdout="Files: 3 new\nsnapshot 1a2b3c4d saved\n")
    ensurer = Mock()
    ensurer.ensure_repo.return_value = _repository()
    manager, locker = _manager(executor, ensurer)

    snapshot_id = manager.backupper_factory().new_backupper().backup(
        volume_namespace="apps",
        backup_storage_location="default",
        path="/host_pods/uid/volumes/data",
        tags={"backup": "nightly"},
    )

    assert snapshot_id == "1a2b3c4d"
    command, _ = executor.commands[0]
    assert command.operation is OperationKind.BACKUP
    assert command.working_dir == "/host_pods/uid/volumes/data"
    assert locker.holds == [("apps-default-restic", LockMode.SHARED)]


def test_backupper_without_snapshot_in_output_raises() -> None:
    ensurer = Mock()
    ensurer.ensure_repo.return_value = _repository()
    manager, _ = _manager(_RecordingExecutor(stdout="nothing useful"), ensurer)

    with pytest.raises(RepositoryError, match="did not report a snapshot id"):
        manager.backupper_factory().new_backupper().backup(
            volume_namespace="apps",
            backup_storage_location="default",
            path="/data",
        )


def test_restorer_runs_shared_restore_into_target() -> None:
    executor = _RecordingExecutor()
    ensurer = Mock()
    ensurer.ensure_repo.return_value = _repository()
    manager, locker = _manager(executor, ensurer)

    manager.restorer_factory().new_restorer().restore(
        snapshot=SnapshotIdentifier(volume_namespace="apps", backup_storage_location="default", snapshot_id="abc"),
        target="/restore",
    )

    command, _ = executor.commands[0]
    assert command.operation is OperationKind.RESTORE
    assert command.working_dir == "/restore"
    assert locker.holds == [("apps-default-restic", LockMode.SHARED)]


def test_factories_share_manager_locker() -> None:
    manager, locker = _manager(_RecordingExecutor())

    assert manager.backupper_factory().locker is locker
    assert manager.restorer_factory().locker is locker
