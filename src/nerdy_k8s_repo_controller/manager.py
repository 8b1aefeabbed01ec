from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Protocol
import logging
import re

from .commands import OperationKind, build_command
from .ensurer import RepositoryEnsurer
from .errors import LockStaleError, RepositoryError, error_message
from .locks import RepoLocker
from .models import BackupRepository, SnapshotIdentifier

logger = logging.getLogger(__name__)

# Suggested prune cadence for restic repositories.
RESTIC_MAINTENANCE_FREQUENCY = timedelta(days=7)

_SNAPSHOT_SAVED = re.compile(r"snapshot ([0-9a-f]{8,64}) saved")


class FailureClass(str, Enum):
    DEMOTE = "demote"
    RECORD = "record"
    LOG = "log"


# How a failed operation affects a repository:
#   DEMOTE - repository is unusable, phase becomes NotReady with the message
#   RECORD - message is surfaced (status or caller), phase is unchanged
#   LOG    - advisory only, written to the log and never returned
FAILURE_POLICY: dict[OperationKind, FailureClass] = {
    OperationKind.INIT: FailureClass.DEMOTE,
    OperationKind.CONNECT: FailureClass.DEMOTE,
    OperationKind.PRUNE: FailureClass.RECORD,
    OperationKind.FORGET: FailureClass.RECORD,
    OperationKind.BACKUP: FailureClass.RECORD,
    OperationKind.RESTORE: FailureClass.RECORD,
    OperationKind.UNLOCK: FailureClass.LOG,
}


@dataclass(frozen=True)
class AdvisoryResult:
    """Outcome of a best-effort operation. Not an error and never raised."""

    succeeded: bool
    message: str = ""


class CommandExecutor(Protocol):
    def run(self, command, location_name: str) -> str: ...


class RepositoryManager:
    def __init__(
        self,
        *,
        namespace: str,
        executor: CommandExecutor,
        ensurer: RepositoryEnsurer,
        locker: RepoLocker | None = None,
    ) -> None:
        self.namespace = namespace
        self.executor = executor
        self.ensurer = ensurer
        self.locker = locker if locker is not None else RepoLocker()

    def init_repo(self, repository: BackupRepository) -> None:
        self._run(OperationKind.INIT, repository)

    def connect_to_repo(self, repository: BackupRepository) -> None:
        self._run(OperationKind.CONNECT, repository)

    def prepare_repo(self, repository: BackupRepository) -> None:
        self.init_repo(repository)
        self.connect_to_repo(repository)

    def prune_repo(self, repository: BackupRepository) -> None:
        self._run(OperationKind.PRUNE, repository)

    def unlock_repo(self, repository: BackupRepository) -> AdvisoryResult:
        try:
            self._run(OperationKind.UNLOCK, repository)
        except Exception as error:  # pylint: disable=broad-except
            stale = LockStaleError(f"unable to remove stale locks from {repository.key}: {error_message(error)}")
            logger.error("Error checking repository for stale locks: %s", stale)
            return AdvisoryResult(succeeded=False, message=str(stale))
        return AdvisoryResult(succeeded=True)

    def forget(self, snapshot: SnapshotIdentifier) -> None:
        repository = self.ensurer.ensure_repo(
            self.namespace,
            snapshot.volume_namespace,
            snapshot.backup_storage_location,
        )
        self._run(OperationKind.FORGET, repository, snapshot_id=snapshot.snapshot_id)

    def default_maintenance_frequency(self, repository: BackupRepository) -> timedelta:
        return RESTIC_MAINTENANCE_FREQUENCY

    def backupper_factory(self) -> BackupperFactory:
        return BackupperFactory(self)

    def restorer_factory(self) -> RestorerFactory:
        return RestorerFactory(self)

    def _run(self, operation: OperationKind, repository: BackupRepository, **arguments: object) -> str:
        command = build_command(operation, repository.spec.restic_identifier, **arguments)
        logger.debug(
            "Running restic %s on %s with %s lock",
            operation.subcommand,
            repository.key,
            operation.lock_mode.value,
        )
        with self.locker.hold(repository.name, operation.lock_mode):
            return self.executor.run(command, repository.spec.backup_storage_location)


class Backupper:
    def __init__(self, manager: RepositoryManager) -> None:
        self.manager = manager

    def backup(
        self,
        *,
        volume_namespace: str,
        backup_storage_location: str,
        path: str,
        tags: dict[str, str] | None = None,
    ) -> str:
        repository = self.manager.ensurer.ensure_repo(self.manager.namespace, volume_namespace, backup_storage_location)
        stdout = self.manager._run(OperationKind.BACKUP, repository, path=path, tags=tags or {})
        match = _SNAPSHOT_SAVED.search(stdout)
        if match is None:
            raise RepositoryError(f"restic backup into {repository.key} did not report a snapshot id")
        return match.group(1)


class Restorer:
    def __init__(self, manager: RepositoryManager) -> None:
        self.manager = manager

    def restore(self, *, snapshot: SnapshotIdentifier, target: str) -> None:
        repository = self.manager.ensurer.ensure_repo(
            self.manager.namespace,
            snapshot.volume_namespace,
            snapshot.backup_storage_location,
        )
        self.manager._run(OperationKind.RESTORE, repository, snapshot_id=snapshot.snapshot_id, target=target)


class BackupperFactory:
    def __init__(self, manager: RepositoryManager) -> None:
        self.manager = manager

    @property
    def locker(self) -> RepoLocker:
        return self.manager.locker

    def new_backupper(self) -> Backupper:
        return Backupper(self.manager)


class RestorerFactory:
    def __init__(self, manager: RepositoryManager) -> None:
        self.manager = manager

    @property
    def locker(self) -> RepoLocker:
        return self.manager.locker

    def new_restorer(self) -> Restorer:
        return Restorer(self.manager)
