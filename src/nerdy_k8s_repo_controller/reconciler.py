from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Callable, Protocol
import logging

from .commands import OperationKind, repository_identifier
from .errors import RepositoryError, RepositoryNotFoundError, ResolutionError, error_message
from .maintenance import due_for_maintenance, resolve_maintenance_frequency
from .manager import FAILURE_POLICY, FailureClass, RepositoryManager
from .models import PHASE_NOT_READY, PHASE_READY, BackupRepository, BackupStorageLocation

logger = logging.getLogger(__name__)

Mutation = Callable[[BackupRepository], BackupRepository]


class RepositoryStore(Protocol):
    def get(self, namespace: str, name: str) -> BackupRepository: ...

    def patch(self, original: BackupRepository, updated: BackupRepository) -> BackupRepository: ...


class LocationLookup(Protocol):
    def get(self, namespace: str, name: str) -> BackupStorageLocation: ...


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class BackupRepoReconciler:
    """Drives BackupRepository resources through New -> Ready/NotReady.

    Backend failures end up in ``status.message``; only failures to read or
    patch the resource itself are raised so the caller can requeue.
    """

    def __init__(
        self,
        *,
        repositories: RepositoryStore,
        locations: LocationLookup,
        manager: RepositoryManager,
        maintenance_frequency: timedelta | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.repositories = repositories
        self.locations = locations
        self.manager = manager
        self.maintenance_frequency = maintenance_frequency
        self.clock = clock

    def reconcile(self, namespace: str, name: str) -> None:
        try:
            repository = self.repositories.get(namespace, name)
        except RepositoryNotFoundError:
            logger.warning("backup repository %s in namespace %s is not found", name, namespace)
            return

        if repository.is_new:
            self._initialize_repo(repository)
            return

        if repository.status.phase == PHASE_READY:
            self._check_stale_locks(repository)
            self._run_maintenance_if_due(repository)
        elif repository.status.phase == PHASE_NOT_READY:
            self._check_not_ready_repo(repository)
        else:
            logger.warning("%s: unknown phase %r, skipping", repository.key, repository.status.phase)

    def patch_repository(self, repository: BackupRepository, mutate: Mutation) -> BackupRepository:
        return self.repositories.patch(repository, mutate(repository))

    def _initialize_repo(self, repository: BackupRepository) -> None:
        logger.info("%s: initializing backup repository", repository.key)

        try:
            location = self.locations.get(repository.namespace, repository.spec.backup_storage_location)
        except ResolutionError as error:
            self.patch_repository(repository, _repo_not_ready(error_message(error)))
            return

        frequency = repository.spec.maintenance_frequency or self._maintenance_frequency_for(repository)

        identifier = repository.spec.restic_identifier
        if not identifier:
            try:
                identifier = repository_identifier(location, repository.spec.volume_namespace)
            except ResolutionError as error:
                not_ready = _repo_not_ready(error_message(error))
                self.patch_repository(repository, lambda current: _with_frequency(not_ready(current), frequency))
                return

        repository = self.patch_repository(
            repository,
            lambda current: _with_frequency(
                replace(current, spec=replace(current.spec, restic_identifier=identifier)),
                frequency,
            ),
        )

        try:
            self.manager.prepare_repo(repository)
        except RepositoryError as error:
            self._record_failure(repository, OperationKind.INIT, error)
            return

        now = self.clock()
        self.patch_repository(
            repository,
            lambda current: replace(
                current,
                status=replace(current.status, phase=PHASE_READY, message="", last_maintenance_time=now),
            ),
        )
        logger.info("%s: backup repository is ready", repository.key)

    def _maintenance_frequency_for(self, repository: BackupRepository) -> timedelta:
        return resolve_maintenance_frequency(
            override=self.maintenance_frequency,
            suggested=lambda: self.manager.default_maintenance_frequency(repository),
        )

    def _check_stale_locks(self, repository: BackupRepository) -> None:
        logger.debug("%s: checking repository for stale locks", repository.key)
        outcome = self.manager.unlock_repo(repository)
        if not outcome.succeeded:
            logger.warning("%s: stale lock check failed, continuing: %s", repository.key, outcome.message)

    def _run_maintenance_if_due(self, repository: BackupRepository) -> None:
        now = self.clock()
        if not due_for_maintenance(repository, now):
            logger.debug("%s: not due for maintenance", repository.key)
            return

        logger.info("%s: running maintenance on backup repository", repository.key)
        try:
            self.manager.prune_repo(repository)
        except RepositoryError as error:
            logger.warning("%s: error pruning repository: %s", repository.key, error_message(error))
            self._record_failure(repository, OperationKind.PRUNE, error)
            return

        self.patch_repository(
            repository,
            lambda current: replace(current, status=replace(current.status, last_maintenance_time=now)),
        )

    def _check_not_ready_repo(self, repository: BackupRepository) -> None:
        # No identifier means nothing to unlock or prepare; stays NotReady.
        if not repository.spec.restic_identifier:
            return

        self._check_stale_locks(repository)
        logger.info("%s: checking backup repository for readiness", repository.key)
        try:
            self.manager.prepare_repo(repository)
        except RepositoryError as error:
            self._record_failure(repository, OperationKind.CONNECT, error)
            return

        self.patch_repository(repository, _repo_ready())

    def _record_failure(self, repository: BackupRepository, operation: OperationKind, error: Exception) -> None:
        message = error_message(error)
        failure_class = FAILURE_POLICY[operation]
        if failure_class is FailureClass.DEMOTE:
            self.patch_repository(repository, _repo_not_ready(message))
        elif failure_class is FailureClass.RECORD:
            self.patch_repository(
                repository,
                lambda current: replace(current, status=replace(current.status, message=message)),
            )
        else:
            logger.warning("%s: restic %s failed: %s", repository.key, operation.subcommand, message)


def _repo_not_ready(message: str) -> Mutation:
    def mutate(repository: BackupRepository) -> BackupRepository:
        return replace(repository, status=replace(repository.status, phase=PHASE_NOT_READY, message=message))

    return mutate


def _repo_ready() -> Mutation:
    def mutate(repository: BackupRepository) -> BackupRepository:
        return replace(repository, status=replace(repository.status, phase=PHASE_READY, message=""))

    return mutate


def _with_frequency(repository: BackupRepository, frequency: timedelta) -> BackupRepository:
    if repository.spec.maintenance_frequency is not None:
        return repository
    return replace(repository, spec=replace(repository.spec, maintenance_frequency=frequency))
