from __future__ import annotations

from typing import Callable, Protocol
import logging
import re
import time

from .errors import RepositoryError, RepositoryNotReadyError
from .models import (
    PHASE_NOT_READY,
    PHASE_READY,
    STORAGE_LOCATION_LABEL,
    VOLUME_NAMESPACE_LABEL,
    BackupRepository,
    BackupRepositorySpec,
)

logger = logging.getLogger(__name__)


class RepositoryStore(Protocol):
    def get(self, namespace: str, name: str) -> BackupRepository: ...

    def list(self, namespace: str, *, label_selector: str | None = None) -> list[BackupRepository]: ...

    def create(self, repository: BackupRepository) -> BackupRepository: ...


def repository_name(volume_namespace: str, backup_storage_location: str) -> str:
    return _sanitize_dns_label(f"{volume_namespace}-{backup_storage_location}-restic", max_length=63)


def repository_labels(volume_namespace: str, backup_storage_location: str) -> dict[str, str]:
    return {
        VOLUME_NAMESPACE_LABEL: _sanitize_label_value(volume_namespace),
        STORAGE_LOCATION_LABEL: _sanitize_label_value(backup_storage_location),
    }


class RepositoryEnsurer:
    """Finds or creates the BackupRepository for a volume namespace and location, then waits for Ready."""

    def __init__(
        self,
        *,
        store: RepositoryStore,
        timeout_seconds: float = 120,
        poll_interval_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.sleep = sleep
        self.monotonic = monotonic

    def ensure_repo(self, namespace: str, volume_namespace: str, backup_storage_location: str) -> BackupRepository:
        if not volume_namespace or not backup_storage_location:
            raise RepositoryError("volume namespace and backup storage location are both required")

        existing = self._find(namespace, volume_namespace, backup_storage_location)
        if existing is not None:
            if existing.status.phase == PHASE_READY:
                return existing
            return self._wait_for_ready(existing)

        candidate = BackupRepository(
            namespace=namespace,
            name=repository_name(volume_namespace, backup_storage_location),
            labels=repository_labels(volume_namespace, backup_storage_location),
            spec=BackupRepositorySpec(
                backup_storage_location=backup_storage_location,
                volume_namespace=volume_namespace,
            ),
        )
        logger.info("Creating backup repository %s", candidate.key)
        try:
            created = self.store.create(candidate)
        except RepositoryError:
            # Another caller may have created it first.
            existing = self._find(namespace, volume_namespace, backup_storage_location)
            if existing is None:
                raise
            created = existing
        return self._wait_for_ready(created)

    def _find(self, namespace: str, volume_namespace: str, backup_storage_location: str) -> BackupRepository | None:
        labels = repository_labels(volume_namespace, backup_storage_location)
        selector = ",".join(f"{key}={value}" for key, value in sorted(labels.items()))
        matches = self.store.list(namespace, label_selector=selector)
        if len(matches) > 1:
            names = ", ".join(sorted(item.name for item in matches))
            raise RepositoryError(f"more than one backup repository found for {selector}: {names}")
        return matches[0] if matches else None

    def _wait_for_ready(self, repository: BackupRepository) -> BackupRepository:
        deadline = self.monotonic() + self.timeout_seconds
        current = repository
        while True:
            if current.status.phase == PHASE_READY:
                return current
            if current.status.phase == PHASE_NOT_READY:
                raise RepositoryNotReadyError(
                    f"backup repository {current.key} is not ready: {current.status.message or 'no message'}"
                )
            if self.monotonic() >= deadline:
                raise RepositoryNotReadyError(
                    f"timed out waiting for backup repository {current.key} to become ready"
                )
            self.sleep(self.poll_interval_seconds)
            current = self.store.get(current.namespace, current.name)


def _sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-")
    return normalized or "nkrc-repository"


def _sanitize_label_value(value: str) -> str:
    normalized = re.sub(r"[^a-zA-Z0-9._-]", "-", value).strip("-._")
    return normalized[:63].rstrip("-._")
