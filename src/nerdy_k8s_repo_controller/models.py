from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

PHASE_NEW = "New"
PHASE_READY = "Ready"
PHASE_NOT_READY = "NotReady"

VOLUME_NAMESPACE_LABEL = "velero.io/volume-namespace"
STORAGE_LOCATION_LABEL = "velero.io/storage-location"


@dataclass(frozen=True)
class BackupRepositorySpec:
    backup_storage_location: str
    volume_namespace: str
    restic_identifier: str = ""
    # None means "not chosen yet"; resolved once during initialization.
    maintenance_frequency: timedelta | None = None


@dataclass(frozen=True)
class BackupRepositoryStatus:
    phase: str = ""
    message: str = ""
    last_maintenance_time: datetime | None = None


@dataclass(frozen=True)
class BackupRepository:
    namespace: str
    name: str
    spec: BackupRepositorySpec
    status: BackupRepositoryStatus = field(default_factory=BackupRepositoryStatus)
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_new(self) -> bool:
        return self.status.phase in {"", PHASE_NEW}


@dataclass(frozen=True)
class SecretKeySelector:
    name: str
    key: str


@dataclass(frozen=True)
class BackupStorageLocation:
    namespace: str
    name: str
    provider: str
    bucket: str
    prefix: str = ""
    ca_cert: bytes | None = None
    config: dict[str, str] = field(default_factory=dict)
    default: bool = False
    credential: SecretKeySelector | None = None


@dataclass(frozen=True)
class SnapshotIdentifier:
    volume_namespace: str
    backup_storage_location: str
    snapshot_id: str
