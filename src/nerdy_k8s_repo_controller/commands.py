from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import posixpath
import shlex

from .errors import ResolutionError
from .locks import LockMode
from .models import BackupStorageLocation

INSECURE_SKIP_TLS_VERIFY_KEY = "insecureSkipTLSVerify"
INSECURE_TLS_FLAG = "--insecure-tls"
CREDENTIALS_FILE_KEY = "credentialsFile"
RESTIC_REPO_PREFIX_KEY = "resticRepoPrefix"

AWS_BACKEND = "aws"
AZURE_BACKEND = "azure"
GCP_BACKEND = "gcp"

_AWS_PROFILE_KEY = "profile"
_AZURE_STORAGE_ACCOUNT_KEY = "storageAccount"


class OperationKind(Enum):
    INIT = ("init", LockMode.EXCLUSIVE)
    CONNECT = ("snapshots", LockMode.SHARED)
    PRUNE = ("prune", LockMode.EXCLUSIVE)
    UNLOCK = ("unlock", LockMode.SHARED)
    FORGET = ("forget", LockMode.EXCLUSIVE)
    BACKUP = ("backup", LockMode.SHARED)
    RESTORE = ("restore", LockMode.SHARED)

    def __init__(self, subcommand: str, lock_mode: LockMode) -> None:
        self.subcommand = subcommand
        self.lock_mode = lock_mode


@dataclass
class ResticCommand:
    operation: OperationKind
    repository_identifier: str
    password_file: str = ""
    ca_cert_file: str = ""
    cache_dir: str = ""
    working_dir: str | None = None
    args: list[str] = field(default_factory=list)
    extra_flags: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    binary: str = "restic"

    @property
    def repository_name(self) -> str:
        return posixpath.basename(self.repository_identifier.rstrip("/"))

    def argv(self) -> list[str]:
        rendered = [self.binary, self.operation.subcommand, f"--repo={self.repository_identifier}"]
        if self.password_file:
            rendered.append(f"--password-file={self.password_file}")
        if self.ca_cert_file:
            rendered.append(f"--cacert={self.ca_cert_file}")
        if self.cache_dir:
            rendered.append(f"--cache-dir={self.cache_dir}")
        rendered.extend(self.args)
        rendered.extend(self.extra_flags)
        return rendered

    def __str__(self) -> str:
        return " ".join(shlex.quote(token) for token in self.argv())


def build_command(
    operation: OperationKind,
    repository_identifier: str,
    *,
    snapshot_id: str | None = None,
    path: str | None = None,
    tags: dict[str, str] | None = None,
    target: str | None = None,
) -> ResticCommand:
    if not repository_identifier:
        raise ResolutionError(f"repository identifier is required for restic {operation.subcommand}")

    command = ResticCommand(operation=operation, repository_identifier=repository_identifier)
    if operation is OperationKind.CONNECT:
        # Only validating reachability and auth; fetch as little as possible.
        command.extra_flags.append("--latest=1")
    elif operation is OperationKind.FORGET:
        command.args.append(_required(snapshot_id, "snapshot id", operation))
    elif operation is OperationKind.BACKUP:
        command.working_dir = _required(path, "backup path", operation)
        command.args.append(".")
        command.extra_flags.extend(f"--tag={key}={value}" for key, value in sorted((tags or {}).items()))
        command.extra_flags.append("--host=nkrc")
    elif operation is OperationKind.RESTORE:
        command.working_dir = _required(target, "restore target", operation)
        command.args.append(_required(snapshot_id, "snapshot id", operation))
        command.extra_flags.append("--target=.")
    return command


def _required(value: str | None, description: str, operation: OperationKind) -> str:
    if not value:
        raise ValueError(f"{description} is required for restic {operation.subcommand}")
    return value


def backend_type(provider: str) -> str:
    normalized = provider.strip().lower()
    for backend in (AWS_BACKEND, AZURE_BACKEND, GCP_BACKEND):
        # Provider names may be namespaced, e.g. "velero.io/aws".
        if normalized == backend or normalized.endswith(f"/{backend}"):
            return backend
    return normalized


def provider_env(location: BackupStorageLocation, credentials_file: str | None = None) -> dict[str, str]:
    config = dict(location.config)
    if credentials_file:
        config[CREDENTIALS_FILE_KEY] = credentials_file

    backend = backend_type(location.provider)
    env: dict[str, str] = {}
    if backend == AWS_BACKEND:
        if CREDENTIALS_FILE_KEY in config:
            env["AWS_SHARED_CREDENTIALS_FILE"] = config[CREDENTIALS_FILE_KEY]
        if _AWS_PROFILE_KEY in config:
            env["AWS_PROFILE"] = config[_AWS_PROFILE_KEY]
    elif backend == GCP_BACKEND:
        if CREDENTIALS_FILE_KEY in config:
            env["GOOGLE_APPLICATION_CREDENTIALS"] = config[CREDENTIALS_FILE_KEY]
    elif backend == AZURE_BACKEND:
        if _AZURE_STORAGE_ACCOUNT_KEY in config:
            env["AZURE_ACCOUNT_NAME"] = config[_AZURE_STORAGE_ACCOUNT_KEY]
        if CREDENTIALS_FILE_KEY in config:
            env["AZURE_CREDENTIALS_FILE"] = config[CREDENTIALS_FILE_KEY]
    return env


def insecure_tls_flag(location: BackupStorageLocation | None) -> str | None:
    if location is None:
        return None
    if _parse_bool(location.config.get(INSECURE_SKIP_TLS_VERIFY_KEY, "")):
        return f"{INSECURE_TLS_FLAG}=true"
    return None


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "t", "true"}


def repository_identifier(location: BackupStorageLocation, volume_namespace: str) -> str:
    if not volume_namespace:
        raise ResolutionError("volume namespace is required to derive a repository identifier")

    repo_prefix = location.config.get(RESTIC_REPO_PREFIX_KEY, "").strip()
    if repo_prefix:
        return f"{repo_prefix.rstrip('/')}/{volume_namespace}"

    if not location.bucket:
        raise ResolutionError(f"backup storage location {location.name} has no object storage bucket")

    backend = backend_type(location.provider)
    prefix = location.prefix.strip("/")
    if backend == AWS_BACKEND:
        s3_url = location.config.get("s3Url", "").strip()
        if s3_url:
            url = s3_url.rstrip("/")
        else:
            region = location.config.get("region", "").strip()
            if not region:
                raise ResolutionError(
                    f"backup storage location {location.name} needs either s3Url or region in its config"
                )
            url = f"s3-{region}.amazonaws.com"
        return f"s3:{url}/{_join(location.bucket, prefix, 'restic', volume_namespace)}"
    if backend == AZURE_BACKEND:
        return f"azure:{location.bucket}:/{_join(prefix, 'restic', volume_namespace)}"
    if backend == GCP_BACKEND:
        return f"gs:{location.bucket}:/{_join(prefix, 'restic', volume_namespace)}"

    raise ResolutionError(
        f"restic repository prefix ({RESTIC_REPO_PREFIX_KEY}) not specified in backup storage location "
        f"{location.name} config and provider {location.provider!r} is not supported"
    )


def _join(*parts: str) -> str:
    return posixpath.join(*[part for part in parts if part])
