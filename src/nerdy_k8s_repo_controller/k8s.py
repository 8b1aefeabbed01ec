from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
import base64
import re

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import (
    RepositoryError,
    RepositoryNotFoundError,
    ResolutionError,
    TransientPatchError,
    error_message,
)
from .models import (
    BackupRepository,
    BackupRepositorySpec,
    BackupRepositoryStatus,
    BackupStorageLocation,
    SecretKeySelector,
)

VELERO_GROUP = "velero.io"
VELERO_VERSION = "v1"
REPOSITORY_PLURAL = "backuprepositories"
LOCATION_PLURAL = "backupstoragelocations"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s)")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        reason = str(error).strip() or error.__class__.__name__
        if in_cluster:
            message = (
                "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
                f"{reason}. Ensure the pod has a mounted service account token."
            )
        else:
            source = expanded or "default kubeconfig search path"
            context_message = f" with context '{context}'" if context else ""
            message = (
                f"Kubernetes authentication setup failed while loading kubeconfig from '{source}'"
                f"{context_message}: {reason}. Verify the kubeconfig path and context are valid."
            )
        raise KubernetesAuthenticationError(message) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


class BackupRepositoryStore:
    def __init__(self, custom_api: client.CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def get(self, namespace: str, name: str) -> BackupRepository:
        try:
            body = self.custom_api.get_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=namespace,
                plural=REPOSITORY_PLURAL,
                name=name,
            )
        except ApiException as error:
            if error.status == 404:
                raise RepositoryNotFoundError(f"backup repository {namespace}/{name} not found") from error
            raise RepositoryError(
                _format_api_exception_message(operation=f"get backup repository {namespace}/{name}", error=error)
            ) from error
        return repository_from_body(body)

    def list(self, namespace: str, *, label_selector: str | None = None) -> list[BackupRepository]:
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            body = self.custom_api.list_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=namespace,
                plural=REPOSITORY_PLURAL,
                **kwargs,
            )
        except ApiException as error:
            raise RepositoryError(
                _format_api_exception_message(operation=f"list backup repositories in {namespace}", error=error)
            ) from error
        return [repository_from_body(item) for item in body.get("items", [])]

    def create(self, repository: BackupRepository) -> BackupRepository:
        try:
            body = self.custom_api.create_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=repository.namespace,
                plural=REPOSITORY_PLURAL,
                body=repository_to_body(repository),
            )
        except ApiException as error:
            raise RepositoryError(
                _format_api_exception_message(operation=f"create backup repository {repository.key}", error=error)
            ) from error
        return repository_from_body(body)

    def patch(self, original: BackupRepository, updated: BackupRepository) -> BackupRepository:
        patch = merge_patch(repository_to_body(original), repository_to_body(updated))
        if not patch:
            return updated
        try:
            body = self.custom_api.patch_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=updated.namespace,
                plural=REPOSITORY_PLURAL,
                name=updated.name,
                body=patch,
            )
        except ApiException as error:
            raise TransientPatchError(
                _format_api_exception_message(operation=f"patch backup repository {updated.key}", error=error)
            ) from error
        return repository_from_body(body)


class BackupStorageLocationStore:
    def __init__(self, custom_api: client.CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def get(self, namespace: str, name: str) -> BackupStorageLocation:
        if not name:
            raise ResolutionError("backup storage location name is empty")
        try:
            body = self.custom_api.get_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=namespace,
                plural=LOCATION_PLURAL,
                name=name,
            )
        except ApiException as error:
            if error.status == 404:
                raise ResolutionError(
                    f"backup storage location {namespace}/{name} not found"
                ) from error
            raise ResolutionError(
                _format_api_exception_message(operation=f"get backup storage location {namespace}/{name}", error=error)
            ) from error
        try:
            return location_from_body(body)
        except (KeyError, TypeError, ValueError) as error:
            # binascii.Error from a bad caCert is a ValueError.
            raise ResolutionError(
                f"backup storage location {namespace}/{name} is malformed: {error_message(error)}"
            ) from error


def repository_from_body(body: dict[str, Any]) -> BackupRepository:
    metadata = body.get("metadata") or {}
    spec = body.get("spec") or {}
    status = body.get("status") or {}
    return BackupRepository(
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        labels=dict(metadata.get("labels") or {}),
        resource_version=metadata.get("resourceVersion"),
        spec=BackupRepositorySpec(
            backup_storage_location=spec.get("backupStorageLocation", ""),
            volume_namespace=spec.get("volumeNamespace", ""),
            restic_identifier=spec.get("resticIdentifier", ""),
            maintenance_frequency=parse_duration(spec.get("maintenanceFrequency")),
        ),
        status=BackupRepositoryStatus(
            phase=status.get("phase", ""),
            message=status.get("message", ""),
            last_maintenance_time=parse_timestamp(status.get("lastMaintenanceTime")),
        ),
    )


def repository_to_body(repository: BackupRepository) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": repository.name, "namespace": repository.namespace}
    if repository.labels:
        metadata["labels"] = dict(repository.labels)
    spec: dict[str, Any] = {
        "backupStorageLocation": repository.spec.backup_storage_location,
        "volumeNamespace": repository.spec.volume_namespace,
        "resticIdentifier": repository.spec.restic_identifier,
    }
    if repository.spec.maintenance_frequency is not None:
        spec["maintenanceFrequency"] = format_duration(repository.spec.maintenance_frequency)
    status: dict[str, Any] = {"phase": repository.status.phase, "message": repository.status.message}
    if repository.status.last_maintenance_time is not None:
        status["lastMaintenanceTime"] = format_timestamp(repository.status.last_maintenance_time)
    return {
        "apiVersion": f"{VELERO_GROUP}/{VELERO_VERSION}",
        "kind": "BackupRepository",
        "metadata": metadata,
        "spec": spec,
        "status": status,
    }


def location_from_body(body: dict[str, Any]) -> BackupStorageLocation:
    metadata = body.get("metadata") or {}
    spec = body.get("spec") or {}
    object_storage = spec.get("objectStorage") or {}
    ca_cert_raw = object_storage.get("caCert")
    credential = spec.get("credential")
    return BackupStorageLocation(
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        provider=spec.get("provider", ""),
        bucket=object_storage.get("bucket", ""),
        prefix=object_storage.get("prefix", ""),
        ca_cert=base64.b64decode(ca_cert_raw) if ca_cert_raw else None,
        config={str(key): str(value) for key, value in (spec.get("config") or {}).items()},
        default=bool(spec.get("default", False)),
        credential=SecretKeySelector(name=credential["name"], key=credential["key"]) if credential else None,
    )


def merge_patch(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for key in before.keys() - after.keys():
        patch[key] = None
    for key, value in after.items():
        previous = before.get(key)
        if isinstance(value, dict) and isinstance(previous, dict):
            nested = merge_patch(previous, value)
            if nested:
                patch[key] = nested
        elif value != previous or key not in before:
            patch[key] = value
    return patch


def parse_duration(value: str | None) -> timedelta | None:
    if not value:
        return None
    stripped = value.strip()
    if stripped.lstrip("+-") == "0":
        return None
    sign = -1 if stripped.startswith("-") else 1
    start = 1 if stripped[:1] in {"-", "+"} else 0
    position = start
    total = timedelta()
    for match in _DURATION_PART.finditer(stripped, start):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        amount = float(match.group(1))
        unit = match.group(2)
        if unit == "h":
            total += timedelta(hours=amount)
        elif unit == "m":
            total += timedelta(minutes=amount)
        elif unit == "s":
            total += timedelta(seconds=amount)
        else:
            total += timedelta(milliseconds=amount)
        position = match.end()
    if position != len(stripped) or position == start:
        raise ValueError(f"invalid duration: {value!r}")
    total *= sign
    if total <= timedelta():
        return None
    return total


def format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h{minutes}m{seconds}s"


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def _format_api_exception_message(*, operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes API call failed while trying to {operation}: API status {status} ({reason})"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())
