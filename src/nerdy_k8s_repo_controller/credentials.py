from __future__ import annotations

from pathlib import Path
import base64
import os
import re
import tempfile

from kubernetes import client
from kubernetes.client import ApiException

from .errors import CredentialsError
from .models import SecretKeySelector

REPOSITORY_CREDENTIALS_SECRET = "velero-repo-credentials"
REPOSITORY_PASSWORD_KEY = "repository-password"


def repository_key_selector() -> SecretKeySelector:
    return SecretKeySelector(name=REPOSITORY_CREDENTIALS_SECRET, key=REPOSITORY_PASSWORD_KEY)


class SecretFileStore:
    """Materializes Secret keys as private files. Callers delete the returned path."""

    def __init__(self, *, core_api: client.CoreV1Api, namespace: str, directory: Path) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.directory = directory

    def path(self, selector: SecretKeySelector) -> str:
        try:
            secret = self.core_api.read_namespaced_secret(name=selector.name, namespace=self.namespace)
        except ApiException as error:
            status = error.status if error.status is not None else "unknown"
            raise CredentialsError(
                f"unable to read secret {self.namespace}/{selector.name}: API status {status} "
                f"({error.reason or 'no reason provided'})"
            ) from error

        data = secret.data or {}
        encoded = data.get(selector.key)
        if encoded is None:
            raise CredentialsError(f"secret {self.namespace}/{selector.name} has no key {selector.key!r}")

        prefix = _sanitize_filename(f"{selector.name}-{selector.key}")
        return write_private_file(base64.b64decode(encoded), directory=self.directory, prefix=prefix)


def write_ca_cert_file(ca_cert: bytes, *, location_name: str, directory: Path | None = None) -> str:
    return write_private_file(ca_cert, directory=directory, prefix=_sanitize_filename(f"cacert-{location_name}"))


def write_private_file(content: bytes, *, directory: Path | None, prefix: str) -> str:
    if directory is not None:
        directory.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="wb",
        prefix=f"{prefix}-",
        dir=str(directory) if directory is not None else None,
        delete=False,
    ) as handle:
        handle.write(content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def _sanitize_filename(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", value) or "credentials"
