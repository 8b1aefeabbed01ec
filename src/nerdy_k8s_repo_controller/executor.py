from __future__ import annotations

from pathlib import Path
from typing import Callable, Protocol
import logging
import os
import subprocess

from .commands import ResticCommand, insecure_tls_flag, provider_env
from .credentials import repository_key_selector, write_ca_cert_file
from .errors import CommandExecutionError, error_message
from .models import BackupStorageLocation, SecretKeySelector

logger = logging.getLogger(__name__)


class CredentialsFileProvider(Protocol):
    def path(self, selector: SecretKeySelector) -> str: ...


class LocationLookup(Protocol):
    def get(self, namespace: str, name: str) -> BackupStorageLocation: ...


CommandRunner = Callable[..., subprocess.CompletedProcess]


class RepositoryExecutor:
    def __init__(
        self,
        *,
        namespace: str,
        credentials: CredentialsFileProvider,
        locations: LocationLookup,
        restic_binary: str = "restic",
        cache_dir: str | None = None,
        scratch_dir: Path | None = None,
        timeout_seconds: int | None = None,
        runner: CommandRunner = subprocess.run,
    ) -> None:
        self.namespace = namespace
        self.credentials = credentials
        self.locations = locations
        self.restic_binary = restic_binary
        self.cache_dir = cache_dir
        self.scratch_dir = scratch_dir
        self.timeout_seconds = timeout_seconds
        self.runner = runner

    def run(self, command: ResticCommand, location_name: str) -> str:
        scoped_files: list[str] = []
        try:
            command.password_file = self.credentials.path(repository_key_selector())
            scoped_files.append(command.password_file)

            location = self.locations.get(self.namespace, location_name)
            if location.ca_cert:
                command.ca_cert_file = write_ca_cert_file(
                    location.ca_cert,
                    location_name=location.name,
                    directory=self.scratch_dir,
                )
                scoped_files.append(command.ca_cert_file)

            location_credentials_file: str | None = None
            if location.credential is not None:
                location_credentials_file = self.credentials.path(location.credential)
                scoped_files.append(location_credentials_file)

            command.env.update(provider_env(location, location_credentials_file))
            tls_flag = insecure_tls_flag(location)
            if tls_flag:
                logger.debug("Adding %s for backup storage location %s", tls_flag, location.name)
                command.extra_flags.append(tls_flag)

            command.binary = self.restic_binary
            if self.cache_dir:
                command.cache_dir = self.cache_dir

            return self._execute(command)
        finally:
            for path in scoped_files:
                _remove_quietly(path)

    def _execute(self, command: ResticCommand) -> str:
        environment = os.environ.copy()
        environment.update(command.env)
        rendered = str(command)
        try:
            completed = self.runner(
                command.argv(),
                check=False,
                capture_output=True,
                text=True,
                env=environment,
                cwd=command.working_dir,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            raise CommandExecutionError(
                command=rendered,
                stdout=_decode(error.stdout),
                stderr=_decode(error.stderr),
                reason=f"timed out after {self.timeout_seconds}s",
            ) from error
        except OSError as error:
            raise CommandExecutionError(command=rendered, stdout="", stderr="", reason=error_message(error)) from error

        stdout = completed.stdout or ""
        stderr = completed.stderr or ""
        logger.debug(
            "Ran restic command repository=%s command=%s stdout=%s stderr=%s",
            command.repository_name,
            rendered,
            stdout,
            stderr,
        )
        if completed.returncode != 0:
            raise CommandExecutionError(
                command=rendered,
                stdout=stdout,
                stderr=stderr,
                reason=f"exit status {completed.returncode}",
                exit_code=completed.returncode,
            )
        return stdout


def _decode(output: bytes | str | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


def _remove_quietly(path: str) -> None:
    # Best effort.
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        logger.debug("Unable to remove scoped file %s", path)
