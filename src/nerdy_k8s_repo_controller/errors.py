from __future__ import annotations


class RepositoryError(RuntimeError):
    """Base class for backup repository failures."""


class ResolutionError(RepositoryError):
    """Raised when a storage location or repository identifier cannot be determined."""


class CredentialsError(ResolutionError):
    """Raised when repository credentials cannot be materialized to disk."""


class CommandExecutionError(RepositoryError):
    def __init__(
        self,
        *,
        command: str,
        stdout: str,
        stderr: str,
        reason: str,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(f"error running command={command}, stdout={stdout}, stderr={stderr}: {reason}")
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.reason = reason
        self.exit_code = exit_code


class LockStaleError(RepositoryError):
    """Raised when removing stale backend locks fails. Never escapes the reconciler."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when a BackupRepository resource no longer exists."""


class RepositoryNotReadyError(RepositoryError):
    """Raised when a repository does not become Ready within the allowed time."""


class TransientPatchError(RepositoryError):
    """Raised when a status update fails and the reconcile should be retried."""


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
