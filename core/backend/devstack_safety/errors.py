"""
Safety Errors

Typed errors raised by the safety framework. Every error carries the
operation key and the filesystem paths it concerns so the calling manager
can report them without parsing messages.
"""

from concurrent.futures import Future
from pathlib import Path
from typing import Iterable, List, Optional


class SafetyError(Exception):
    """Base class for all safety framework errors."""

    def __init__(
        self,
        message: str,
        operation_key: Optional[str] = None,
        paths: Optional[Iterable[Path]] = None,
    ):
        super().__init__(message)
        self.operation_key = operation_key
        self.paths: List[Path] = [Path(p) for p in (paths or [])]

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": str(self),
            "operation_key": self.operation_key,
            "paths": [str(p) for p in self.paths],
        }


class OperationInProgress(SafetyError):
    """The same operation key is already running. Do not retry immediately."""

    def __init__(self, operation_key: str):
        super().__init__(
            f"Operation already in progress: {operation_key}",
            operation_key=operation_key,
        )


class BackupFailed(SafetyError):
    """A snapshot could not be taken. The action never ran."""

    def __init__(self, path: Path, cause: BaseException, operation_key: Optional[str] = None):
        super().__init__(
            f"Backup failed for {path}: {cause}",
            operation_key=operation_key,
            paths=[path],
        )
        self.path = Path(path)
        self.cause = cause


class ActionFailed(SafetyError):
    """
    The wrapped mutation raised an error.

    ``rollback_status`` is ``"ROLLED_BACK"`` when protected paths were
    restored, or ``None`` when no backups were requested.

    ``action_still_running`` is set when the worker did not exit within the
    cancellation grace period; ``worker`` is then its pending future.
    """

    def __init__(
        self,
        cause: Optional[BaseException],
        operation_key: Optional[str] = None,
        paths: Optional[Iterable[Path]] = None,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"Action failed: {cause}",
            operation_key=operation_key,
            paths=paths,
        )
        self.cause = cause
        self.rollback_status: Optional[str] = None
        self.action_still_running = False
        self.worker: Optional[Future] = None

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["rollback_status"] = self.rollback_status
        data["action_still_running"] = self.action_still_running
        return data


class ActionTimedOut(ActionFailed):
    """The wrapped mutation exceeded its deadline."""

    def __init__(self, timeout: float, operation_key: Optional[str] = None):
        super().__init__(
            None,
            operation_key=operation_key,
            message=f"Action timed out after {timeout:g}s",
        )
        self.timeout = timeout


class ActionCancelled(ActionFailed):
    """The wrapped mutation was interrupted by the user."""

    def __init__(self, operation_key: Optional[str] = None):
        super().__init__(
            None,
            operation_key=operation_key,
            message="Action cancelled by user",
        )


class RollbackPartial(SafetyError):
    """
    One or more protected paths could not be restored after a failure.

    Manual operator attention is required for every path in ``paths``.
    The original action error is available as ``__cause__``.
    """

    def __init__(self, paths: Iterable[Path], operation_key: Optional[str] = None):
        paths = [Path(p) for p in paths]
        super().__init__(
            "Rollback incomplete, manual intervention required for: "
            + ", ".join(str(p) for p in paths),
            operation_key=operation_key,
            paths=paths,
        )


class InvalidMetadata(ValueError):
    """Operation metadata failed validation at the facade boundary."""


class InvalidTransition(RuntimeError):
    """An operation status change violated the state machine."""


class ConfigError(ValueError):
    """Safety configuration is invalid."""
