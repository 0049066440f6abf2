"""
Data Model

Operations, backup records, audit entries and the operation state machine.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidMetadata, InvalidTransition


class OperationStatus(str, Enum):
    PENDING = "PENDING"
    BACKING_UP = "BACKING_UP"
    EXECUTING = "EXECUTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_PARTIAL = "ROLLBACK_PARTIAL"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({
    OperationStatus.PENDING,
    OperationStatus.BACKING_UP,
    OperationStatus.EXECUTING,
})

TERMINAL_STATUSES = frozenset({
    OperationStatus.SUCCEEDED,
    OperationStatus.FAILED,
    OperationStatus.ROLLED_BACK,
    OperationStatus.ROLLBACK_PARTIAL,
})

# FAILED is terminal only when no rollback follows (backup failure, or no
# backups requested).
TRANSITIONS: Dict[OperationStatus, frozenset] = {
    OperationStatus.PENDING: frozenset({
        OperationStatus.BACKING_UP,
        OperationStatus.EXECUTING,
        OperationStatus.FAILED,
    }),
    OperationStatus.BACKING_UP: frozenset({
        OperationStatus.EXECUTING,
        OperationStatus.FAILED,
    }),
    OperationStatus.EXECUTING: frozenset({
        OperationStatus.SUCCEEDED,
        OperationStatus.FAILED,
    }),
    OperationStatus.FAILED: frozenset({OperationStatus.ROLLING_BACK}),
    OperationStatus.ROLLING_BACK: frozenset({
        OperationStatus.ROLLED_BACK,
        OperationStatus.ROLLBACK_PARTIAL,
    }),
    OperationStatus.SUCCEEDED: frozenset(),
    OperationStatus.ROLLED_BACK: frozenset(),
    OperationStatus.ROLLBACK_PARTIAL: frozenset(),
}


class AuditEvent(str, Enum):
    START = "START"
    BACKUP_TAKEN = "BACKUP_TAKEN"
    BACKUP_FAILED = "BACKUP_FAILED"
    ACTION_SUCCEEDED = "ACTION_SUCCEEDED"
    ACTION_FAILED = "ACTION_FAILED"
    ROLLBACK_STARTED = "ROLLBACK_STARTED"
    ROLLBACK_DONE = "ROLLBACK_DONE"
    ROLLBACK_PARTIAL = "ROLLBACK_PARTIAL"


# Events that close an operation's audit sequence. ACTION_FAILED is terminal
# only when no rollback follows it.
TERMINAL_EVENTS = frozenset({
    AuditEvent.ACTION_SUCCEEDED,
    AuditEvent.BACKUP_FAILED,
    AuditEvent.ROLLBACK_DONE,
    AuditEvent.ROLLBACK_PARTIAL,
})


@dataclass
class BackupMetadata:
    """
    Declarative operation metadata, validated at the facade boundary.

    Attributes:
        backup_requested: Snapshot ``target_paths`` before running the action
        target_paths: Filesystem targets to protect
        context: Opaque caller-defined context (logged, hashed, never interpreted)
        timeout: Optional per-operation deadline in seconds
    """

    backup_requested: bool = False
    target_paths: List[Path] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.backup_requested, bool):
            raise InvalidMetadata(
                f"backup_requested must be a bool, got {type(self.backup_requested).__name__}"
            )

        if isinstance(self.target_paths, (str, bytes, os.PathLike)) or not isinstance(
            self.target_paths, (list, tuple)
        ):
            raise InvalidMetadata("target_paths must be a list of paths")

        paths: List[Path] = []
        for raw in self.target_paths:
            if not isinstance(raw, (str, os.PathLike)) or not str(raw):
                raise InvalidMetadata(f"Invalid target path: {raw!r}")
            path = Path(os.path.abspath(os.path.expanduser(str(raw))))
            if path not in paths:
                paths.append(path)
        self.target_paths = paths

        if self.backup_requested and not self.target_paths:
            raise InvalidMetadata("backup_requested is set but no target_paths were given")

        if self.timeout is not None:
            if isinstance(self.timeout, bool) or not isinstance(self.timeout, (int, float)):
                raise InvalidMetadata("timeout must be a number of seconds")
            if self.timeout <= 0:
                raise InvalidMetadata("timeout must be positive")

        if not isinstance(self.context, dict):
            raise InvalidMetadata("context must be a mapping")

    @classmethod
    def from_value(cls, value: Any) -> "BackupMetadata":
        """
        Build metadata from an instance, ``None`` or a caller mapping.

        Mappings may use either camelCase (``backupRequested``,
        ``targetPaths``) or snake_case keys. Unrecognised keys are kept as
        opaque caller context.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls()
        if not isinstance(value, Mapping):
            raise InvalidMetadata(f"Metadata must be a mapping, got {type(value).__name__}")

        data = dict(value)
        backup_requested = _pop_alias(data, "backup_requested", "backupRequested", False)
        target_paths = _pop_alias(data, "target_paths", "targetPaths", [])
        timeout = data.pop("timeout", None)
        context = data.pop("context", {})
        if not isinstance(context, Mapping):
            raise InvalidMetadata("context must be a mapping")
        context = {**dict(context), **data}

        return cls(
            backup_requested=backup_requested,
            target_paths=target_paths,
            context=context,
            timeout=timeout,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backup_requested": self.backup_requested,
            "target_paths": [str(p) for p in self.target_paths],
            "context": self.context,
            "timeout": self.timeout,
        }


def _pop_alias(data: Dict[str, Any], name: str, alias: str, default: Any) -> Any:
    if name in data and alias in data:
        raise InvalidMetadata(f"Both '{name}' and '{alias}' given")
    if name in data:
        return data.pop(name)
    return data.pop(alias, default)


@dataclass
class BackupRecord:
    """One snapshot of a filesystem target."""

    path: Path
    existed_before: bool
    snapshot_ref: Optional[Path] = None
    taken_at: datetime = field(default_factory=datetime.now)
    mode: Optional[int] = None
    kind: Optional[str] = None
    checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "existed_before": self.existed_before,
            "snapshot_ref": str(self.snapshot_ref) if self.snapshot_ref else None,
            "taken_at": self.taken_at.isoformat(),
            "mode": self.mode,
            "kind": self.kind,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupRecord":
        return cls(
            path=Path(data["path"]),
            existed_before=bool(data["existed_before"]),
            snapshot_ref=Path(data["snapshot_ref"]) if data.get("snapshot_ref") else None,
            taken_at=datetime.fromisoformat(data["taken_at"]),
            mode=data.get("mode"),
            kind=data.get("kind"),
            checksum=data.get("checksum"),
        )


@dataclass
class RestoreOutcome:
    path: Path
    success: bool
    error: Optional[str] = None


@dataclass
class RollbackResult:
    status: OperationStatus
    outcomes: List[RestoreOutcome] = field(default_factory=list)

    @property
    def failed_paths(self) -> List[Path]:
        return [o.path for o in self.outcomes if not o.success]


@dataclass
class AuditEntry:
    operation_key: str
    event: AuditEvent
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "operation_key": self.operation_key,
            "event": self.event.value,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            operation_key=data["operation_key"],
            event=AuditEvent(data["event"]),
            detail=data.get("detail") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
            sequence=int(data.get("sequence", 0)),
        )


@dataclass
class Operation:
    """One tracked invocation of the safety facade."""

    key: str
    metadata: BackupMetadata
    metadata_hash: str = ""
    status: OperationStatus = OperationStatus.PENDING
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    backups: List[BackupRecord] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    result: Any = None

    def transition(self, new_status: OperationStatus):
        """
        Move to ``new_status``.

        Raises:
            InvalidTransition: If the state machine does not allow the move
        """
        if new_status not in TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"{self.key}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if not TRANSITIONS[new_status]:
            self.finished_at = datetime.now()

    def finish(self):
        if self.finished_at is None:
            self.finished_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "status": self.status.value,
            "metadata": self.metadata.to_dict(),
            "metadata_hash": self.metadata_hash,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "backups": [b.to_dict() for b in self.backups],
            "error": self.error,
        }
