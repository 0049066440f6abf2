"""
Devstack Safety

Safety execution framework for the devstack setup wizard: backup before
mutate, rollback on failure, idempotent replay and an audit trail around
every change a tool manager makes to the host.

All guarantees are filesystem-level and best-effort. This is not an
atomic transaction system.
"""

__version__ = "1.0.0"
__description__ = "Safety execution framework for devstack tool managers"

from .base_manager import BaseManager
from .config import SafetyConfig, SafetyContext, load_config
from .errors import (
    ActionCancelled,
    ActionFailed,
    ActionTimedOut,
    BackupFailed,
    OperationInProgress,
    RollbackPartial,
    SafetyError,
)
from .models import BackupMetadata, BackupRecord, OperationStatus
from .safety import SafetyFramework

__all__ = [
    "ActionCancelled",
    "ActionFailed",
    "ActionTimedOut",
    "BackupFailed",
    "BackupMetadata",
    "BackupRecord",
    "BaseManager",
    "OperationInProgress",
    "OperationStatus",
    "RollbackPartial",
    "SafetyConfig",
    "SafetyContext",
    "SafetyError",
    "SafetyFramework",
    "load_config",
    "__version__",
]
