"""
Safety Mechanisms

Provides backup, execution, rollback and audit capabilities for all managers.
"""

from .audit import AuditLogger
from .backup import BackupManager
from .executor import Executor, cancellation_requested
from .framework import SafetyFramework
from .registry import OperationRegistry
from .rollback import RollbackCoordinator

__all__ = [
    "AuditLogger",
    "BackupManager",
    "Executor",
    "OperationRegistry",
    "RollbackCoordinator",
    "SafetyFramework",
    "cancellation_requested",
]
