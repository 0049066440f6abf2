"""
Base Manager Abstract Class

Common interface for tool managers (Docker, Redis, Nginx, PM2, PostgreSQL)
that route every host mutation through the safety framework.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from .config import SafetyContext
from .errors import SafetyError
from .models import BackupMetadata
from .safety import SafetyFramework


logger = logging.getLogger(__name__)


class BaseManager(ABC):
    """
    Abstract base class for all tool managers.

    Provides:
    - Backup/rollback around mutations via SafetyFramework
    - Dry-run mode
    - A hook for user-facing error reporting
    """

    def __init__(self, context: SafetyContext, framework: Optional[SafetyFramework] = None):
        """
        Initialize manager with the shared safety context.

        Args:
            context: Explicit context shared by all managers
            framework: Safety framework (built from ``context`` if omitted)
        """
        self.context = context
        self.framework = framework or SafetyFramework(context)

        logger.info(f"Initialized {self.manager_name()} manager")
        if self.dry_run:
            logger.info("DRY-RUN MODE: No changes will be applied")

    @classmethod
    @abstractmethod
    def manager_name(cls) -> str:
        """Return the manager name (e.g., 'redis', 'nginx')"""
        pass

    @abstractmethod
    def health_check(self) -> Dict[str, Any]:
        """
        Check that the managed tool is installed and reachable.

        Returns:
            Dictionary with health check results:
            {
                'status': 'healthy|degraded|unhealthy',
                'checks': {...},
                'message': 'Optional status message'
            }
        """
        pass

    @property
    def dry_run(self) -> bool:
        return self.context.dry_run

    def operation_key(self, name: str) -> str:
        """Namespace an operation name with this manager's name."""
        return f"{self.manager_name()}-{name}"

    def execute_with_safety(
        self,
        name: str,
        action: Callable[[], Any],
        target_paths: Optional[Iterable[Path]] = None,
        force: bool = False,
        timeout: Optional[float] = None,
        **context: Any,
    ) -> Any:
        """
        Execute a mutation with automatic backup and rollback.

        Backups are requested whenever ``target_paths`` is given.

        Args:
            name: Operation name, namespaced into the operation key
            action: Zero-argument callable performing the mutation
            target_paths: Paths the action may modify or create
            force: Re-run even if an identical run already succeeded
            timeout: Deadline in seconds
            **context: Caller context recorded with the operation

        Returns:
            Result from ``action`` (None in dry-run mode)

        Raises:
            SafetyError: If the operation failed (after attempting rollback)
        """
        key = self.operation_key(name)
        paths = list(target_paths or [])
        metadata = BackupMetadata(
            backup_requested=bool(paths),
            target_paths=paths,
            context=context,
        )

        if self.dry_run:
            logger.info(f"[DRY-RUN] Would execute: {key}")
            logger.info(f"[DRY-RUN] Protected paths: {[str(p) for p in metadata.target_paths]}")
            return None

        try:
            return self.framework.safe_execute(key, metadata, action, force=force, timeout=timeout)
        except SafetyError as e:
            self.handle_error(key, e)
            raise

    def handle_error(self, operation_key: str, error: SafetyError):
        """
        Report a failed operation to the user.

        The menu layer overrides this to display errors; the default only
        logs them.
        """
        logger.error(f"{operation_key}: {error}")
        for path in error.paths:
            logger.error(f"  affected: {path}")
