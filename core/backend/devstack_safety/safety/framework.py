"""
Safety Framework

The single entry point every tool manager calls around a host mutation:
idempotency guard, backup-before-mutate, timed execution, rollback on
failure and an audit trail.

Safety here is filesystem-level and best-effort. It is not a transaction:
restores can fail, actions may touch paths nobody declared, and services
restarted by an action are not restarted again by a rollback.
"""

import json
import logging
import platform
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..config import SafetyContext
from ..errors import ActionFailed, BackupFailed, InvalidMetadata, RollbackPartial
from ..models import AuditEvent, BackupMetadata, BackupRecord, Operation, OperationStatus
from .audit import AuditLogger
from .backup import BackupManager
from .executor import Executor
from .registry import OperationRegistry
from .rollback import RollbackCoordinator
from .verification import calculate_hash


logger = logging.getLogger(__name__)


class SafetyFramework:
    """
    Composes registry, backup manager, executor, rollback coordinator and
    audit logger.

    Safe to call concurrently for different operation keys. Concurrent calls
    for the same key are rejected with OperationInProgress, never queued.
    """

    def __init__(
        self,
        context: Optional[SafetyContext] = None,
        backup_manager: Optional[BackupManager] = None,
        audit_logger: Optional[AuditLogger] = None,
        registry: Optional[OperationRegistry] = None,
        executor: Optional[Executor] = None,
    ):
        """
        Initialize the framework.

        Args:
            context: Explicit safety context (configuration and directories)
            backup_manager: Override the backup manager
            audit_logger: Override the audit logger
            registry: Override the operation registry
            executor: Override the executor
        """
        self.context = context or SafetyContext()
        self.context.ensure_dirs()
        config = self.context.config

        self.backup_manager = backup_manager or BackupManager(self.context.backup_dir)
        self.audit = audit_logger or AuditLogger(self.context.audit_log_path, config.redact_keys)
        self.registry = registry or OperationRegistry()
        self.executor = executor or Executor(
            default_timeout=config.default_timeout,
            cancel_grace=config.cancel_grace_period,
        )
        self.rollback_coordinator = RollbackCoordinator(self.backup_manager)

        self._lock = threading.Lock()
        self._operations: Dict[str, Operation] = {}
        self._metrics = {
            "operations": 0,
            "succeeded": 0,
            "failed": 0,
            "rolled_back": 0,
            "rollback_partial": 0,
            "backup_failures": 0,
            "backups": 0,
            "cached": 0,
        }

        logger.debug(f"SafetyFramework initialized: {self.context.safety_dir}")

    def safe_execute(
        self,
        operation_key: str,
        metadata: Any,
        action: Callable[[], Any],
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run ``action`` as a tracked, protected operation.

        Args:
            operation_key: Identity of the logical action (e.g. 'redis-config')
            metadata: BackupMetadata or mapping with ``backupRequested`` /
                ``targetPaths`` plus caller-defined context
            action: Zero-argument callable (may return a coroutine)
            force: Re-run even if an identical run already succeeded
            timeout: Deadline in seconds, overriding metadata and config

        Returns:
            The action's result, or the cached result of an identical
            successful run

        Raises:
            InvalidMetadata: If the key or metadata is malformed
            OperationInProgress: If the key is already running
            BackupFailed: If a snapshot could not be taken (action not run)
            ActionFailed: If the action failed, timed out or was cancelled;
                ``rollback_status`` tells whether paths were restored
            RollbackPartial: If some protected paths could not be restored,
                or the action was still running after cancellation

        An action still running after its cancellation grace period keeps
        ``operation_key`` in flight until its worker exits.
        """
        if not isinstance(operation_key, str) or not operation_key.strip():
            raise InvalidMetadata("operation_key must be a non-empty string")
        if not callable(action):
            raise InvalidMetadata("action must be callable")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
                raise InvalidMetadata("timeout must be a number of seconds")
            if timeout <= 0:
                raise InvalidMetadata("timeout must be positive")

        meta = BackupMetadata.from_value(metadata)
        metadata_hash = calculate_hash(meta.to_dict())

        begin = self.registry.begin(operation_key, metadata_hash, force=force)
        if not begin.proceed:
            self._count("cached")
            logger.info(f"✓ {operation_key} already succeeded with identical metadata, skipping")
            return begin.cached_result

        operation = Operation(key=operation_key, metadata=meta, metadata_hash=metadata_hash)
        with self._lock:
            self._operations[operation_key] = operation
        self._count("operations")

        logger.info(f"Executing: {operation_key}")
        worker = None
        try:
            self.audit.record(
                operation_key,
                AuditEvent.START,
                metadata=meta.to_dict(),
                metadata_hash=metadata_hash,
                force=force,
            )

            if meta.backup_requested:
                self._take_backups(operation)

            operation.transition(OperationStatus.EXECUTING)
            try:
                result = self.executor.run(
                    action,
                    timeout=timeout if timeout is not None else meta.timeout,
                    operation_key=operation_key,
                )
            except ActionFailed as e:
                worker = e.worker
                self._handle_failure(operation, e)

            operation.transition(OperationStatus.SUCCEEDED)
            operation.result = result
            self._count("succeeded")
            self.audit.record(operation_key, AuditEvent.ACTION_SUCCEEDED)
            logger.info(f"✓ {operation_key} completed successfully")
            return result

        except Exception as e:
            if operation.status.is_active:
                operation.transition(OperationStatus.FAILED)
            if operation.error is None:
                operation.error = {"type": type(e).__name__, "message": str(e)}
            raise

        finally:
            status = operation.status if operation.status.is_terminal else OperationStatus.FAILED
            operation.finish()
            kept = operation.result if status is OperationStatus.SUCCEEDED else None
            if worker is None:
                self._release(operation_key, status, kept)
            else:
                logger.warning(f"{operation_key} stays in progress until its action exits")
                worker.add_done_callback(lambda _f: self._release(operation_key, status, kept))
            self._archive(operation)

    def _release(self, operation_key: str, status: OperationStatus, result: Any):
        self.registry.complete(operation_key, status, result)
        self.backup_manager.release(operation_key)

    def _take_backups(self, operation: Operation):
        operation.transition(OperationStatus.BACKING_UP)
        paths = operation.metadata.target_paths

        try:
            operation.backups = self.backup_manager.snapshot(paths, operation.key)
        except BackupFailed as e:
            operation.transition(OperationStatus.FAILED)
            operation.error = e.to_dict()
            self._count("backup_failures")
            self._count("failed")
            self.audit.record(
                operation.key,
                AuditEvent.BACKUP_FAILED,
                error=str(e),
                paths=[str(e.path)],
            )
            logger.error(f"✗ Cannot proceed without backup: {e}")
            raise

        self._count("backups", sum(1 for r in operation.backups if r.existed_before))
        self.audit.record(
            operation.key,
            AuditEvent.BACKUP_TAKEN,
            paths=[str(r.path) for r in operation.backups],
            existed_before=[r.existed_before for r in operation.backups],
        )

    def _handle_failure(self, operation: Operation, error: ActionFailed):
        """Record the failure, roll back if protected, and raise the outcome."""
        key = operation.key
        error.paths = list(operation.metadata.target_paths)
        operation.transition(OperationStatus.FAILED)
        operation.error = error.to_dict()
        self._count("failed")

        logger.error(f"✗ {key} failed: {error}")
        self.audit.record(
            key,
            AuditEvent.ACTION_FAILED,
            error=str(error),
            error_type=type(error).__name__,
        )

        if not operation.metadata.backup_requested:
            raise error

        self.audit.record(
            key,
            AuditEvent.ROLLBACK_STARTED,
            paths=[str(r.path) for r in reversed(operation.backups)],
        )
        result = self.rollback_coordinator.rollback(
            operation, action_still_running=error.action_still_running
        )

        if result.status is OperationStatus.ROLLED_BACK:
            self._count("rolled_back")
            error.rollback_status = OperationStatus.ROLLED_BACK.value
            operation.error = error.to_dict()
            self.audit.record(
                key,
                AuditEvent.ROLLBACK_DONE,
                paths=[str(o.path) for o in result.outcomes],
            )
            raise error

        self._count("rollback_partial")
        partial = RollbackPartial(result.failed_paths, operation_key=key)
        operation.error = {**partial.to_dict(), "cause": error.to_dict()}
        self.audit.record(
            key,
            AuditEvent.ROLLBACK_PARTIAL,
            paths=[str(p) for p in result.failed_paths],
            errors={str(o.path): o.error for o in result.outcomes if not o.success},
            cause=str(error),
        )
        raise partial from error

    def create_backup(self, name: str, path: Path) -> BackupRecord:
        """
        One-off backup for collaborators that bypass ``safe_execute``.

        Raises:
            BackupFailed: If the path cannot be copied
        """
        record = self.backup_manager.create_backup(name, Path(path))
        if record.existed_before:
            self._count("backups")
        return record

    def get_operation(self, operation_key: str) -> Optional[Operation]:
        """Most recent operation run under ``operation_key`` in this session."""
        with self._lock:
            return self._operations.get(operation_key)

    def list_operations(self) -> List[Dict[str, Any]]:
        """Archived operations from every session, oldest first."""
        path = self.context.operations_log_path
        if not path.exists():
            return []

        operations = []
        with open(path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    operations.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping malformed operation record: {e}")
        return operations

    def _archive(self, operation: Operation):
        try:
            with self._lock:
                with open(self.context.operations_log_path, 'a') as f:
                    f.write(json.dumps(self.audit.redact(operation.to_dict()), default=str) + "\n")
        except OSError as e:
            logger.error(f"Could not archive operation {operation.key}: {e}")

    def _count(self, metric: str, amount: int = 1):
        with self._lock:
            self._metrics[metric] += amount

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

    def cleanup(self) -> int:
        """
        Apply the backup retention policy.

        Snapshot sets of in-flight operations are never pruned.

        Returns:
            Number of snapshot sets deleted
        """
        config = self.context.config
        return self.backup_manager.cleanup_old_backups(
            keep_count=config.backup_keep_count,
            max_age_days=config.backup_max_age_days,
            protected=self.registry.in_flight(),
        )

    def generate_safety_report(self) -> Dict[str, Any]:
        """
        Write ``safety-report.json`` with metrics and recommendations.

        Returns:
            The report dictionary
        """
        metrics = self.get_metrics()
        report = {
            "timestamp": datetime.now().isoformat(),
            "metrics": metrics,
            "backups": {
                "count": len(self.backup_manager.list_backups()),
                "size_bytes": self.backup_manager.get_backup_size(),
            },
            "system": {
                "platform": platform.platform(),
                "python": platform.python_version(),
            },
            "recommendations": self.generate_recommendations(metrics),
        }

        report_path = self.context.report_path
        with open(report_path, 'w') as f:
            json.dump(report, f, indent=2, default=str)

        logger.info(f"Safety report generated: {report_path}")
        return report

    @staticmethod
    def generate_recommendations(metrics: Dict[str, int]) -> List[Dict[str, str]]:
        recommendations = []

        if metrics["rollback_partial"]:
            recommendations.append({
                "type": "rollback",
                "priority": "critical",
                "message": "Some rollbacks were incomplete - inspect the audit log and restore the listed paths manually",
            })

        if metrics["operations"] and metrics["failed"] > metrics["operations"] * 0.1:
            recommendations.append({
                "type": "error-rate",
                "priority": "high",
                "message": "High error rate detected - review the audit log before retrying",
            })

        if metrics["operations"] and metrics["backups"] == 0:
            recommendations.append({
                "type": "backup",
                "priority": "medium",
                "message": "No backups created - request backups for operations that edit system files",
            })

        return recommendations
