"""
Rollback Coordinator

Restores an operation's protected paths after its action failed.
"""

import logging

from ..models import Operation, OperationStatus, RestoreOutcome, RollbackResult
from .backup import BackupManager


logger = logging.getLogger(__name__)

STILL_RUNNING_ERROR = "action still running after cancellation; path may be rewritten"


class RollbackCoordinator:
    """
    Drives best-effort restores through the backup manager.

    Backups are restored newest first, so a path snapshotted twice ends up
    with its oldest content. Individual restore failures are collected, not
    raised.
    """

    def __init__(self, backup_manager: BackupManager):
        self.backup_manager = backup_manager

    def rollback(self, operation: Operation, action_still_running: bool = False) -> RollbackResult:
        """
        Restore ``operation.backups`` and set its final status.

        The operation must be FAILED. It ends ROLLED_BACK when every path
        was restored and ROLLBACK_PARTIAL otherwise.

        Args:
            operation: The failed operation
            action_still_running: The action's worker did not exit after
                cancellation. Restores are still attempted, but no path can
                be reported as restored while the action may write to it.

        Returns:
            RollbackResult with per-path outcomes in restore order
        """
        operation.transition(OperationStatus.ROLLING_BACK)
        logger.warning(f"Attempting automatic rollback of {operation.key}...")

        outcomes = []
        for record in reversed(operation.backups):
            outcomes.extend(self.backup_manager.restore([record]))

        if action_still_running:
            outcomes = [
                RestoreOutcome(path=o.path, success=False, error=o.error or STILL_RUNNING_ERROR)
                for o in outcomes
            ]

        failed = [o for o in outcomes if not o.success]
        if failed:
            status = OperationStatus.ROLLBACK_PARTIAL
            logger.error(f"✗ Rollback of {operation.key} incomplete")
            for outcome in failed:
                logger.error(f"  - {outcome.path}: {outcome.error}")
            logger.error("MANUAL INTERVENTION REQUIRED!")
        else:
            status = OperationStatus.ROLLED_BACK
            logger.info(f"✓ Rollback of {operation.key} successful")

        operation.transition(status)
        return RollbackResult(status=status, outcomes=outcomes)
