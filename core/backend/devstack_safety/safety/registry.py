"""
Operation Registry

Idempotency guard tracking in-flight and completed operation keys.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import OperationInProgress
from ..models import OperationStatus


logger = logging.getLogger(__name__)


@dataclass
class BeginResult:
    proceed: bool
    cached_result: Any = None


@dataclass
class RegistryRecord:
    key: str
    metadata_hash: str
    status: OperationStatus
    updated_at: datetime
    result: Any = None
    runs: int = 0


class OperationRegistry:
    """
    Tracks operation keys for one session.

    A key is either in flight (between ``begin`` and ``complete``) or holds
    the record of its last completed run. Only the last run counts for
    replay: a later failure drops an earlier cached success.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._in_flight: Dict[str, RegistryRecord] = {}
        self._completed: Dict[str, RegistryRecord] = {}

    def begin(self, key: str, metadata_hash: str, force: bool = False) -> BeginResult:
        """
        Claim ``key`` for a new run.

        Args:
            key: Operation key
            metadata_hash: Hash of the operation metadata
            force: Re-run even if an identical run already succeeded

        Returns:
            BeginResult; ``proceed`` is False when a cached result applies

        Raises:
            OperationInProgress: If ``key`` is already in flight
        """
        with self._lock:
            if key in self._in_flight:
                logger.warning(f"Rejected duplicate in-flight operation: {key}")
                raise OperationInProgress(key)

            previous = self._completed.get(key)
            if (
                not force
                and previous is not None
                and previous.status is OperationStatus.SUCCEEDED
                and previous.metadata_hash == metadata_hash
            ):
                logger.info(f"Replaying cached result for {key}")
                return BeginResult(proceed=False, cached_result=previous.result)

            self._in_flight[key] = RegistryRecord(
                key=key,
                metadata_hash=metadata_hash,
                status=OperationStatus.PENDING,
                updated_at=datetime.now(),
                runs=(previous.runs if previous else 0) + 1,
            )

        logger.debug(f"Operation {key} marked PENDING")
        return BeginResult(proceed=True)

    def complete(self, key: str, status: OperationStatus, result: Any = None):
        """
        Finalize the in-flight record for ``key``.

        Raises:
            RuntimeError: If ``key`` is not in flight
            ValueError: If ``status`` is not terminal
        """
        if not status.is_terminal:
            raise ValueError(f"Cannot complete {key} with non-terminal status {status.value}")

        with self._lock:
            record = self._in_flight.pop(key, None)
            if record is None:
                raise RuntimeError(f"Operation {key} is not in flight")

            record.status = status
            record.updated_at = datetime.now()
            record.result = result if status is OperationStatus.SUCCEEDED else None
            self._completed[key] = record

        logger.debug(f"Operation {key} completed: {status.value}")

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def in_flight(self) -> List[str]:
        with self._lock:
            return list(self._in_flight)

    def get(self, key: str) -> Optional[RegistryRecord]:
        """Current record for ``key``: the in-flight one if any, else the last completed."""
        with self._lock:
            return self._in_flight.get(key) or self._completed.get(key)
