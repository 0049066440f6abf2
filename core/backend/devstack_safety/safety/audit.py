"""
Audit Logger

Append-only JSON Lines record of every operation's lifecycle events.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterable, List, Optional

from ..models import AuditEntry, AuditEvent


logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
TAIL_BYTES = 64 * 1024

_LEVELS = {
    AuditEvent.ACTION_FAILED: logging.ERROR,
    AuditEvent.BACKUP_FAILED: logging.ERROR,
    AuditEvent.ROLLBACK_PARTIAL: logging.ERROR,
    AuditEvent.ROLLBACK_STARTED: logging.WARNING,
}


class AuditLogger:
    """
    Durable, append-only audit trail.

    Each entry is written as one JSON line, flushed and synced before
    ``append`` returns. Entries are never rewritten or deleted. Entries for
    one key appear in emission order; across keys only timestamps order them.
    Sequence numbers continue from the last entry already in the file, so
    they keep increasing across sessions sharing one log.
    """

    def __init__(self, log_path: Path, redact_keys: Iterable[str] = ()):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.redact_keys = [k.lower() for k in redact_keys]
        self._lock = threading.Lock()
        self._sequence = self._last_sequence()

    def _last_sequence(self) -> int:
        if not self.log_path.exists():
            return 0

        with open(self.log_path, 'rb') as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - TAIL_BYTES))
            tail = f.read().decode("utf-8", errors="replace")

        for line in reversed(tail.splitlines()):
            try:
                sequence = json.loads(line).get("sequence")
            except (json.JSONDecodeError, AttributeError):
                continue
            if isinstance(sequence, int):
                return sequence
        return 0

    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Write ``entry`` to the trail.

        Returns:
            The entry as written (sequence assigned, detail redacted)
        """
        with self._lock:
            self._sequence += 1
            entry.sequence = self._sequence
            entry.detail = self.redact(entry.detail)
            line = json.dumps(entry.to_dict(), default=str)

            with open(self.log_path, 'a') as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())

        logger.log(
            _LEVELS.get(entry.event, logging.INFO),
            f"[{entry.operation_key}] {entry.event.value} {_summarize(entry.detail)}".rstrip(),
        )
        return entry

    def record(self, operation_key: str, event: AuditEvent, **detail: Any) -> AuditEntry:
        """Convenience wrapper building and appending an entry."""
        return self.append(AuditEntry(operation_key=operation_key, event=event, detail=detail))

    def read(self, operation_key: Optional[str] = None) -> List[AuditEntry]:
        """
        Read entries back, in file order.

        Args:
            operation_key: Only return entries for this key

        Returns:
            Parsed entries; malformed lines are skipped with a warning
        """
        if not self.log_path.exists():
            return []

        entries = []
        with open(self.log_path, 'r') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = AuditEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed audit line {line_number}: {e}")
                    continue
                if operation_key is None or entry.operation_key == operation_key:
                    entries.append(entry)

        return entries

    def redact(self, value: Any) -> Any:
        """Replace values of sensitive keys, recursively."""
        if isinstance(value, dict):
            return {
                k: REDACTED if self._is_sensitive(k) else self.redact(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self.redact(v) for v in value]
        return value

    def _is_sensitive(self, key: Any) -> bool:
        key = str(key).lower()
        return any(pattern in key for pattern in self.redact_keys)


def _summarize(detail: dict) -> str:
    if not detail:
        return ""
    if "error" in detail:
        return str(detail["error"])
    if "paths" in detail:
        return ", ".join(str(p) for p in detail["paths"])
    return ""
