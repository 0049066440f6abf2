"""
Backup Manager

Snapshots and restores filesystem targets around mutating operations.
"""

import json
import logging
import os
import re
import shutil
import stat
import sys
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..errors import BackupFailed
from ..models import BackupRecord, RestoreOutcome
from .verification import path_checksum, verify_integrity


logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
PAYLOAD_NAME = "data"
STATE_IN_FLIGHT = "in_flight"
STATE_COMPLETE = "complete"


class BackupManager:
    """
    Manages filesystem snapshots for the safety framework.

    Features:
    - Operation-scoped, timestamped snapshot sets
    - Files, directory trees and symlinks with permission bits
    - Fail-closed snapshots, best-effort restores
    - In-flight markers in manifests, honoured by every process that prunes
    - Backup listing, verification and retention cleanup
    """

    def __init__(self, backup_dir: Path, tool_name: str = "devstack-safety"):
        """
        Initialize backup manager.

        Args:
            backup_dir: Directory to store snapshot sets
            tool_name: Name recorded in every manifest
        """
        self.tool_name = tool_name
        self.backup_dir = Path(backup_dir)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._open_sets: Dict[str, Path] = {}

        logger.debug(f"BackupManager initialized: {self.backup_dir}")

    def snapshot(
        self,
        paths: Iterable[Path],
        operation_key: str,
        in_flight: bool = True,
    ) -> List[BackupRecord]:
        """
        Snapshot every path before a mutation.

        Args:
            paths: Targets to protect
            operation_key: Owning operation (names the snapshot set)
            in_flight: Mark the set as owned by a running operation until
                ``release`` is called for ``operation_key``

        Returns:
            One BackupRecord per path, in the given order

        Raises:
            BackupFailed: If any path cannot be copied. No partial snapshot
                set is left behind.
        """
        paths = [Path(p) for p in paths]
        records: List[BackupRecord] = []
        set_dir = None
        current = self.backup_dir

        try:
            set_dir = self._new_snapshot_dir(operation_key)
            for index, path in enumerate(paths):
                current = path
                records.append(self._snapshot_path(path, set_dir / f"{index:03d}"))

            current = set_dir / MANIFEST_NAME
            state = STATE_IN_FLIGHT if in_flight else STATE_COMPLETE
            self._write_manifest(set_dir, operation_key, records, state)

        except Exception as e:
            logger.error(f"Snapshot failed for {current}: {e}")
            if set_dir is not None:
                self._discard(set_dir)
            raise BackupFailed(current, e, operation_key=operation_key) from e

        if in_flight:
            with self._lock:
                self._open_sets[operation_key] = set_dir

        taken = sum(1 for r in records if r.existed_before)
        logger.info(f"Created backup: {set_dir.name} ({taken}/{len(records)} path(s) existed)")
        return records

    def create_backup(self, name: str, path: Path) -> BackupRecord:
        """
        One-off backup of a single path, outside of any tracked operation.

        Args:
            name: Backup name (will be timestamped)
            path: Path to snapshot

        Returns:
            BackupRecord for the path

        Raises:
            BackupFailed: If the path cannot be copied
        """
        return self.snapshot([path], name, in_flight=False)[0]

    def release(self, operation_key: str):
        """
        Clear the in-flight marker of the set taken for ``operation_key``.

        No-op when the operation took no snapshot in this process.
        """
        with self._lock:
            set_dir = self._open_sets.pop(operation_key, None)
        if set_dir is None:
            return

        try:
            manifest = self.load_manifest(set_dir)
            manifest["state"] = STATE_COMPLETE
            manifest.pop("pid", None)
            self._dump_manifest(set_dir, manifest)
            logger.debug(f"Released snapshot set {set_dir.name}")
        except (OSError, ValueError) as e:
            logger.warning(f"Could not release snapshot set {set_dir.name}: {e}")

    def restore(self, records: Iterable[BackupRecord]) -> List[RestoreOutcome]:
        """
        Restore paths from their snapshots.

        Paths that did not exist before are deleted. Every record is
        attempted; a failure on one does not stop the others.

        Returns:
            One RestoreOutcome per record, in the given order
        """
        outcomes = []

        for record in records:
            try:
                self._restore_one(record)
                outcomes.append(RestoreOutcome(path=record.path, success=True))
                logger.debug(f"Restored: {record.path}")
            except Exception as e:
                logger.error(f"Could not restore {record.path}: {e}")
                outcomes.append(RestoreOutcome(path=record.path, success=False, error=str(e)))

        return outcomes

    def _snapshot_path(self, path: Path, slot: Path) -> BackupRecord:
        if not os.path.lexists(path):
            return BackupRecord(path=path, existed_before=False)

        st = os.lstat(path)
        slot.mkdir(parents=True)
        dest = slot / PAYLOAD_NAME

        if stat.S_ISLNK(st.st_mode):
            os.symlink(os.readlink(path), dest)
            kind = "symlink"
            mode = None
        elif stat.S_ISDIR(st.st_mode):
            shutil.copytree(path, dest, symlinks=True)
            kind = "directory"
            mode = stat.S_IMODE(st.st_mode)
        elif stat.S_ISREG(st.st_mode):
            shutil.copy2(path, dest)
            kind = "file"
            mode = stat.S_IMODE(st.st_mode)
        else:
            raise OSError(f"Unsupported file type: {path}")

        return BackupRecord(
            path=path,
            existed_before=True,
            snapshot_ref=dest,
            mode=mode,
            kind=kind,
            checksum=path_checksum(dest),
        )

    def _restore_one(self, record: BackupRecord):
        path = record.path

        if not record.existed_before:
            if os.path.lexists(path):
                _remove_path(path)
            return

        source = record.snapshot_ref
        if source is None or not os.path.lexists(source):
            raise FileNotFoundError(f"Snapshot missing: {source}")

        path.parent.mkdir(parents=True, exist_ok=True)

        if record.kind == "file":
            # Copy beside the target then swap in, so the path never
            # holds a half-written file.
            staging = path.with_name(f".{path.name}.restore-{uuid.uuid4().hex[:8]}")
            try:
                shutil.copy2(source, staging)
                if record.mode is not None:
                    os.chmod(staging, record.mode)
                if os.path.isdir(path) and not os.path.islink(path):
                    _remove_path(path)
                os.replace(staging, path)
            finally:
                if os.path.lexists(staging):
                    _remove_path(staging)
            return

        if os.path.lexists(path):
            _remove_path(path)

        if record.kind == "symlink":
            os.symlink(os.readlink(source), path)
        else:
            shutil.copytree(source, path, symlinks=True)
            if record.mode is not None:
                os.chmod(path, record.mode)

    def _new_snapshot_dir(self, operation_key: str) -> Path:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        base = f"{_slug(operation_key)}-{timestamp}"
        candidate = self.backup_dir / base
        counter = 1
        while True:
            try:
                candidate.mkdir(parents=True)
                return candidate
            except FileExistsError:
                candidate = self.backup_dir / f"{base}-{counter}"
                counter += 1

    def _write_manifest(
        self,
        set_dir: Path,
        operation_key: str,
        records: List[BackupRecord],
        state: str,
    ):
        manifest = {
            "tool": self.tool_name,
            "name": set_dir.name,
            "operation_key": operation_key,
            "timestamp": datetime.now().isoformat(),
            "state": state,
            "records": [r.to_dict() for r in records],
        }
        if state == STATE_IN_FLIGHT:
            manifest["pid"] = os.getpid()
        self._dump_manifest(set_dir, manifest)

    def _dump_manifest(self, set_dir: Path, manifest: Dict[str, Any]):
        # Write then rename so readers in other processes never see a torn manifest.
        staging = set_dir / f".{MANIFEST_NAME}.tmp"
        with open(staging, 'w') as f:
            json.dump(manifest, f, indent=2, default=str)
        os.replace(staging, set_dir / MANIFEST_NAME)

    def _discard(self, set_dir: Path):
        try:
            if os.path.lexists(set_dir):
                _remove_path(set_dir)
        except OSError as e:
            logger.warning(f"Could not remove partial snapshot {set_dir}: {e}")

    def load_manifest(self, set_dir: Path) -> Dict[str, Any]:
        """
        Load a snapshot set manifest.

        Raises:
            FileNotFoundError: If the manifest doesn't exist
            ValueError: If the manifest is invalid
        """
        manifest_path = Path(set_dir) / MANIFEST_NAME
        if not manifest_path.exists():
            raise FileNotFoundError(f"Backup not found: {manifest_path}")

        try:
            with open(manifest_path, 'r') as f:
                manifest = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in backup manifest: {e}")

        required_keys = ["tool", "name", "timestamp", "records"]
        if not all(key in manifest for key in required_keys):
            raise ValueError("Invalid backup manifest structure")

        return manifest

    def records_for(self, set_dir: Path) -> List[BackupRecord]:
        """BackupRecords stored in a snapshot set manifest."""
        manifest = self.load_manifest(set_dir)
        return [BackupRecord.from_dict(r) for r in manifest["records"]]

    def list_backups(self) -> List[Dict[str, Any]]:
        """
        List snapshot sets.

        Returns:
            List of backup info dictionaries, newest first. Sets without a
            readable manifest are reported with ``complete=False``; sets held
            by a live operation in any process have ``in_flight=True``.
        """
        backups = []

        for set_dir in self.backup_dir.iterdir():
            if not set_dir.is_dir():
                continue
            try:
                created = datetime.fromtimestamp(set_dir.stat().st_mtime)
                info = {
                    "path": set_dir,
                    "name": set_dir.name,
                    "size": _tree_size(set_dir),
                    "created": created,
                    "operation_key": None,
                    "timestamp": "",
                    "record_count": 0,
                    "complete": False,
                    "in_flight": False,
                }
                try:
                    manifest = self.load_manifest(set_dir)
                    info.update({
                        "operation_key": manifest.get("operation_key"),
                        "timestamp": manifest["timestamp"],
                        "record_count": len(manifest["records"]),
                        "complete": True,
                        "in_flight": (
                            manifest.get("state") == STATE_IN_FLIGHT
                            and _process_alive(manifest.get("pid"))
                        ),
                    })
                    info["created"] = datetime.fromisoformat(manifest["timestamp"])
                except (FileNotFoundError, ValueError) as e:
                    logger.debug(f"No usable manifest in {set_dir.name}: {e}")

                backups.append(info)

            except OSError as e:
                logger.warning(f"Could not read backup {set_dir}: {e}")

        backups.sort(key=lambda b: b["created"], reverse=True)
        return backups

    def cleanup_old_backups(
        self,
        keep_count: Optional[int] = None,
        max_age_days: Optional[int] = None,
        protected: Iterable[str] = (),
    ) -> int:
        """
        Remove old snapshot sets.

        Args:
            keep_count: Number of most recent sets to keep (None = no limit)
            max_age_days: Remove sets older than this (None = no limit)
            protected: Operation keys whose sets must not be touched. Sets
                marked in flight by a live process are always skipped.

        Returns:
            Number of sets deleted
        """
        protected = set(protected)
        backups = [
            b for b in self.list_backups()
            if b["complete"] and not b["in_flight"] and b["operation_key"] not in protected
        ]
        cutoff = datetime.now() - timedelta(days=max_age_days) if max_age_days else None

        to_delete = []
        for index, backup in enumerate(backups):
            too_many = keep_count is not None and index >= keep_count
            too_old = cutoff is not None and backup["created"] < cutoff
            if too_many or too_old:
                to_delete.append(backup)

        if not to_delete:
            logger.debug(f"No cleanup needed ({len(backups)} backups)")
            return 0

        deleted_count = 0
        for backup in to_delete:
            try:
                _remove_path(backup["path"])
                logger.debug(f"Deleted old backup: {backup['name']}")
                deleted_count += 1
            except OSError as e:
                logger.warning(f"Could not delete backup {backup['name']}: {e}")

        logger.info(f"Cleaned up {deleted_count} old backup(s)")
        return deleted_count

    def get_backup_size(self) -> int:
        """
        Get total size of all backups in bytes.

        Returns:
            Total backup size in bytes
        """
        return _tree_size(self.backup_dir)

    def verify_backup(self, record: BackupRecord) -> bool:
        """
        Verify a snapshot still matches the checksum taken with it.

        Returns:
            True if the snapshot is intact (always True for paths that did
            not exist before)
        """
        if not record.existed_before:
            return True
        if record.snapshot_ref is None:
            logger.error(f"Backup verification failed: no snapshot for {record.path}")
            return False
        return verify_integrity(record.snapshot_ref, record.checksum)


def _slug(operation_key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", operation_key).strip("-.") or "operation"


def _tree_size(path: Path) -> int:
    total_size = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total_size += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total_size


def _process_alive(pid: Optional[int]) -> bool:
    """Whether ``pid`` names a running process (an unknown pid counts as dead)."""
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _remove_path(path: Path):
    """
    Delete a file, symlink or directory tree.

    Read-only directories inside the tree are made writable so their
    entries can go. The parent of ``path`` is never modified; a failure to
    unlink ``path`` itself propagates.
    """
    if os.path.islink(path) or not os.path.isdir(path):
        os.unlink(path)
        return

    root = os.path.abspath(path)

    def _make_writable(func, failed_path, exc):
        parent = os.path.dirname(os.path.abspath(failed_path))
        if parent != root and not parent.startswith(root + os.sep):
            raise exc if isinstance(exc, BaseException) else exc[1]
        os.chmod(parent, stat.S_IRWXU)
        func(failed_path)

    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_make_writable)
    else:
        shutil.rmtree(path, onerror=_make_writable)
