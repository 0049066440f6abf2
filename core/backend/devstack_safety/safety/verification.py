"""
Verification Helpers

Hashing used for idempotency keys and snapshot integrity checks.
"""

import hashlib
import json
import logging
import os
import stat
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def calculate_hash(data: Dict[str, Any]) -> str:
    """
    Calculate a stable hash of JSON-like data.

    Args:
        data: Data to hash (non-JSON values are stringified)

    Returns:
        SHA256 hex digest
    """
    data_json = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(data_json.encode()).hexdigest()


def file_checksum(path: Path) -> str:
    """SHA256 of a regular file's bytes."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def path_checksum(path: Path) -> Optional[str]:
    """
    Checksum covering content and permission bits of a file, symlink or tree.

    Returns:
        SHA256 hex digest, or None if the path does not exist
    """
    path = Path(path)
    if not os.path.lexists(path):
        return None

    digest = hashlib.sha256()
    _update_digest(digest, path, Path("."))
    return digest.hexdigest()


def _update_digest(digest, path: Path, relative: Path):
    st = os.lstat(path)
    mode = stat.S_IMODE(st.st_mode)

    if stat.S_ISLNK(st.st_mode):
        digest.update(f"L:{relative}:{os.readlink(path)}\n".encode())
    elif stat.S_ISDIR(st.st_mode):
        digest.update(f"D:{relative}:{mode:o}\n".encode())
        for child in sorted(os.listdir(path)):
            _update_digest(digest, path / child, relative / child)
    else:
        digest.update(f"F:{relative}:{mode:o}:{file_checksum(path)}\n".encode())


def verify_integrity(path: Path, expected_hash: Optional[str]) -> bool:
    """
    Verify a path against an expected checksum.

    Args:
        path: Path to verify
        expected_hash: Expected value from :func:`path_checksum`

    Returns:
        True if checksum matches
    """
    actual_hash = path_checksum(path)
    matches = actual_hash == expected_hash

    if not matches:
        logger.warning(f"Integrity check failed for {path}")
        logger.warning(f"  Expected: {expected_hash}")
        logger.warning(f"  Actual:   {actual_hash}")

    return matches
