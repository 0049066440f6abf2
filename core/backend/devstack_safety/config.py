"""
Safety Configuration

Loads the ``safety:`` section of the devstack YAML configuration and builds
the explicit context object handed to the framework and to every manager.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError


logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DEVSTACK_SAFETY_CONFIG"

DEFAULT_SAFETY_DIR = Path.home() / ".devstack-setup"
DEFAULT_TIMEOUT = 30 * 60
DEFAULT_CANCEL_GRACE = 5.0
DEFAULT_KEEP_COUNT = 20
DEFAULT_MAX_AGE_DAYS = 30
DEFAULT_REDACT_KEYS = [
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "private_key",
    "credential",
    "requirepass",
]


@dataclass
class SafetyConfig:
    """
    Safety framework settings.

    Attributes:
        safety_dir: Root for backups, audit log and reports
        default_timeout: Executor deadline in seconds when callers give none
        cancel_grace_period: Seconds a cancelled action gets to exit before it
            is reported as still running
        backup_keep_count: Snapshot sets kept by the retention policy
        backup_max_age_days: Snapshot sets older than this are pruned
        redact_keys: Detail keys whose values never reach the audit log
    """

    safety_dir: Path = DEFAULT_SAFETY_DIR
    default_timeout: float = DEFAULT_TIMEOUT
    cancel_grace_period: float = DEFAULT_CANCEL_GRACE
    backup_keep_count: int = DEFAULT_KEEP_COUNT
    backup_max_age_days: Optional[int] = DEFAULT_MAX_AGE_DAYS
    redact_keys: List[str] = field(default_factory=lambda: list(DEFAULT_REDACT_KEYS))

    def __post_init__(self):
        self.safety_dir = Path(os.path.expanduser(str(self.safety_dir)))
        self.validate()

    def validate(self) -> bool:
        """
        Validate configuration values.

        Raises:
            ConfigError: If a value is out of range
        """
        if isinstance(self.default_timeout, bool) or not isinstance(self.default_timeout, (int, float)):
            raise ConfigError("default_timeout must be a number of seconds")
        if self.default_timeout <= 0:
            raise ConfigError("default_timeout must be positive")
        if isinstance(self.cancel_grace_period, bool) or not isinstance(
            self.cancel_grace_period, (int, float)
        ):
            raise ConfigError("cancel_grace_period must be a number of seconds")
        if self.cancel_grace_period < 0:
            raise ConfigError("cancel_grace_period must not be negative")
        if not isinstance(self.backup_keep_count, int) or self.backup_keep_count < 0:
            raise ConfigError("backup_keep_count must be a non-negative integer")
        if self.backup_max_age_days is not None and (
            not isinstance(self.backup_max_age_days, int) or self.backup_max_age_days < 1
        ):
            raise ConfigError("backup_max_age_days must be a positive integer or null")
        if not isinstance(self.redact_keys, list) or not all(
            isinstance(k, str) for k in self.redact_keys
        ):
            raise ConfigError("redact_keys must be a list of strings")
        return True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SafetyConfig":
        data = dict(data or {})
        known = {"safety_dir", "default_timeout", "cancel_grace_period", "backup_keep_count",
                 "backup_max_age_days", "redact_keys"}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown safety settings: {', '.join(sorted(unknown))}")
        return cls(**data)


def find_config_file(explicit: Optional[Path] = None) -> Optional[Path]:
    """
    Locate the configuration file.

    Search order: explicit path, ``$DEVSTACK_SAFETY_CONFIG``, then
    ``~/.config/devstack-safety/config.yaml``.

    Raises:
        FileNotFoundError: If an explicitly requested file does not exist
    """
    if explicit is not None:
        explicit = Path(explicit)
        if not explicit.exists():
            raise FileNotFoundError(f"Configuration not found: {explicit}")
        return explicit

    candidates = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(Path.home() / ".config" / "devstack-safety" / "config.yaml")

    for config_path in candidates:
        if config_path.exists():
            return config_path
    return None


def load_config(path: Optional[Path] = None) -> SafetyConfig:
    """
    Load safety configuration from YAML.

    Falls back to defaults when no configuration file exists.

    Raises:
        ConfigError: If the file is not valid YAML or has invalid values
    """
    config_path = find_config_file(path)
    if config_path is None:
        logger.debug("No safety configuration file found, using defaults")
        return SafetyConfig()

    logger.debug(f"Loading config from: {config_path}")
    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration root must be a mapping: {config_path}")

    section = raw.get("safety", {})
    if not isinstance(section, dict):
        raise ConfigError("'safety' section must be a mapping")

    try:
        return SafetyConfig.from_dict(section)
    except TypeError as e:
        raise ConfigError(f"Invalid safety configuration: {e}")


@dataclass
class SafetyContext:
    """
    Explicit context shared by the framework and the tool managers.

    Replaces process-wide mutable state: whoever builds the wizard creates
    one context and passes it down.
    """

    config: SafetyConfig = field(default_factory=SafetyConfig)
    dry_run: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def safety_dir(self) -> Path:
        return self.config.safety_dir

    @property
    def backup_dir(self) -> Path:
        return self.config.safety_dir / "backups"

    @property
    def log_dir(self) -> Path:
        return self.config.safety_dir / "logs"

    @property
    def audit_log_path(self) -> Path:
        return self.log_dir / "audit.jsonl"

    @property
    def operations_log_path(self) -> Path:
        return self.log_dir / "operations.jsonl"

    @property
    def report_path(self) -> Path:
        return self.config.safety_dir / "safety-report.json"

    def ensure_dirs(self):
        for directory in (self.safety_dir, self.backup_dir, self.log_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config_file(cls, path: Optional[Path] = None, **kwargs) -> "SafetyContext":
        return cls(config=load_config(path), **kwargs)
