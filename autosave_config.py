# autosave_config.py
# Version: 1.2.0
# Persistence layer for Idle Auto-Save configuration: discovery by name under the
# project directory, default creation, migration from the v1 layout, crash-safe saves,
# corrupted-file backup and mtime-based hot reload for the running scheduler.

import json
import os
import shutil
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict, fields
import logging

from autosave_types import ConfigurationError, InactivePolicy
from autosave_utils import sha256_head, safe_makedirs, timestamp_suffix

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "autosave.json"
CONFIG_VERSION = 2
STATE_DIRNAME = ".autosave"
IGNORED_DIRS = {".git", ".hg", ".svn", STATE_DIRNAME, "node_modules", "__pycache__"}

@dataclass
class AutoSaveConfig:
    """Auto-save settings, re-read by the scheduler on every tick."""
    version: int = CONFIG_VERSION
    enabled: bool = True
    interval_sec: int = 60
    interval_min_sec: int = 1
    log_on_save: bool = False  # log a line every time a save fires
    inactive_policy: str = InactivePolicy.SKIP.value
    inactive_after_sec: int = 0  # 0 = never treat the host as inactive
    protected_markers: List[str] = None  # globs relative to the project dir
    save_command: List[str] = None
    save_timeout_sec: int = 120
    log_max_kb: int = 150
    log_history_count: int = 5
    log_ndjson: bool = True

    def __post_init__(self):
        if self.protected_markers is None:
            self.protected_markers = []
        if self.save_command is None:
            self.save_command = []

        # JSON hand edits sometimes quote booleans; "false" must not read as true
        self.enabled = _coerce_bool("enabled", self.enabled, True)
        self.log_on_save = _coerce_bool("log_on_save", self.log_on_save, False)
        self.log_ndjson = _coerce_bool("log_ndjson", self.log_ndjson, True)

        if self.interval_min_sec <= 0:
            logger.warning(f"Invalid interval_min_sec: {self.interval_min_sec}, using 1s")
            self.interval_min_sec = 1

        # Non-positive intervals are left alone so validate() can reject them
        if _is_int(self.interval_sec) and 0 < self.interval_sec < self.interval_min_sec:
            logger.warning(f"interval_sec {self.interval_sec} below minimum, clamping to {self.interval_min_sec}s")
            self.interval_sec = self.interval_min_sec

        if self.inactive_policy not in {p.value for p in InactivePolicy}:
            logger.warning(f"Unknown inactive_policy: {self.inactive_policy!r}, using 'skip'")
            self.inactive_policy = InactivePolicy.SKIP.value

    @property
    def policy(self) -> InactivePolicy:
        return InactivePolicy(self.inactive_policy)

    def validate(self) -> "AutoSaveConfig":
        """Raise ConfigurationError unless the interval is a positive integer."""
        if not _is_int(self.interval_sec):
            raise ConfigurationError(f"interval_sec must be an integer, got {self.interval_sec!r}")
        if self.interval_sec <= 0:
            raise ConfigurationError(f"interval_sec must be positive, got {self.interval_sec}")
        return self

def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)

_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}

def _coerce_bool(name: str, value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if _is_int(value) and value in (0, 1):
        result = bool(value)
    elif isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS | _FALSE_STRINGS:
        result = value.strip().lower() in _TRUE_STRINGS
    else:
        logger.warning(f"Invalid {name}: {value!r}, using {default}")
        return default
    logger.warning(f"{name} should be true or false, got {value!r}; treating it as {result}")
    return result

class ConfigManager:
    """Finds, creates, loads and saves the auto-save configuration of a project."""

    def __init__(self, project_dir: Path, config_name: str = CONFIG_FILENAME):
        self.project_dir = Path(project_dir).resolve()
        self.config_name = config_name
        self._config_path: Optional[Path] = None
        self._state_dir = self.project_dir / STATE_DIRNAME
        self._log_dir = self._state_dir / "logs"

        # Hot reload cache
        self._lock = threading.Lock()
        self._cached: Optional[AutoSaveConfig] = None
        self._cached_mtime: Optional[int] = None

    @property
    def config_path(self) -> Path:
        """Path of the config in use, located (or created) on first access."""
        if self._config_path is None:
            self._config_path = self.locate_config()
        return self._config_path

    @property
    def state_dir(self) -> Path:
        """Per-project directory for logs and the daemon pid file."""
        return self._state_dir

    @property
    def log_dir(self) -> Path:
        """Read-only access to log directory."""
        return self._log_dir

    def get_log_dir(self) -> Path:
        """Get the log directory, creating it if needed."""
        safe_makedirs(self._log_dir)
        return self._log_dir

    def find_config_paths(self) -> List[Path]:
        """All config files with the configured name under the project dir."""
        if not self.project_dir.is_dir():
            return []
        found = []
        for path in self.project_dir.rglob(self.config_name):
            rel_parts = path.relative_to(self.project_dir).parts[:-1]
            if any(part in IGNORED_DIRS for part in rel_parts):
                continue
            if path.is_file():
                found.append(path)
        # Shallowest first, so a root-level file wins over nested copies
        return sorted(found, key=lambda p: (len(p.parts), str(p)))

    def locate_config(self) -> Path:
        """Return the config path, creating a default file at the project root if none exists."""
        while True:
            paths = self.find_config_paths()
            if len(paths) > 1:
                logger.warning(f"Multiple auto-save config files found, using {paths[0]}. Delete the others: "
                               + ", ".join(str(p) for p in paths[1:]))

            if not paths:
                target = self.project_dir / self.config_name
                if not self._write_config(target, self._create_default_config()):
                    raise ConfigurationError(f"Could not create config file at {target}")
                logger.info(f"A config file has been created at {target}. You can move this anywhere you'd like.")
                continue

            return paths[0]

    def load_config(self) -> AutoSaveConfig:
        """Load configuration with migration; corrupted files are backed up and replaced."""
        path = self.config_path
        try:
            config = self._read_config(path)
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            logger.error(f"Failed to load config: {e}")
            logger.info("Creating backup and default config")
            self._backup_corrupted_config(path)
            config = self._create_default_config()
            self._write_config(path, config)

        self._log_boot_banner(path)
        with self._lock:
            self._cached = config
            self._cached_mtime = self._mtime(path)
        return config

    def current_config(self) -> Optional[AutoSaveConfig]:
        """Config for the current tick, reloaded when the file changed.

        Returns None while the file is missing or unreadable (e.g. mid-write).
        """
        with self._lock:
            path = self._config_path
            mtime = self._mtime(path) if path else None
            if mtime is None:
                self._cached = None
                self._cached_mtime = None
                return None

            if self._cached is not None and mtime == self._cached_mtime:
                return self._cached

            try:
                self._cached = self._read_config(path)
                self._cached_mtime = mtime
                logger.info(f"Reloaded config from {path}")
            except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                logger.warning(f"Config at {path} unreadable: {e}")
                self._cached = None
                self._cached_mtime = None
            return self._cached

    def resolve_config(self) -> Optional[AutoSaveConfig]:
        """Re-discover the config file (it may have been moved) and read it again."""
        with self._lock:
            self._config_path = None
            self._cached = None
            self._cached_mtime = None
        try:
            self._config_path = self.locate_config()
        except ConfigurationError as e:
            logger.error(f"Could not resolve config: {e}")
            return None
        return self.current_config()

    def save_config(self, config: AutoSaveConfig) -> bool:
        """Save configuration to the config path in use."""
        return self._write_config(self.config_path, config)

    def _read_config(self, path: Path) -> AutoSaveConfig:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("config root must be a JSON object")

        version = data.get('version', 1)
        if version < CONFIG_VERSION:
            data = self._migrate_config(data, version)
        return self._dict_to_config(data)

    def _migrate_config(self, data: Dict[str, Any], from_version: int) -> Dict[str, Any]:
        """Migrate configuration from older versions."""
        logger.info(f"Migrating config from v{from_version} to v{CONFIG_VERSION}")

        # v1 stored the interval in minutes and named the log flag 'logging'
        if 'frequency_mins' in data:
            data['interval_sec'] = int(data.pop('frequency_mins')) * 60
        if 'frequency_sec' in data:
            data['interval_sec'] = int(data.pop('frequency_sec'))
        if 'logging' in data:
            data['log_on_save'] = bool(data.pop('logging'))

        data['version'] = CONFIG_VERSION
        return data

    def _dict_to_config(self, data: Dict[str, Any]) -> AutoSaveConfig:
        """Convert dictionary to AutoSaveConfig, dropping unknown keys."""
        known = {f.name for f in fields(AutoSaveConfig)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        return AutoSaveConfig(**{k: v for k, v in data.items() if k in known})

    def _create_default_config(self) -> AutoSaveConfig:
        return AutoSaveConfig()

    def _log_boot_banner(self, path: Path):
        """Log boot banner with config path and sha256 head."""
        logger.info(f"Using config at {path} (sha256:{sha256_head(path, 16)})")

    def _backup_corrupted_config(self, path: Path):
        """Backup corrupted config file with timestamp."""
        if path.exists():
            backup_path = path.with_suffix(f'.{timestamp_suffix()}.backup')
            try:
                shutil.copy2(path, backup_path)
                logger.info(f"Backed up corrupted config to {backup_path}")
            except OSError as e:
                logger.error(f"Failed to backup corrupted config: {e}")

    @staticmethod
    def _mtime(path: Path) -> Optional[int]:
        try:
            return path.stat().st_mtime_ns
        except OSError:
            return None

    def _write_config(self, path: Path, config: AutoSaveConfig) -> bool:
        """Save configuration with crash-safe atomic write and directory fsync."""
        temp_path = path.with_suffix('.tmp')
        try:
            safe_makedirs(path.parent)
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(asdict(config), f, indent=2, ensure_ascii=False)
                f.flush()
                try:
                    os.fsync(f.fileno())
                except OSError as e:
                    logger.warning(f"File fsync failed: {e} (continuing with atomic replace)")

            temp_path.replace(path)

            # O_DIRECTORY is not available on Windows; the file fsync above still applies
            if hasattr(os, 'O_DIRECTORY'):
                try:
                    dir_fd = os.open(str(path.parent), os.O_DIRECTORY)
                    try:
                        os.fsync(dir_fd)
                    finally:
                        os.close(dir_fd)
                except OSError as e:
                    logger.debug(f"Directory fsync failed: {e} (continuing with file fsync only)")

            logger.info(f"Config saved to {path}")
            return True

        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                logger.debug(f"Could not remove temp file {temp_path}")
            return False
