# autosave_host.py
# Version: 1.0.2
# Host integration for the standalone daemon: host state probing (protected-operation
# marker files, user idle time via GetLastInputInfo) and the command-based save action.

import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional
import logging

from autosave_config import AutoSaveConfig
from autosave_types import HostState

logger = logging.getLogger(__name__)

def get_idle_seconds() -> Optional[float]:
    """Seconds since the last user input, or None where it cannot be determined."""
    if sys.platform != "win32":
        return None
    try:
        import ctypes
        from ctypes import wintypes

        class LASTINPUTINFO(ctypes.Structure):
            _fields_ = [
                ("cbSize", wintypes.UINT),
                ("dwTime", wintypes.DWORD),
            ]

        last_input = LASTINPUTINFO()
        last_input.cbSize = ctypes.sizeof(LASTINPUTINFO)

        if not ctypes.windll.user32.GetLastInputInfo(ctypes.byref(last_input)):
            return None

        # GetTickCount wraps every ~49.7 days, same as dwTime
        current_tick = ctypes.windll.kernel32.GetTickCount()
        idle_ms = (current_tick - last_input.dwTime) & 0xFFFFFFFF
        return idle_ms / 1000.0

    except (OSError, AttributeError) as e:
        logger.debug(f"Failed to check idle status: {e}")
        return None

class SystemHostState:
    """Host state provider backed by marker files and the OS idle timer."""

    def __init__(self, config_provider: Callable[[], Optional[AutoSaveConfig]], project_dir: Path,
                 idle_seconds_provider: Optional[Callable[[], Optional[float]]] = None):
        self._config_provider = config_provider
        self.project_dir = Path(project_dir)
        self._idle_seconds_provider = idle_seconds_provider or get_idle_seconds

    def __call__(self) -> HostState:
        config = self._config_provider()
        if config is None:
            # Without the markers the protected check cannot be answered
            raise RuntimeError("configuration unavailable, host state unknown")
        return HostState(
            executing_protected_operation=self._protected_marker_present(config) is not None,
            active=self._is_active(config),
        )

    def _protected_marker_present(self, config: AutoSaveConfig) -> Optional[Path]:
        for pattern in config.protected_markers:
            for match in self.project_dir.glob(pattern):
                logger.debug(f"Protected operation marker present: {match}")
                return match
        return None

    def _is_active(self, config: AutoSaveConfig) -> bool:
        if config.inactive_after_sec <= 0:
            return True
        idle_seconds = self._idle_seconds_provider()
        if idle_seconds is None:
            # Unknown idle time counts as active
            return True
        return idle_seconds < config.inactive_after_sec

class CommandSaveAction:
    """Runs the configured save command in the project directory."""

    def __init__(self, config_provider: Callable[[], Optional[AutoSaveConfig]], project_dir: Path):
        self._config_provider = config_provider
        self.project_dir = Path(project_dir)

    def __call__(self):
        config = self._config_provider()
        if config is None or not config.save_command:
            raise RuntimeError("no save_command configured")

        result = subprocess.run(
            config.save_command, cwd=self.project_dir, capture_output=True, text=True,
            timeout=config.save_timeout_sec
        )
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise RuntimeError(f"save command exited with {result.returncode}"
                               + (f": {stderr}" if stderr else ""))
        if result.stdout.strip():
            logger.debug(f"Save command output: {result.stdout.strip()}")
