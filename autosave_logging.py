# autosave_logging.py
# Version: 1.0.3
# Logging system for Idle Auto-Save with numbered human-readable log rotation,
# an NDJSON stream of tick outcomes and scheduler lifecycle events, and a debug log.

import json
import logging
import logging.handlers
import os
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List
from datetime import datetime, timezone

from autosave_types import TickOutcome

logger = logging.getLogger(__name__)

HUMAN_LOG_STEM = "Log_current"
NDJSON_FILENAME = "events.ndjson"
DEBUG_LOG_FILENAME = "debug.log"

class SizeRotatingFileHandler(logging.handlers.RotatingFileHandler):
    """Rotating file handler with numbered files: Log_current1.txt (newest) to Log_currentN.txt."""

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        base, ext = os.path.splitext(self.baseFilename)   # ".../Log_current1", ".txt"
        root = base[:-1] if base.endswith("1") else base.rstrip("0123456789")
        max_keep = self.backupCount if self.backupCount > 0 else 5

        last = f"{root}{max_keep}{ext}"
        if os.path.exists(last):
            os.remove(last)

        # Shift N-1 -> N (descending)
        for i in range(max_keep - 1, 0, -1):
            src = f"{root}{i}{ext}"
            dst = f"{root}{i + 1}{ext}"
            if os.path.exists(src):
                os.replace(src, dst)

        self.mode = "w"
        self.stream = self._open()

class EventLogger:
    """Handles structured event logging with NDJSON output."""

    def __init__(self, log_dir: Path, config):
        self.log_dir = log_dir
        self.ndjson_enabled = config.log_ndjson
        self.ndjson_file: Optional[Path] = self.log_dir / NDJSON_FILENAME if self.ndjson_enabled else None
        self.ndjson_lock = threading.Lock()

    def log_tick(self, run_id: int, tick: int, outcome: TickOutcome, error: Optional[str] = None):
        """Log the outcome of one scheduler tick."""
        event = {
            "event_type": "tick",
            "run_id": run_id,
            "tick": tick,
            "outcome": outcome.value,
        }
        if error:
            event["error"] = error
        self._write_ndjson_event(event)

    def log_scheduler_event(self, event_type: str, details: Dict[str, Any]):
        """Log a scheduler lifecycle event (started, stopped, ...)."""
        self._write_ndjson_event({"event_type": "scheduler", "scheduler_event": event_type, **details})

    def log_config_change(self, change_type: str, details: Dict[str, Any]):
        """Log a configuration change event."""
        self._write_ndjson_event({"event_type": "config_change", "change_type": change_type, **details})

    def _write_ndjson_event(self, event: Dict[str, Any]):
        if not self.ndjson_file:
            return

        record = {"timestamp": datetime.now(timezone.utc).isoformat(), **event}
        try:
            with self.ndjson_lock:
                with open(self.ndjson_file, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(record, ensure_ascii=False) + '\n')
        except OSError as e:
            logger.error(f"Failed to write NDJSON event: {e}")

class HumanLogger:
    """Handles human-readable log rotation and formatting."""

    def __init__(self, log_dir: Path, config, console_level: int = logging.INFO):
        self.log_dir = log_dir
        self.max_size_kb = config.log_max_kb
        self.history_count = config.log_history_count
        self.console_level = console_level

        self.log_dir.mkdir(parents=True, exist_ok=True)

        # Current/active file is ALWAYS "1"
        self.current_log = self.log_dir / f"{HUMAN_LOG_STEM}1.txt"

        self._setup_logging()

    def _setup_logging(self):
        self.formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        self.file_handler = SizeRotatingFileHandler(
            self.current_log,
            maxBytes=self.max_size_kb * 1024,
            backupCount=self.history_count,
            encoding='utf-8'
        )
        self.file_handler.setFormatter(self.formatter)
        self.file_handler.setLevel(logging.INFO)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(self.formatter)
        console_handler.setLevel(self.console_level)

        root_logger = logging.getLogger()
        root_logger.setLevel(min(logging.INFO, self.console_level))

        # Clear existing handlers to prevent duplication
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        root_logger.addHandler(self.file_handler)
        root_logger.addHandler(console_handler)

    def log_system_event(self, event_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        """Log a system event to the human-readable log."""
        line = f"SYSTEM {event_type} {message}"
        if details:
            line += " " + " ".join(f"{k}={v}" for k, v in details.items())
        # Goes through the root logger so rotation applies
        logging.getLogger("autosave.system").info(line)

    def get_log_files(self) -> List[Path]:
        """Get list of available log files, newest first."""
        max_keep = self.history_count if self.history_count > 0 else 5
        files = [self.log_dir / f"{HUMAN_LOG_STEM}{i}.txt" for i in range(1, max_keep + 1)]
        return [p for p in files if p.exists()]

class LoggingManager:
    """Manages human, NDJSON and debug logging."""

    def __init__(self, log_dir: Path, config, debug: bool = False):
        self.log_dir = log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.human_logger = HumanLogger(log_dir, config, logging.DEBUG if debug else logging.INFO)
        self.event_logger = EventLogger(log_dir, config)

        self.human_logger.log_system_event("STARTUP", "Idle Auto-Save started")
        self._init_debug_logger()

    def _init_debug_logger(self):
        """Initialize debug logger for troubleshooting."""
        self.debug_logger = logging.getLogger('autosave.debug')
        self.debug_logger.setLevel(logging.DEBUG)
        for handler in list(self.debug_logger.handlers):
            self.debug_logger.removeHandler(handler)
            handler.close()

        debug_handler = logging.FileHandler(self.log_dir / DEBUG_LOG_FILENAME, encoding='utf-8')
        debug_handler.setLevel(logging.DEBUG)
        debug_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

        self.debug_logger.addHandler(debug_handler)
        self.debug_logger.propagate = False
        self.debug_logger.info("Debug logging initialized")

    def log_debug(self, message: str):
        self.debug_logger.debug(message)

    def log_tick(self, run_id: int, tick: int, outcome: TickOutcome, error: Optional[str] = None):
        """Record a tick outcome in the debug log and the NDJSON stream."""
        self.log_debug(f"Run {run_id} tick {tick}: {outcome.value}" + (f" ({error})" if error else ""))
        self.event_logger.log_tick(run_id, tick, outcome, error)

    def log_system_event(self, event_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.human_logger.log_system_event(event_type, message, details)

    def log_scheduler_event(self, event_type: str, details: Dict[str, Any]):
        self.event_logger.log_scheduler_event(event_type, details)

    def log_config_change(self, change_type: str, details: Dict[str, Any]):
        self.event_logger.log_config_change(change_type, details)

    def get_log_files(self) -> List[Path]:
        return self.human_logger.get_log_files()

    def get_ndjson_file(self) -> Optional[Path]:
        return self.event_logger.ndjson_file

    def shutdown(self):
        """Shutdown logging system."""
        self.human_logger.log_system_event("SHUTDOWN", "Idle Auto-Save shutting down")
        logging.shutdown()
