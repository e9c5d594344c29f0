# autosave_utils.py
# Version: 1.0.0
# Shared utility functions for Idle Auto-Save: file hashing for the boot banner and
# human-readable time formatting for log lines and CLI output.

import hashlib
import time
from datetime import datetime
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

def sha256_head(path: Path, n: int = 16) -> str:
    """Get first n characters of SHA256 hash of file at path."""
    try:
        sha256_hash = hashlib.sha256()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(4096), b""):
                sha256_hash.update(chunk)
        return sha256_hash.hexdigest()[:n]
    except OSError as e:
        logger.warning(f"Could not compute SHA256 for {path}: {e}")
        return "unknown"

def safe_makedirs(path: Path) -> bool:
    """Safely create directories, handling permissions and existing dirs."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        return True
    except OSError as e:
        logger.warning(f"Could not create directory {path}: {e}")
        return False

def format_timespan(seconds: float) -> str:
    """Format seconds as human-readable timespan."""
    if seconds < 0:
        return "0s"

    if seconds < 60:
        return f"{int(seconds + 0.5)}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        remaining_seconds = int(seconds % 60 + 0.5)
        return f"{minutes}m{remaining_seconds}s"
    else:
        hours = int(seconds // 3600)
        remaining_minutes = int((seconds % 3600) // 60)
        return f"{hours}h{remaining_minutes}m"

def format_clock_time(wall_time: float) -> str:
    """Format a wall clock timestamp as h:mm:ss AM/PM without a leading zero.

    Example: 1:05:09 PM
    """
    text = datetime.fromtimestamp(wall_time).strftime("%I:%M:%S %p")
    return text[1:] if text.startswith("0") else text

def timestamp_suffix() -> str:
    """Timestamp usable in file names (YYYY-MM-DDTHH-MM-SS)."""
    return time.strftime("%Y-%m-%dT%H-%M-%S")
