# autosave_types.py
# Version: 1.0.0
# Shared type definitions for Idle Auto-Save to avoid circular imports: run states,
# tick outcomes, host state snapshots, scheduler stats and the error taxonomy.

from typing import Optional
from dataclasses import dataclass
from enum import Enum

class RunState(Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    CANCEL_REQUESTED = "CancelRequested"
    STOPPED = "Stopped"

class TickOutcome(Enum):
    FIRED = "fired"
    SKIPPED_NO_CONFIG = "skipped_no_config"
    SKIPPED_DISABLED = "skipped_disabled"
    SKIPPED_PROTECTED = "skipped_protected"
    SKIPPED_INACTIVE = "skipped_inactive"
    SKIPPED_NO_HOST_STATE = "skipped_no_host_state"
    FAILED = "failed"

class InactivePolicy(Enum):
    SKIP = "skip"            # skip every tick while the host is inactive
    SAVE_ONCE = "save_once"  # fire once while inactive, then skip until active again

@dataclass(frozen=True)
class HostState:
    """Point-in-time snapshot of the host application."""
    executing_protected_operation: bool = False  # playing, building, compiling
    active: bool = True  # host has foreground focus/input

@dataclass(frozen=True)
class SchedulerStats:
    """Immutable snapshot of a scheduler run for status output."""
    state: RunState
    tick_count: int = 0
    fire_count: int = 0
    skip_count: int = 0
    failure_count: int = 0
    last_outcome: Optional[TickOutcome] = None
    last_fire_at: Optional[float] = None  # wall time
    last_error: Optional[str] = None

class AutoSaveError(Exception):
    """Base class for auto-save errors."""

class ConfigurationError(AutoSaveError):
    """No valid configuration could be obtained when starting."""

class TransientConfigurationUnavailable(AutoSaveError):
    """Configuration is momentarily missing while a run is in progress."""

class FireActionError(AutoSaveError):
    """The injected save action failed on a tick."""

    def __init__(self, tick: int, message: str):
        super().__init__(f"Save failed on tick {tick}: {message}")
        self.tick = tick
