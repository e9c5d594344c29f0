# autosave_core.py
# Version: 1.1.0
# Core scheduling engine for Idle Auto-Save: a single cancellable background loop per
# scheduler that waits the configured interval, re-reads config and host state, and
# decides whether to fire the save action. Start always stops the previous run first.

import time
import threading
from typing import Callable, List, Optional, Tuple
import logging

from autosave_config import AutoSaveConfig
from autosave_types import (RunState, TickOutcome, InactivePolicy, HostState, SchedulerStats,
                            ConfigurationError, TransientConfigurationUnavailable, FireActionError)
from autosave_utils import format_clock_time, format_timespan

logger = logging.getLogger(__name__)

ConfigProvider = Callable[[], Optional[AutoSaveConfig]]
HostStateProvider = Callable[[], HostState]
FireAction = Callable[[], None]
LogFn = Callable[[str], None]
TickObserver = Callable[[int, int, TickOutcome, Optional[str]], None]  # run_id, tick, outcome, error

class Clock:
    """Clock abstraction for testing and consistent timing."""

    def monotonic(self) -> float:
        """Get monotonic time in seconds."""
        return time.monotonic()

    def wall(self) -> float:
        """Get wall clock time in seconds since epoch."""
        return time.time()

    def wait(self, stop_event: threading.Event, seconds: float) -> bool:
        """Sleep for up to `seconds`. Returns True if stop_event was set meanwhile."""
        return stop_event.wait(seconds)

class FakeClock:
    """Fake clock for testing. Waits only complete when time is advanced."""

    _POLL_SEC = 0.005

    def __init__(self, start_time: float = 0.0):
        self._time = start_time
        self._cond = threading.Condition()
        self._deadlines: List[float] = []

    def monotonic(self) -> float:
        return self._time

    def wall(self) -> float:
        return self._time

    def wait(self, stop_event: threading.Event, seconds: float) -> bool:
        with self._cond:
            deadline = self._time + seconds
            self._deadlines.append(deadline)
            self._cond.notify_all()
            try:
                # Poll so a stop_event.set() from another thread is seen promptly
                while not stop_event.is_set() and self._time < deadline:
                    self._cond.wait(self._POLL_SEC)
            finally:
                self._deadlines.remove(deadline)
                self._cond.notify_all()
            return stop_event.is_set()

    def advance(self, delta: float):
        """Advance fake time."""
        with self._cond:
            self._time += delta
            self._cond.notify_all()

    def settle(self, timeout: float = 2.0) -> bool:
        """Block until every waiting thread is asleep on a deadline still in the future.

        Returns False if that does not happen within `timeout` real seconds
        (e.g. no loop is running).
        """
        end = time.monotonic() + timeout
        with self._cond:
            while not (self._deadlines and all(d > self._time for d in self._deadlines)):
                remaining = end - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

def evaluate_tick(config: Optional[AutoSaveConfig], host_state: HostState,
                  saved_while_inactive: bool = False) -> Tuple[TickOutcome, bool]:
    """Decide whether a tick fires.

    Returns the outcome and the new "saved while inactive" latch. The latch only
    matters under InactivePolicy.SAVE_ONCE, where one save is allowed after the
    host goes inactive and further saves wait until it is active again.
    """
    if config is None:
        return TickOutcome.SKIPPED_NO_CONFIG, saved_while_inactive
    if not config.enabled:
        return TickOutcome.SKIPPED_DISABLED, saved_while_inactive
    if host_state.executing_protected_operation:
        return TickOutcome.SKIPPED_PROTECTED, saved_while_inactive

    if not host_state.active:
        if config.policy is InactivePolicy.SAVE_ONCE and not saved_while_inactive:
            return TickOutcome.FIRED, True
        return TickOutcome.SKIPPED_INACTIVE, saved_while_inactive

    return TickOutcome.FIRED, False

class SchedulerHandle:
    """One run of the auto-save loop. Created by IdleIntervalScheduler.start()."""

    def __init__(self, run_id: int, clock, config_provider: ConfigProvider,
                 host_state_provider: HostStateProvider, fire_action: FireAction,
                 log_fn: Optional[LogFn] = None, recover_config: Optional[ConfigProvider] = None,
                 on_tick: Optional[TickObserver] = None):
        self.run_id = run_id
        self._clock = clock
        self._config_provider = config_provider
        self._recover_config = recover_config or config_provider
        self._host_state_provider = host_state_provider
        self._fire_action = fire_action
        self._log_fn = log_fn or logger.info
        self._on_tick = on_tick

        # Threading
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._state = RunState.IDLE

        # Per-run state
        self._saved_while_inactive = False
        self._tick_count = 0
        self._fire_count = 0
        self._skip_count = 0
        self._failure_count = 0
        self._last_outcome: Optional[TickOutcome] = None
        self._last_fire_at: Optional[float] = None
        self._last_error: Optional[str] = None

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        return self.state in (RunState.RUNNING, RunState.CANCEL_REQUESTED)

    def snapshot(self) -> SchedulerStats:
        with self._lock:
            return SchedulerStats(
                state=self._state,
                tick_count=self._tick_count,
                fire_count=self._fire_count,
                skip_count=self._skip_count,
                failure_count=self._failure_count,
                last_outcome=self._last_outcome,
                last_fire_at=self._last_fire_at,
                last_error=self._last_error,
            )

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Signal cancellation and block until the loop has exited.

        No-op on a handle that never started or already stopped. Returns False if
        the loop is still alive afterwards (timeout, or called from the loop itself).
        """
        with self._lock:
            if self._state in (RunState.IDLE, RunState.STOPPED):
                return True
            self._state = RunState.CANCEL_REQUESTED
        self._stop_event.set()

        thread = self._thread
        if thread is threading.current_thread():
            # Called from inside the save action; the loop exits after this tick
            return False

        thread.join(timeout)
        if thread.is_alive():
            logger.warning(f"Auto-save loop {self.run_id} did not stop within timeout")
            return False
        return True

    def _launch(self, interval: int, on_enter: Callable[[], None], on_exit: Callable[[], None]):
        thread = threading.Thread(
            target=self._loop, args=(interval, on_enter, on_exit),
            name=f"autosave-loop-{self.run_id}", daemon=True
        )
        # stop() must never see RUNNING before the thread exists
        with self._lock:
            self._thread = thread
            self._state = RunState.RUNNING
            thread.start()

    def _loop(self, interval: int, on_enter: Callable[[], None], on_exit: Callable[[], None]):
        """Main loop running in the background thread."""
        on_enter()
        logger.info(f"Auto-save loop {self.run_id} started (interval {format_timespan(interval)})")
        try:
            while not self._stop_event.is_set():
                # The interval wait is the only cancellation point
                if self._clock.wait(self._stop_event, interval):
                    break
                try:
                    interval = self.run_tick(interval)
                except Exception as e:
                    logger.error(f"Error in auto-save loop {self.run_id}: {e}")
        finally:
            with self._lock:
                self._state = RunState.STOPPED
            on_exit()
            logger.info(f"Auto-save loop {self.run_id} ended")

    def run_tick(self, interval: int) -> int:
        """Evaluate one tick and fire if allowed. Returns the interval for the next wait."""
        with self._lock:
            self._tick_count += 1
            tick = self._tick_count

        try:
            config = self._fetch_config()
        except TransientConfigurationUnavailable as e:
            logger.debug(f"Tick {tick} skipped: {e}")
            self._record(tick, TickOutcome.SKIPPED_NO_CONFIG)
            return interval

        try:
            host_state = self._host_state_provider()
        except Exception as e:
            logger.warning(f"Tick {tick} skipped: host state unavailable: {e}")
            self._record(tick, TickOutcome.SKIPPED_NO_HOST_STATE, str(e))
            return config.interval_sec

        outcome, self._saved_while_inactive = evaluate_tick(config, host_state, self._saved_while_inactive)
        error = None
        if outcome is TickOutcome.FIRED:
            try:
                self._fire_action()
            except Exception as e:
                failure = FireActionError(tick, str(e) or type(e).__name__)
                failure.__cause__ = e
                error = str(failure)
                outcome = TickOutcome.FAILED
                logger.error(error)
                self._log_fn(error)
            else:
                if config.log_on_save:
                    self._log_fn(f"Auto-saved at {format_clock_time(self._clock.wall())}")
        else:
            logger.debug(f"Tick {tick}: {outcome.value}")

        self._record(tick, outcome, error)
        return config.interval_sec

    def _fetch_config(self) -> AutoSaveConfig:
        config = self._call_provider(self._config_provider)
        if config is None:
            logger.debug("Config unavailable, re-resolving")
            config = self._call_provider(self._recover_config)
        if config is None:
            raise TransientConfigurationUnavailable("configuration unavailable")
        try:
            return config.validate()
        except ConfigurationError as e:
            raise TransientConfigurationUnavailable(str(e)) from e

    @staticmethod
    def _call_provider(provider: ConfigProvider) -> Optional[AutoSaveConfig]:
        try:
            return provider()
        except Exception as e:
            logger.warning(f"Config provider failed: {e}")
            return None

    def _record(self, tick: int, outcome: TickOutcome, error: Optional[str] = None):
        with self._lock:
            self._last_outcome = outcome
            if outcome is TickOutcome.FIRED:
                self._fire_count += 1
                self._last_fire_at = self._clock.wall()
            elif outcome is TickOutcome.FAILED:
                self._failure_count += 1
                self._last_error = error
            else:
                self._skip_count += 1

        if self._on_tick:
            self._on_tick(self.run_id, tick, outcome, error)

class IdleIntervalScheduler:
    """Owns at most one live auto-save loop at a time."""

    def __init__(self, clock=None):
        self.clock = clock or Clock()
        self._lock = threading.RLock()  # serializes start/stop
        self._handle: Optional[SchedulerHandle] = None
        self._run_counter = 0

        # Live loop accounting
        self._live_lock = threading.Lock()
        self._live_loops = 0
        self._max_live_loops = 0

    @property
    def handle(self) -> Optional[SchedulerHandle]:
        return self._handle

    @property
    def live_loops(self) -> int:
        with self._live_lock:
            return self._live_loops

    @property
    def max_live_loops(self) -> int:
        """Highest number of loops ever alive at once (1 unless something is wrong)."""
        with self._live_lock:
            return self._max_live_loops

    def start(self, config_provider: ConfigProvider, host_state_provider: HostStateProvider,
              fire_action: FireAction, log_fn: Optional[LogFn] = None, *,
              recover_config: Optional[ConfigProvider] = None,
              on_tick: Optional[TickObserver] = None) -> SchedulerHandle:
        """Start a new loop, stopping any previous one first.

        Raises ConfigurationError (and leaves any current run untouched) when no
        valid configuration can be obtained. Raises RuntimeError when called from
        inside the running loop, which could not be joined before the new one starts.
        """
        current = self._handle
        if current is not None and current._thread is threading.current_thread():
            raise RuntimeError("start() cannot be called from the auto-save loop it would replace")

        with self._lock:
            config = self._initial_config(config_provider, recover_config)

            if self._handle is not None:
                self._handle.stop()

            self._run_counter += 1
            handle = SchedulerHandle(
                self._run_counter, self.clock, config_provider, host_state_provider,
                fire_action, log_fn, recover_config=recover_config, on_tick=on_tick
            )
            self._handle = handle
            handle._launch(config.interval_sec, self._loop_entered, self._loop_exited)
            return handle

    def stop(self, handle: Optional[SchedulerHandle] = None, timeout: Optional[float] = None) -> bool:
        """Stop `handle` (default: the current run) and wait for its loop to exit."""
        current = handle or self._handle
        if current is not None and current._thread is threading.current_thread():
            # From inside the save action: start() may hold the lock while joining this thread
            return current.stop(timeout)

        with self._lock:
            handle = handle or self._handle
            if handle is None:
                return True
            stopped = handle.stop(timeout)
            if stopped and handle is self._handle:
                self._handle = None
            return stopped

    def run_once(self, config_provider: ConfigProvider, host_state_provider: HostStateProvider,
                 fire_action: FireAction, log_fn: Optional[LogFn] = None) -> TickOutcome:
        """Evaluate a single tick immediately on the calling thread."""
        config = self._initial_config(config_provider, None)
        handle = SchedulerHandle(0, self.clock, config_provider, host_state_provider, fire_action, log_fn)
        handle.run_tick(config.interval_sec)
        return handle.snapshot().last_outcome

    @staticmethod
    def _initial_config(config_provider: ConfigProvider,
                        recover_config: Optional[ConfigProvider]) -> AutoSaveConfig:
        last_error: Optional[Exception] = None
        for provider in (config_provider, recover_config):
            if provider is None:
                continue
            try:
                config = provider()
            except Exception as e:
                logger.warning(f"Config provider failed: {e}")
                last_error = e
                continue
            if config is not None:
                return config.validate()
        raise ConfigurationError("No auto-save configuration available") from last_error

    def _loop_entered(self):
        with self._live_lock:
            self._live_loops += 1
            self._max_live_loops = max(self._max_live_loops, self._live_loops)

    def _loop_exited(self):
        with self._live_lock:
            self._live_loops -= 1
