import re
import threading
import time

import pytest

from autosave_core import Clock, IdleIntervalScheduler, evaluate_tick
from autosave_types import (ConfigurationError, HostState, InactivePolicy, RunState,
                            TickOutcome)
from conftest import MutableHost, Recorder, advance, make_config


def start(scheduler, config, host, recorder, **kwargs):
    provider = config if callable(config) else (lambda: config)
    handle = scheduler.start(provider, host, recorder.fire, recorder.log, **kwargs)
    assert scheduler.clock.settle()
    return handle


# --- evaluate_tick --------------------------------------------------------

@pytest.mark.parametrize("config_kwargs, host_state, expected", [
    ({}, HostState(), TickOutcome.FIRED),
    ({"enabled": False}, HostState(), TickOutcome.SKIPPED_DISABLED),
    ({"enabled": False}, HostState(executing_protected_operation=True, active=False), TickOutcome.SKIPPED_DISABLED),
    ({}, HostState(executing_protected_operation=True), TickOutcome.SKIPPED_PROTECTED),
    ({}, HostState(executing_protected_operation=True, active=False), TickOutcome.SKIPPED_PROTECTED),
    ({}, HostState(active=False), TickOutcome.SKIPPED_INACTIVE),
])
def test_evaluate_tick_guard_order(config_kwargs, host_state, expected):
    outcome, _ = evaluate_tick(make_config(**config_kwargs), host_state)
    assert outcome is expected


def test_evaluate_tick_without_config_skips():
    outcome, latch = evaluate_tick(None, HostState(), saved_while_inactive=True)
    assert outcome is TickOutcome.SKIPPED_NO_CONFIG
    assert latch is True


def test_evaluate_tick_save_once_latch():
    config = make_config(inactive_policy=InactivePolicy.SAVE_ONCE.value)
    inactive = HostState(active=False)

    outcome, latch = evaluate_tick(config, inactive, False)
    assert (outcome, latch) == (TickOutcome.FIRED, True)

    outcome, latch = evaluate_tick(config, inactive, latch)
    assert (outcome, latch) == (TickOutcome.SKIPPED_INACTIVE, True)

    outcome, latch = evaluate_tick(config, HostState(), latch)
    assert (outcome, latch) == (TickOutcome.FIRED, False)


# --- timing ---------------------------------------------------------------

def test_fires_once_per_interval(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=1), host, recorder)

    advance(clock, 1)
    assert recorder.calls == 1
    advance(clock, 1)
    assert recorder.calls == 2

    scheduler.stop(handle)


@pytest.mark.parametrize("interval", [1, 5, 60])
def test_exactly_one_evaluation_per_interval(clock, host, recorder, interval):
    ticks = []
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=interval), host, recorder,
                   on_tick=lambda run_id, tick, outcome, error: ticks.append(tick))

    advance(clock, interval - 1)
    assert ticks == []
    advance(clock, 1)
    assert ticks == [1]
    advance(clock, interval * 3, step=interval)
    assert ticks == [1, 2, 3, 4]
    assert recorder.calls == 4

    scheduler.stop(handle)


def test_disabled_never_fires(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=5, enabled=False), host, recorder)

    advance(clock, 20)

    assert recorder.calls == 0
    stats = handle.snapshot()
    assert stats.tick_count == 4
    assert stats.skip_count == 4
    assert stats.last_outcome is TickOutcome.SKIPPED_DISABLED
    scheduler.stop(handle)


def test_protected_operation_never_fires(clock, recorder):
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=1), MutableHost(protected=True), recorder)

    advance(clock, 5)

    assert recorder.calls == 0
    assert handle.snapshot().last_outcome is TickOutcome.SKIPPED_PROTECTED
    scheduler.stop(handle)


def test_inactive_host_skips_every_tick(clock, recorder):
    host = MutableHost(active=False)
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=1), host, recorder)

    advance(clock, 5)
    assert recorder.calls == 0

    host.active = True
    advance(clock, 1)
    assert recorder.calls == 1
    scheduler.stop(handle)


def test_save_once_policy_fires_once_while_inactive(clock, recorder):
    host = MutableHost(active=False)
    config = make_config(interval_sec=1, inactive_policy="save_once")
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, config, host, recorder)

    advance(clock, 4)
    assert recorder.calls == 1

    host.active = True
    advance(clock, 1)
    host.active = False
    advance(clock, 3)
    assert recorder.calls == 3
    scheduler.stop(handle)


def test_save_once_failure_is_not_retried_while_inactive(clock):
    host = MutableHost(active=False)
    recorder = Recorder(fail_on={1})
    config = make_config(interval_sec=1, inactive_policy="save_once")
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, config, host, recorder)

    advance(clock, 3)
    assert recorder.calls == 1
    assert handle.snapshot().failure_count == 1

    host.active = True
    advance(clock, 1)
    assert recorder.calls == 2
    scheduler.stop(handle)


def test_interval_change_applies_to_next_wait(clock, host, recorder):
    current = {"config": make_config(interval_sec=1)}
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, lambda: current["config"], host, recorder)

    current["config"] = make_config(interval_sec=10)
    advance(clock, 1)
    assert recorder.calls == 1

    advance(clock, 9)
    assert recorder.calls == 1
    advance(clock, 1)
    assert recorder.calls == 2
    scheduler.stop(handle)


# --- logging --------------------------------------------------------------

def test_log_line_only_when_enabled(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=1), host, recorder)
    advance(clock, 2)
    assert recorder.messages == []
    scheduler.stop(handle)

    handle = start(scheduler, make_config(interval_sec=1, log_on_save=True), host, recorder)
    advance(clock, 1)
    assert len(recorder.messages) == 1
    assert re.match(r"Auto-saved at \d{1,2}:\d{2}:\d{2}", recorder.messages[0])
    scheduler.stop(handle)


# --- errors ---------------------------------------------------------------

@pytest.mark.parametrize("config", [None, make_config(interval_sec=0), make_config(interval_sec=-5)])
def test_start_rejects_invalid_config(clock, host, recorder, config):
    scheduler = IdleIntervalScheduler(clock)
    with pytest.raises(ConfigurationError):
        scheduler.start(lambda: config, host, recorder.fire)
    assert scheduler.handle is None
    assert scheduler.live_loops == 0


def test_start_uses_recovery_when_provider_is_empty(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    handle = scheduler.start(lambda: None, host, recorder.fire,
                             recover_config=lambda: make_config(interval_sec=2))
    assert clock.settle()
    assert handle.state is RunState.RUNNING
    scheduler.stop(handle)


def test_start_recovers_when_provider_raises(clock, host, recorder):
    def locked():
        raise OSError("config file locked")

    scheduler = IdleIntervalScheduler(clock)
    handle = scheduler.start(locked, host, recorder.fire,
                             recover_config=lambda: make_config(interval_sec=1))
    assert clock.settle()
    assert handle.state is RunState.RUNNING
    scheduler.stop(handle)


def test_start_reports_raising_provider_as_configuration_error(clock, host, recorder):
    def locked():
        raise OSError("config file locked")

    scheduler = IdleIntervalScheduler(clock)
    with pytest.raises(ConfigurationError) as exc:
        scheduler.start(locked, host, recorder.fire)
    assert isinstance(exc.value.__cause__, OSError)

    with pytest.raises(ConfigurationError):
        scheduler.start(locked, host, recorder.fire, recover_config=locked)
    assert scheduler.handle is None
    assert scheduler.live_loops == 0


def test_failed_start_leaves_current_run_alone(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=1), host, recorder)

    with pytest.raises(ConfigurationError):
        scheduler.start(lambda: None, host, recorder.fire)

    assert scheduler.handle is handle
    advance(clock, 1)
    assert recorder.calls == 1
    scheduler.stop(handle)


def test_failing_save_does_not_stop_the_loop(clock, host):
    recorder = Recorder(fail_on={2})
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=1), host, recorder)

    advance(clock, 3)

    assert recorder.calls == 3
    stats = handle.snapshot()
    assert stats.fire_count == 2
    assert stats.failure_count == 1
    assert stats.last_outcome is TickOutcome.FIRED
    assert "tick 2" in stats.last_error
    assert any("disk full on call 2" in m for m in recorder.messages)
    assert handle.state is RunState.RUNNING
    scheduler.stop(handle)


def test_config_missing_on_one_tick_is_skipped(clock, host, recorder):
    config = make_config(interval_sec=1)
    outcomes = []

    def provider():
        return None if clock.monotonic() == 3 else config

    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, provider, host, recorder,
                   on_tick=lambda run_id, tick, outcome, error: outcomes.append(outcome))

    advance(clock, 4)

    assert outcomes == [TickOutcome.FIRED, TickOutcome.FIRED,
                        TickOutcome.SKIPPED_NO_CONFIG, TickOutcome.FIRED]
    assert recorder.calls == 3
    assert recorder.messages == []
    assert handle.state is RunState.RUNNING
    scheduler.stop(handle)


def test_recovery_is_tried_before_skipping(clock, host, recorder):
    config = make_config(interval_sec=1)
    recovered = []

    def recover():
        recovered.append(clock.monotonic())
        return config

    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, lambda: None if clock.monotonic() >= 1 else config, host, recorder,
                   recover_config=recover)

    advance(clock, 2)

    assert recovered == [1, 2]
    assert recorder.calls == 2
    scheduler.stop(handle)


def test_host_state_failure_skips_tick(clock, recorder):
    calls = {"n": 0}

    def flaky_host():
        calls["n"] += 1
        if calls["n"] == 1:
            raise OSError("idle timer unavailable")
        return HostState()

    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=1), flaky_host, recorder)

    advance(clock, 2)

    assert recorder.calls == 1
    assert handle.snapshot().skip_count == 1
    scheduler.stop(handle)


# --- lifecycle ------------------------------------------------------------

def test_stop_before_first_tick(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=5), host, recorder)
    assert handle.state is RunState.RUNNING
    assert scheduler.live_loops == 1

    assert scheduler.stop(handle) is True

    assert handle.state is RunState.STOPPED
    assert scheduler.live_loops == 0
    clock.advance(10)
    assert recorder.calls == 0


def test_stop_is_noop_when_not_running(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    assert scheduler.stop() is True

    handle = start(scheduler, make_config(interval_sec=1), host, recorder)
    assert scheduler.stop(handle) is True
    assert scheduler.stop(handle) is True
    assert handle.stop() is True
    assert handle.state is RunState.STOPPED


def test_no_fire_after_stop_returns(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    handle = start(scheduler, make_config(interval_sec=1), host, recorder)
    advance(clock, 2)

    scheduler.stop(handle)
    fired = recorder.calls
    for _ in range(5):
        clock.advance(1)
    assert clock.settle(timeout=0.1) is False
    assert recorder.calls == fired


def test_restart_stops_previous_run(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    first = start(scheduler, make_config(interval_sec=1), host, recorder)
    second = start(scheduler, make_config(interval_sec=1), host, recorder)

    assert first.state is RunState.STOPPED
    assert second.state is RunState.RUNNING
    assert second.run_id == first.run_id + 1
    assert scheduler.handle is second

    advance(clock, 1)
    assert recorder.calls == 1
    scheduler.stop()
    assert scheduler.handle is None


def test_rapid_start_stop_keeps_a_single_loop(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    config = make_config(interval_sec=1)

    for i in range(50):
        handle = scheduler.start(lambda: config, host, recorder.fire)
        if i % 3 == 0:
            scheduler.stop(handle)

    scheduler.stop()
    assert scheduler.max_live_loops == 1
    assert scheduler.live_loops == 0


def test_concurrent_start_stop_never_overlaps(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    config = make_config(interval_sec=1)
    errors = []

    def churn():
        try:
            for _ in range(20):
                scheduler.start(lambda: config, host, recorder.fire)
                clock.advance(1)
                scheduler.stop()
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=churn) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    scheduler.stop()
    assert scheduler.max_live_loops == 1
    assert scheduler.live_loops == 0

    fired = recorder.calls
    clock.advance(5)
    assert recorder.calls == fired


def test_stop_from_inside_save_action(clock, host):
    scheduler = IdleIntervalScheduler(clock)
    done = threading.Event()

    def fire():
        scheduler.stop()
        done.set()

    handle = scheduler.start(lambda: make_config(interval_sec=1), host, fire)
    assert clock.settle()
    clock.advance(1)

    assert done.wait(2)
    scheduler.stop(handle)
    assert handle.state is RunState.STOPPED
    assert handle.snapshot().fire_count == 1


def test_start_from_inside_save_action_is_refused(clock, host):
    scheduler = IdleIntervalScheduler(clock)
    errors = []
    done = threading.Event()

    def fire():
        try:
            scheduler.start(lambda: make_config(interval_sec=1), host, lambda: None)
        except RuntimeError as e:
            errors.append(e)
        finally:
            done.set()

    handle = scheduler.start(lambda: make_config(interval_sec=1), host, fire)
    assert clock.settle()
    clock.advance(1)

    assert done.wait(2)
    assert len(errors) == 1
    assert scheduler.handle is handle
    assert clock.settle()
    assert handle.state is RunState.RUNNING

    scheduler.stop(handle)
    assert scheduler.max_live_loops == 1


def test_real_clock_stop_interrupts_wait(host, recorder):
    scheduler = IdleIntervalScheduler(Clock())
    handle = scheduler.start(lambda: make_config(interval_sec=3600), host, recorder.fire)

    started = time.monotonic()
    scheduler.stop(handle)

    assert time.monotonic() - started < 1.0
    assert handle.state is RunState.STOPPED
    assert recorder.calls == 0


def test_run_once_fires_immediately(clock, host, recorder):
    scheduler = IdleIntervalScheduler(clock)
    outcome = scheduler.run_once(lambda: make_config(), host, recorder.fire)
    assert outcome is TickOutcome.FIRED
    assert recorder.calls == 1
    assert scheduler.handle is None


def test_run_once_reports_failure(clock, host):
    recorder = Recorder(fail_on={1})
    outcome = IdleIntervalScheduler(clock).run_once(lambda: make_config(), host, recorder.fire, recorder.log)
    assert outcome is TickOutcome.FAILED
    assert recorder.messages
