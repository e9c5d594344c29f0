"""Shared pytest fixtures for Idle Auto-Save tests.

Puts the flat top-level modules on sys.path and provides a fake clock, a
project directory with a config file, and small recording collaborators for
the scheduler.
"""

import json
import logging
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from autosave_config import AutoSaveConfig, CONFIG_FILENAME
from autosave_core import FakeClock
from autosave_types import HostState


class Recorder:
    """Thread-safe call recorder used as fire action and log function."""

    def __init__(self, fail_on=()):
        self.calls = 0
        self.messages = []
        self._fail_on = set(fail_on)
        self._lock = threading.Lock()

    def fire(self):
        with self._lock:
            self.calls += 1
            call = self.calls
        if call in self._fail_on:
            raise OSError(f"disk full on call {call}")

    def log(self, message):
        with self._lock:
            self.messages.append(message)


class MutableHost:
    """Host state provider whose flags the test can flip between ticks."""

    def __init__(self, protected=False, active=True):
        self.protected = protected
        self.active = active

    def __call__(self):
        return HostState(executing_protected_operation=self.protected, active=self.active)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def host():
    return MutableHost()


@pytest.fixture
def project_dir(tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def write_config(project_dir):
    def _write(data, relative=CONFIG_FILENAME):
        path = project_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")
        return path
    return _write


@pytest.fixture
def restore_root_logging():
    """LoggingManager replaces the root handlers; put the originals back afterwards."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_config(**overrides):
    return AutoSaveConfig(**overrides)


def advance(clock, seconds, step=1):
    """Advance fake time in steps, letting the loop finish each tick."""
    for _ in range(int(seconds // step)):
        clock.advance(step)
        assert clock.settle(), "scheduler loop did not go back to sleep"
