"""
Pytest configuration and fixtures for ikelink tests.
"""

import os
import sys
import threading
from concurrent.futures import Executor, Future

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class FakeScheduler:
    """Records armed timers instead of running them."""

    def __init__(self):
        self.armed = []  # (token, event, delay_ms), in arming order
        self.cancelled = []

    def send_delayed(self, token, event, delay_ms):
        self.armed.append((token, event, delay_ms))

    def cancel(self, token):
        self.cancelled.append(token)
        self.armed = [a for a in self.armed if a[0] is not token]

    def pending(self, token):
        return [a for a in self.armed if a[0] is token]


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class QueuedExecutor(Executor):
    """Holds submitted work until run_all() is called."""

    def __init__(self):
        self.tasks = []

    def submit(self, fn, *args, **kwargs):
        self.tasks.append((fn, args, kwargs))
        return Future()

    def run_all(self):
        tasks, self.tasks = self.tasks, []
        for fn, args, kwargs in tasks:
            fn(*args, **kwargs)


class FakeClock:
    """Millisecond clock moved by hand."""

    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, millis):
        self.now += millis


class Recorder:
    """Thread-safe list with a blocking wait."""

    def __init__(self):
        self.items = []
        self._cond = threading.Condition()

    def append(self, item):
        with self._cond:
            self.items.append(item)
            self._cond.notify_all()

    def wait_for(self, predicate, timeout=5.0):
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self.items), timeout)


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def queued_executor():
    return QueuedExecutor()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return Recorder()
