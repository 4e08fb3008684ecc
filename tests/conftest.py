"""
Pytest configuration and fixtures
"""
import os
import sys
import threading
import time
from collections import Counter
from dataclasses import dataclass

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)


@dataclass
class PutCall:
    bucket: str
    key: str
    data: bytes


class FakeStore:
    """In-memory RemoteStore that records puts and can fail or block on demand."""

    def __init__(self, failures=None, gate=None):
        self.calls = []
        self.failures = list(failures or [])
        self.gate = gate
        self.entered = threading.Event()
        self.active = 0
        self.max_active = 0
        self.max_active_per_key = Counter()
        self._active_per_key = Counter()
        self._lock = threading.Lock()

    def put(self, bucket, key, body):
        data = body.read()
        with self._lock:
            self.calls.append(PutCall(bucket, key, data))
            failure = self.failures.pop(0) if self.failures else None
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self._active_per_key[key] += 1
            self.max_active_per_key[key] = max(
                self.max_active_per_key[key], self._active_per_key[key]
            )
        self.entered.set()
        try:
            if self.gate is not None:
                self.gate.wait(5)
            if failure is not None:
                raise failure
        finally:
            with self._lock:
                self.active -= 1
                self._active_per_key[key] -= 1


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wait_for():
    """Poll *predicate* until it is true or *timeout* elapses."""
    def _wait(predicate, timeout=5.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait
