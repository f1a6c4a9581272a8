from __future__ import annotations

import threading
from typing import List

from matrixci.dsl import call
from matrixci.leases import LeaseHandle
from matrixci.model import StepResult


def ok(name: str, id: str | None = None, condition: str | None = None, **outputs):
    """A step that succeeds, optionally with outputs."""
    return call(name, lambda ctx: dict(outputs) if outputs else None, id=id, condition=condition)


def boom(name: str = "boom", condition: str | None = None):
    return call(name, lambda ctx: StepResult.fail("boom"), condition=condition)


class Recorder:
    """Collects what steps saw, from worker threads."""

    def __init__(self):
        self.seen: List = []
        self._lock = threading.Lock()

    def step(self, name: str, what=lambda ctx: ctx.instance_id, **kwargs):
        def fn(ctx):
            with self._lock:
                self.seen.append(what(ctx))
        return call(name, fn, **kwargs)


class FakeProvider:
    """Provider whose first N acquire/release attempts fail."""

    def __init__(self, fail_acquire: int = 0, fail_release: int = 0):
        self.fail_acquire = fail_acquire
        self.fail_release = fail_release
        self.acquire_calls = 0
        self.release_calls = 0
        self.acquired: List[LeaseHandle] = []
        self.released: List[LeaseHandle] = []
        self._lock = threading.Lock()

    def acquire(self, scope):
        with self._lock:
            self.acquire_calls += 1
            if self.acquire_calls <= self.fail_acquire:
                raise RuntimeError("no capacity")
            handle = LeaseHandle(scope.name, f"{scope.name}-{self.acquire_calls}", {"label": f"runner-{scope.name}"})
            self.acquired.append(handle)
            return handle

    def release(self, handle):
        with self._lock:
            self.release_calls += 1
            if self.release_calls <= self.fail_release:
                raise RuntimeError("stop failed")
            self.released.append(handle)
