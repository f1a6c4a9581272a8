"""
Ephemeral resource leases.

A ResourceScope names one external resource (a remote build machine, a
device farm slot, ...). The LeaseManager drives each scope through

    UNACQUIRED -> ACQUIRING -> ACTIVE -> RELEASING -> RELEASED
                           \\-> ACQUIRE_FAILED

and guarantees that every lease it acquired is released exactly once,
including when the run fails or is aborted: use it as a context manager
and the exit runs the cleanup pass.
"""
from __future__ import annotations

import os
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import CleanupFailure, ProviderError, ResourceUnavailable
from .model import ResourceScope
from .step_workflows.shell import parse_outputs
from .ui.console import get_console


class LeaseState(str, Enum):
    UNACQUIRED = "unacquired"
    ACQUIRING = "acquiring"
    ACTIVE = "active"
    RELEASING = "releasing"
    RELEASED = "released"
    ACQUIRE_FAILED = "acquire_failed"


@dataclass(frozen=True)
class LeaseHandle:
    """What a provider hands back from acquire(); passed back to release()."""
    scope: str
    id: str
    attributes: Mapping[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, str]:
        return {"handle": self.id, "id": self.id, **self.attributes}


@dataclass
class Lease:
    scope: ResourceScope
    state: LeaseState = LeaseState.UNACQUIRED
    handle: Optional[LeaseHandle] = None
    error: Optional[str] = None
    release_error: Optional[str] = None
    in_use: int = 0
    acquired_at: Optional[float] = None
    released_at: Optional[float] = None


# ---------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------

class CallableProvider:
    """Provider backed by two plain functions (handy for tests and Python workflows)."""

    def __init__(
        self,
        acquire: Callable[[ResourceScope], Any],
        release: Callable[[LeaseHandle], Any],
    ):
        self._acquire = acquire
        self._release = release

    def acquire(self, scope: ResourceScope) -> LeaseHandle:
        result = self._acquire(scope)
        if isinstance(result, LeaseHandle):
            return result
        if isinstance(result, Mapping):
            attrs = {str(k): str(v) for k, v in result.items()}
            return LeaseHandle(scope.name, attrs.get("id") or uuid.uuid4().hex, attrs)
        return LeaseHandle(scope.name, str(result) if result is not None else uuid.uuid4().hex)

    def release(self, handle: LeaseHandle) -> None:
        self._release(handle)


def _env_name(prefix: str, key: str) -> str:
    return f"{prefix}{key.upper().replace('-', '_').replace('.', '_')}"


class CommandProvider:
    """
    Provider that shells out to start/stop commands.

    The start command prints `key=value` (or `::set-output name=key::value`)
    lines; they become the handle's attributes. `id` (or the first
    attribute) is the handle id. The stop command sees every attribute as
    MATRIXCI_LEASE_<KEY>. Scope params are exported as MATRIXCI_SCOPE_<KEY>.
    """

    def __init__(self, start: str, stop: str, *, cwd: str | None = None, timeout: float | None = None):
        self.start = start
        self.stop = stop
        self.cwd = cwd
        self.timeout = timeout

    def _run(self, cmd: str, env: Mapping[str, str], scope: str) -> str:
        full_env = os.environ.copy()
        full_env.update(env)
        try:
            proc = subprocess.run(
                cmd,
                shell=True,
                cwd=self.cwd,
                env=full_env,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise ProviderError(f"command timed out after {self.timeout}s", details={"scope": scope, "cmd": cmd})
        if proc.returncode != 0:
            raise ProviderError(
                f"command exited with {proc.returncode}",
                details={"scope": scope, "cmd": cmd, "stderr": proc.stderr[-2000:]},
            )
        return proc.stdout

    def acquire(self, scope: ResourceScope) -> LeaseHandle:
        env = {_env_name("MATRIXCI_SCOPE_", k): str(v) for k, v in scope.params.items()}
        env["MATRIXCI_SCOPE"] = scope.name
        attrs = parse_outputs(self._run(self.start, env, scope.name))
        lease_id = attrs.get("id") or next(iter(attrs.values()), None) or uuid.uuid4().hex
        return LeaseHandle(scope.name, lease_id, attrs)

    def release(self, handle: LeaseHandle) -> None:
        env = {_env_name("MATRIXCI_LEASE_", k): v for k, v in handle.attributes.items()}
        env["MATRIXCI_LEASE_ID"] = handle.id
        env["MATRIXCI_SCOPE"] = handle.scope
        self._run(self.stop, env, handle.scope)


# ---------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------

class LeaseManager:
    """
    Owns every lease of a run.

    acquire() and release() retry the provider call once before giving up.
    A failed release becomes a CleanupFailure warning; it never reopens
    concluded jobs.
    """

    def __init__(self, scopes: Mapping[str, ResourceScope]):
        self._leases: Dict[str, Lease] = {name: Lease(scope) for name, scope in scopes.items()}
        self._lock = threading.Lock()
        self.warnings: List[CleanupFailure] = []

    def __enter__(self) -> LeaseManager:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    # ---- introspection ----

    def lease(self, name: str) -> Lease:
        return self._leases[name]

    def state(self, name: str) -> LeaseState:
        with self._lock:
            return self._leases[name].state

    def states(self) -> Dict[str, LeaseState]:
        with self._lock:
            return {name: lease.state for name, lease in self._leases.items()}

    def handle(self, name: str) -> Optional[LeaseHandle]:
        with self._lock:
            return self._leases[name].handle

    # ---- acquisition ----

    def begin_acquire(self, name: str) -> bool:
        """UNACQUIRED -> ACQUIRING. True if the caller must now call acquire()."""
        with self._lock:
            lease = self._leases[name]
            if lease.state != LeaseState.UNACQUIRED:
                return False
            lease.state = LeaseState.ACQUIRING
            return True

    def acquire(self, name: str) -> LeaseHandle:
        """Call the provider (one retry). Raises ResourceUnavailable on failure."""
        lease = self._leases[name]
        provider = lease.scope.provider
        console = get_console()
        last_error: Optional[Exception] = None

        for attempt in (1, 2):
            try:
                handle = provider.acquire(lease.scope)
            except Exception as e:
                last_error = e
                console.print_debug(f"lease {name}: acquire attempt {attempt} failed: {e}")
                continue
            with self._lock:
                lease.handle = handle
                lease.state = LeaseState.ACTIVE
                lease.acquired_at = time.time()
            console.print_lease(name, "acquired", handle.id)
            return handle

        with self._lock:
            lease.state = LeaseState.ACQUIRE_FAILED
            lease.error = str(last_error)
        console.print_lease(name, "acquire failed", str(last_error))
        raise ResourceUnavailable(
            f"could not acquire resource scope '{name}': {last_error}",
            details={"scope": name},
        )

    # ---- slots ----

    def claim_slot(self, name: str) -> bool:
        """Reserve one of the scope's slots for a job. Only valid while ACTIVE."""
        with self._lock:
            lease = self._leases[name]
            if lease.state != LeaseState.ACTIVE or lease.in_use >= lease.scope.slots:
                return False
            lease.in_use += 1
            return True

    def free_slot(self, name: str) -> None:
        with self._lock:
            lease = self._leases[name]
            lease.in_use = max(0, lease.in_use - 1)

    # ---- release ----

    def release(self, name: str) -> Optional[CleanupFailure]:
        """ACTIVE -> RELEASING -> RELEASED. No-op for any other state."""
        with self._lock:
            lease = self._leases[name]
            if lease.state != LeaseState.ACTIVE:
                return None
            lease.state = LeaseState.RELEASING
            handle = lease.handle

        console = get_console()
        last_error: Optional[Exception] = None
        for attempt in (1, 2):
            try:
                lease.scope.provider.release(handle)
                last_error = None
                break
            except Exception as e:
                last_error = e
                console.print_debug(f"lease {name}: release attempt {attempt} failed: {e}")

        failure: Optional[CleanupFailure] = None
        with self._lock:
            lease.state = LeaseState.RELEASED
            lease.released_at = time.time()
            if last_error is not None:
                lease.release_error = str(last_error)
                failure = CleanupFailure(
                    f"releasing resource scope '{name}' failed: {last_error}",
                    details={"scope": name, "handle": handle.id if handle else ""},
                )
                self.warnings.append(failure)

        if failure is not None:
            console.print_warning(str(failure))
        else:
            console.print_lease(name, "released", handle.id if handle else "")
        return failure

    def cleanup(self) -> List[CleanupFailure]:
        """Release every ACTIVE lease. Runs on every exit path of the run."""
        failures: List[CleanupFailure] = []
        for name, state in self.states().items():
            if state == LeaseState.ACTIVE:
                failure = self.release(name)
                if failure is not None:
                    failures.append(failure)
        return failures
