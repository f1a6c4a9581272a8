# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class Status(str, Enum):
    """Lifecycle of a JobInstance. Transitions are owned by the orchestrator."""
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({Status.SUCCEEDED, Status.FAILED, Status.SKIPPED, Status.CANCELLED})

# Statuses that satisfy a dependency edge
SATISFYING_STATUSES = frozenset({Status.SUCCEEDED, Status.SKIPPED})


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    """What a step action hands back to the executor."""
    status: StepStatus
    outputs: Dict[str, str] = field(default_factory=dict)
    reason: str = ""
    exit_code: Optional[int] = None

    @classmethod
    def ok(cls, **outputs: Any) -> StepResult:
        return cls(StepStatus.SUCCEEDED, {k: str(v) for k, v in outputs.items()})

    @classmethod
    def fail(cls, reason: str, **outputs: Any) -> StepResult:
        return cls(StepStatus.FAILED, {k: str(v) for k, v in outputs.items()}, reason)


@dataclass(frozen=True)
class Step:
    """
    A single unit inside a job.

    `action` is opaque to the engine: anything with execute(ctx) -> StepResult.
    `condition` is an expression (see conditions.py); None means success().
    `id` names the step for `steps.<id>.outputs.<name>` references.
    """
    name: str
    action: Any
    id: Optional[str] = None
    condition: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    outputs: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return self.id or self.name


@dataclass
class StepOutcome:
    name: str
    status: StepStatus
    id: Optional[str] = None
    reason: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    start_time: Optional[float] = None
    end_time: Optional[float] = None


@dataclass(frozen=True)
class CacheSpec:
    """
    (primary key, ordered fallback prefixes, path set).

    Keys may contain ${{ }} expressions; they are rendered when the cache
    step runs, so they can reference matrix values and earlier step outputs.
    """
    key: str
    restore_keys: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResourceScope:
    """
    A named lease scope over one ephemeral external resource.

    slots bounds how many jobs may use the resource at the same time
    (1 = mutual exclusion among jobs sharing the scope).
    """
    name: str
    provider: Any
    params: Mapping[str, Any] = field(default_factory=dict)
    slots: int = 1


@dataclass(frozen=True)
class JobTemplate:
    """
    A named unit of work, immutable once declared.

    needs:     names of templates that must finish before this one
    when:      instantiation predicate over the run context (run.*, env.*)
    condition: job-level predicate evaluated when dependencies are terminal
    requires:  requirement tags used to pick a compute target
    lease:     name of the ResourceScope this job runs on
    outputs:   job output name -> expression evaluated after the steps
    paths:     changed-file globs; no match means the template is gated out
    """
    name: str
    steps: Tuple[Step, ...]
    matrix: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    exclude: Tuple[Mapping[str, Any], ...] = ()
    needs: Tuple[str, ...] = ()
    when: Optional[str] = None
    condition: Optional[str] = None
    requires: Tuple[str, ...] = ()
    lease: Optional[str] = None
    outputs: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    paths: Optional[Tuple[str, ...]] = None
    display_name: Optional[str] = None


@dataclass
class JobInstance:
    """One point of a template's matrix cross-product."""
    index: int
    template: JobTemplate
    label: str = ""
    bindings: Dict[str, Any] = field(default_factory=dict)
    deps: Tuple[int, ...] = ()
    status: Status = Status.PENDING
    cause: Optional[str] = None
    target: str = "local"
    step_outcomes: List[StepOutcome] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def instance_id(self) -> str:
        if not self.label:
            return self.template.name
        return f"{self.template.name} ({self.label})"

    @property
    def display(self) -> str:
        """Human-readable name: display_name when the template has one."""
        name = self.template.display_name or self.template.name
        return f"{name} ({self.label})" if self.label else name

    def mark(self, status: Status, cause: Optional[str] = None) -> None:
        self.status = status
        if cause is not None:
            self.cause = cause
        if status == Status.RUNNING and self.start_time is None:
            self.start_time = time.time()
        if status.terminal and self.end_time is None:
            self.end_time = time.time()


@dataclass(frozen=True)
class RunContext:
    """Facts about the triggering event, visible to expressions as run.*"""
    event: str = "push"
    ref: str = ""
    branch: str = ""
    tag: str = ""
    sha: str = ""
    changed_files: Optional[Tuple[str, ...]] = None
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, str]:
        return {
            "event": self.event,
            "ref": self.ref,
            "branch": self.branch,
            "tag": self.tag,
            "sha": self.sha,
        }


@dataclass
class Workflow:
    """
    What a workflow file returns when it needs more than a list of jobs.

    targets maps a compute target label to the tags it offers.
    """
    jobs: List[JobTemplate]
    scopes: List[ResourceScope] = field(default_factory=list)
    targets: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
