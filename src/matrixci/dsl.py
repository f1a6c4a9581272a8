# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import JobTemplate, ResourceScope, Step, Workflow
from .step_workflows.cache import cache_step
from .step_workflows.call import call
from .step_workflows.shell import sh

__all__ = [
    "Condition", "JobBuilder", "always", "branch", "build", "cache_step", "call",
    "cancelled", "event", "failure", "job", "matrix", "not_", "scope", "sh",
    "success", "tag", "wf",
]


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

class Condition:
    """
    Expression builder with | (or), & (and) and ~ (not).

        branch("main") | tag("v*")
        event("push") & ~branch("wip/*")

    Anywhere a condition string is accepted, a Condition works too.
    """

    __slots__ = ("_expr",)

    def __init__(self, expr: str) -> None:
        self._expr = expr

    def __or__(self, other: Union[Condition, str]) -> Condition:
        return Condition(f"({self._expr}) || ({other})")

    def __and__(self, other: Union[Condition, str]) -> Condition:
        return Condition(f"({self._expr}) && ({other})")

    def __invert__(self) -> Condition:
        return not_(self)

    def __str__(self) -> str:
        return self._expr

    def __repr__(self) -> str:
        return f"Condition({self._expr!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Condition):
            return self._expr == other._expr
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._expr)


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _match(field: str, pattern: str) -> Condition:
    if any(ch in pattern for ch in "*?["):
        return Condition(f"matches(run.{field}, {_quote(pattern)})")
    return Condition(f"run.{field} == {_quote(pattern)}")


def branch(pattern: str) -> Condition:
    """Match the run's branch name or glob pattern."""
    return _match("branch", pattern)


def tag(pattern: str) -> Condition:
    """Match the run's tag name or glob pattern."""
    return _match("tag", pattern)


def event(type_: str) -> Condition:
    """Match the triggering event (push, pull_request, ...)."""
    return Condition(f"run.event == {_quote(type_)}")


def not_(c: Union[Condition, str]) -> Condition:
    return Condition(f"!({c})")


def success() -> Condition:
    return Condition("success()")


def failure() -> Condition:
    """Run only when something upstream (or an earlier step) failed."""
    return Condition("failure()")


def always() -> Condition:
    """Run regardless of upstream/earlier failures or cancellation."""
    return Condition("always()")


def cancelled() -> Condition:
    return Condition("cancelled()")


def _cond(value: Union[Condition, str, None]) -> Optional[str]:
    return None if value is None else str(value)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[Sequence[str]] = None,
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    exclude: Optional[Sequence[Mapping[str, Any]]] = None,
    when: Union[Condition, str, None] = None,
    condition: Union[Condition, str, None] = None,
    requires: Optional[Sequence[str]] = None,
    lease: Optional[str] = None,
    outputs: Optional[Mapping[str, str]] = None,
    env: Optional[Mapping[str, Any]] = None,
    paths: Optional[Sequence[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    display_name: Optional[str] = None,
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        matrix={axis: tuple(values) for axis, values in (matrix or {}).items()},
        exclude=tuple(dict(rule) for rule in (exclude or ())),
        needs=tuple(needs or ()),
        when=_cond(when),
        condition=_cond(condition),
        requires=tuple(requires or ()),
        lease=lease,
        outputs=dict(outputs or {}),
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        paths=tuple(paths) if paths is not None else None,
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._matrix: dict[str, tuple] = {}
        self._exclude: list[dict] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._outputs: dict[str, str] = {}
        self._paths: Optional[list[str]] = None
        self._when: Optional[str] = None
        self._condition: Optional[str] = None
        self._lease: Optional[str] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_requirements(self, *tags: str):
        self._requires.extend(tags)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_matrix(self, **axes: Iterable[Any]):
        self._matrix.update({axis: tuple(values) for axis, values in axes.items()})
        return self

    def excluding(self, **combination: Any):
        self._exclude.append(combination)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def with_paths(self, *patterns: str):
        self._paths = list(patterns)
        return self

    def only_when(self, when: Union[Condition, str]):
        self._when = str(when)
        return self

    def run_if(self, condition: Union[Condition, str]):
        self._condition = str(condition)
        return self

    def on_lease(self, scope_name: str):
        self._lease = scope_name
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return job(
            self.name,
            *self._steps,
            needs=self._needs,
            matrix=self._matrix,
            exclude=self._exclude,
            when=self._when,
            condition=self._condition,
            requires=self._requires,
            lease=self._lease,
            outputs=self._outputs,
            env=self._env,
            paths=self._paths,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix / scopes
# ---------------------------------------------------------------------

def matrix(**axes: Iterable[Any]) -> Dict[str, tuple]:
    """
    Axis declaration helper; declaration order is expansion order.

        job("build", ..., matrix=matrix(build_type=["Release", "Debug"], os=["linux", "macos"]))
    """
    return {axis: tuple(values) for axis, values in axes.items()}


def scope(name: str, provider: Any, *, slots: int = 1, **params: Any) -> ResourceScope:
    """Declare a lease scope; params are handed to the provider."""
    return ResourceScope(name=name, provider=provider, params=params, slots=slots)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: JobTemplate,
    scopes: Sequence[ResourceScope] = (),
    targets: Optional[Mapping[str, Sequence[str]]] = None,
) -> Union[List[JobTemplate], Workflow]:
    """
    Workflow definition helper.

    Users can write:
        from matrixci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))

    With scopes or targets the result is a Workflow instead of a list.
    """
    if not scopes and not targets:
        return list(jobs)
    return Workflow(
        jobs=list(jobs),
        scopes=list(scopes),
        targets={label: tuple(tags) for label, tags in (targets or {}).items()},
    )
