# executor.py
from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .cache import CacheResolver
from .conditions import Expression, StatusSnapshot, compile_condition, render, render_value
from .errors import StepFailure
from .model import JobInstance, RunContext, Status, Step, StepOutcome, StepResult, StepStatus
from .ui.console import get_console


def _env_key(name: str) -> str:
    return name.upper().replace("-", "_").replace(".", "_")


@dataclass
class StepContext:
    """
    What a step action sees.

    Everything here is already resolved: matrix bindings, outputs of
    earlier steps and upstream jobs, rendered env, lease handles and
    credentials.
    """
    instance_id: str
    step: Step
    matrix: Mapping[str, Any]
    values: Mapping[str, Any]
    env: Dict[str, str]
    secrets: Mapping[str, str]
    leases: Mapping[str, Any]
    workspace: Path
    cache: Optional[CacheResolver]
    target: str
    failed: bool = False
    cancelled: bool = False
    _posts: List[Tuple[str, Callable[[], Any]]] = field(default_factory=list)

    @property
    def steps(self) -> Mapping[str, Any]:
        return self.values.get("steps", {})

    @property
    def needs(self) -> Mapping[str, Any]:
        return self.values.get("needs", {})

    def snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(values=self.values, failed=self.failed, cancelled=self.cancelled)

    def render(self, text: str) -> str:
        return render(text, self.snapshot())

    @property
    def workdir(self) -> Path:
        if not self.step.cwd:
            return self.workspace
        return (self.workspace / self.render(self.step.cwd)).resolve()

    def environ(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        env["MATRIXCI"] = "true"
        env["MATRIXCI_JOB"] = self.instance_id
        env["MATRIXCI_TARGET"] = self.target
        env["MATRIXCI_WORKSPACE"] = str(self.workspace)
        for axis, value in self.matrix.items():
            env[f"MATRIXCI_MATRIX_{_env_key(axis)}"] = render_value(value)
        return env

    def log(self, stdout: str, stderr: str = "") -> None:
        console = get_console()
        for line in (stdout or "").splitlines():
            console.print_debug(f"[{self.instance_id}] {line}")
        for line in (stderr or "").splitlines():
            console.print_debug(f"[{self.instance_id}] (stderr) {line}")

    def add_post(self, name: str, fn: Callable[[], Any]) -> None:
        """Register work to run after the last step if the job has not failed."""
        self._posts.append((name, fn))


@dataclass
class JobResult:
    status: Status
    cause: Optional[str] = None
    step_outcomes: List[StepOutcome] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    failure: Optional[StepFailure] = None
    warnings: List[str] = field(default_factory=list)


class JobExecutor:
    """
    Runs one JobInstance's steps strictly in order.

    Before each step its condition is evaluated against the job's status
    so far. After a failure, only steps whose condition checks always() or
    failure() still run. If the run is aborted between steps, only
    always()/cancelled() steps run and the job ends Cancelled.
    """

    def __init__(
        self,
        *,
        workspace: str | Path = ".",
        cache: Optional[CacheResolver] = None,
        context: Optional[RunContext] = None,
        abort_event: Optional[threading.Event] = None,
    ):
        self.workspace = Path(workspace).resolve()
        self.cache = cache
        self.context = context or RunContext()
        self.abort_event = abort_event or threading.Event()

    def _base_values(
        self,
        instance: JobInstance,
        needs: Mapping[str, Any],
        leases: Mapping[str, Any],
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "matrix": dict(instance.bindings),
            "needs": dict(needs),
            "run": self.context.as_dict(),
            "job": {"name": instance.name, "id": instance.instance_id, "target": instance.target},
            "steps": {},
        }
        lease_name = instance.template.lease
        if lease_name and lease_name in leases:
            values["lease"] = leases[lease_name].as_dict()
        env = dict(self.context.env)
        values["env"] = env
        snap = StatusSnapshot(values=values)
        for k, v in instance.template.env.items():
            env[k] = render(v, snap)
        return values

    def run(
        self,
        instance: JobInstance,
        *,
        needs: Optional[Mapping[str, Any]] = None,
        leases: Optional[Mapping[str, Any]] = None,
    ) -> JobResult:
        console = get_console()
        leases = leases or {}
        result = JobResult(status=Status.RUNNING, start_time=time.time())
        values = self._base_values(instance, needs or {}, leases)
        posts: List[Tuple[str, Callable[[], Any]]] = []
        failed = False
        interrupted = False

        console.print_job_start(instance.display, instance.target)

        for step in instance.template.steps:
            aborted = self.abort_event.is_set()
            snap = StatusSnapshot(values=values, failed=failed, cancelled=aborted)

            if not compile_condition(step.condition).evaluate(snap):
                interrupted = interrupted or (aborted and not failed)
                reason = "run aborted" if aborted else ("earlier step failed" if failed else "condition false")
                console.print_step_skipped(step.name, reason)
                outcome = StepOutcome(step.name, StepStatus.SKIPPED, id=step.id, reason=reason)
                result.step_outcomes.append(outcome)
                values["steps"][step.key] = {"outputs": {}, "outcome": StepStatus.SKIPPED.value}
                continue

            step_env = dict(values["env"])
            for k, v in step.env.items():
                step_env[k] = render(v, snap)

            ctx = StepContext(
                instance_id=instance.instance_id,
                step=step,
                matrix=instance.bindings,
                values=values,
                env=step_env,
                secrets=self.context.secrets,
                leases=leases,
                workspace=self.workspace,
                cache=self.cache,
                target=instance.target,
                failed=failed,
                cancelled=aborted,
                _posts=posts,
            )

            console.print_step(step.name)
            started = time.time()
            try:
                step_result = step.action.execute(ctx)
            except Exception as e:
                step_result = StepResult.fail(f"{type(e).__name__}: {e}")

            missing = [o for o in step.outputs if o not in step_result.outputs]
            if missing and step_result.status == StepStatus.SUCCEEDED:
                step_result = StepResult.fail(
                    f"declared output(s) not set: {', '.join(missing)}", **step_result.outputs
                )

            outcome = StepOutcome(
                step.name,
                step_result.status,
                id=step.id,
                reason=step_result.reason,
                outputs=dict(step_result.outputs),
                start_time=started,
                end_time=time.time(),
            )
            result.step_outcomes.append(outcome)
            values["steps"][step.key] = {
                "outputs": dict(step_result.outputs),
                "outcome": step_result.status.value,
            }

            if step_result.status == StepStatus.FAILED:
                console.print_failure(step.name, step_result.reason, exit_code=step_result.exit_code)
                if not failed:
                    result.failure = StepFailure(
                        step_result.reason or "step failed",
                        job=instance.instance_id,
                        step=step.name,
                        exit_code=step_result.exit_code,
                    )
                failed = True

        if not failed and not interrupted:
            for name, fn in posts:
                try:
                    fn()
                except Exception as e:
                    msg = f"[{instance.instance_id}] post step '{name}' failed: {e}"
                    console.print_warning(msg)
                    result.warnings.append(msg)

        final = StatusSnapshot(values=values, failed=failed, cancelled=self.abort_event.is_set())
        for name, expr in instance.template.outputs.items():
            result.outputs[name] = render_value(Expression.parse(expr).value(final))

        if failed:
            result.status = Status.FAILED
            result.cause = result.failure.cause if result.failure else "StepFailure"
        elif interrupted:
            result.status = Status.CANCELLED
            result.cause = "run aborted"
        else:
            result.status = Status.SUCCEEDED

        result.end_time = time.time()
        console.print_job_finished(instance.display, result.status.value, result.end_time - result.start_time)
        return result
