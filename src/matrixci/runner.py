# runner.py
from __future__ import annotations

import os
import runpy
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .cache import CacheResolver, FileCacheBackend
from .conditions import StatusSnapshot, compile_condition
from .dag import ExecutionPlan, build_plan
from .errors import ConfigurationError, ResourceUnavailable
from .executor import JobExecutor, JobResult
from .leases import LeaseManager
from .model import SATISFYING_STATUSES, JobInstance, JobTemplate, RunContext, Status, Workflow
from .sinks import JobRecord, RunReport
from .ui.console import get_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_ABORTED = 130


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[JobTemplate] | Workflow
      - JOBS = [JobTemplate, ...]   (optionally SCOPES = [...], TARGETS = {...})
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "JOBS" in globals_dict and isinstance(globals_dict["JOBS"], Workflow):
        loaded = globals_dict["JOBS"]
    elif "JOBS" in globals_dict:
        loaded = Workflow(
            jobs=list(globals_dict["JOBS"]),
            scopes=list(globals_dict.get("SCOPES", [])),
            targets=dict(globals_dict.get("TARGETS", {})),
        )

    if isinstance(loaded, list):
        loaded = Workflow(jobs=loaded)

    if not isinstance(loaded, Workflow) or not all(isinstance(j, JobTemplate) for j in loaded.jobs):
        raise ConfigurationError(
            "Workflow must return/define a list of jobs or a Workflow. "
            "Define workflow() -> wf(job(...), ...) or JOBS = [job(...), ...]."
        )

    return loaded


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------

class Orchestrator:
    """
    Scheduler + orchestrator.

    - Dispatches Ready instances to a bounded worker pool.
    - Acquires a lease scope when the first instance bound to it is Ready,
      and releases it once every instance bound to it is terminal.
    - Promotes Blocked instances when all their dependencies are terminal,
      cascading Cancelled/Skipped through the graph.
    - Owns every status transition; workers only return JobResults.
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        *,
        context: Optional[RunContext] = None,
        cache: Optional[CacheResolver] = None,
        workspace: str | Path = ".",
        max_workers: Optional[int] = None,
        sinks: Iterable[Any] = (),
        fail_fast: bool = False,
        poll_interval: float = 0.1,
    ):
        self.plan = plan
        self.context = context or RunContext()
        self.sinks = list(sinks)
        self.fail_fast = fail_fast
        self.poll_interval = poll_interval

        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers

        self._abort = threading.Event()
        self._abort_reason = "run aborted"
        self._abort_announced = False
        self.executor = JobExecutor(
            workspace=workspace,
            cache=cache,
            context=self.context,
            abort_event=self._abort,
        )

        self._halted: Optional[str] = None
        self._ready: Deque[int] = deque()
        self._warnings: List[str] = []
        self._scope_members: Dict[str, List[int]] = {name: [] for name in plan.scopes}
        for inst in plan:
            if inst.template.lease:
                self._scope_members[inst.template.lease].append(inst.index)

        self.leases = LeaseManager(plan.scopes)

    # ---- control ----

    def abort(self, reason: Optional[str] = None) -> None:
        """
        Stop dispatching; in-flight jobs stop after their current step.

        Safe to call from a signal handler: it only sets a flag. The
        scheduler loop reports the abort.
        """
        if reason:
            self._abort_reason = reason
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    # ---- values visible to job conditions / steps ----

    def _needs_values(self, inst: JobInstance) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for need in inst.template.needs:
            ups = [self.plan[d] for d in inst.deps if self.plan[d].name == need]
            statuses = {u.status for u in ups}
            if Status.FAILED in statuses:
                result = Status.FAILED
            elif Status.CANCELLED in statuses:
                result = Status.CANCELLED
            elif statuses and statuses <= {Status.SKIPPED}:
                result = Status.SKIPPED
            else:
                result = Status.SUCCEEDED
            outputs: Dict[str, str] = {}
            for u in ups:
                outputs.update(u.outputs)
            out[need] = {"result": result.value, "outputs": outputs}
        return out

    def _job_snapshot(self, inst: JobInstance, upstream_failed: bool) -> StatusSnapshot:
        values = {
            "matrix": dict(inst.bindings),
            "needs": self._needs_values(inst),
            "run": self.context.as_dict(),
            "env": dict(self.context.env),
        }
        return StatusSnapshot(values=values, failed=upstream_failed, cancelled=self.aborted)

    # ---- transitions ----

    def _emit(self, inst: JobInstance) -> None:
        record = JobRecord.from_instance(inst)
        for sink in self.sinks:
            try:
                sink.emit(record)
            except Exception as e:
                msg = f"sink {type(sink).__name__} rejected record for {inst.instance_id}: {e}"
                get_console().print_warning(msg)
                self._warnings.append(msg)

    def _conclude(self, inst: JobInstance, status: Status, cause: Optional[str] = None) -> None:
        self._conclude_all([(inst, status, cause)])

    def _conclude_all(self, items: Iterable[Tuple[JobInstance, Status, Optional[str]]]) -> None:
        """
        Move instances to terminal states and settle everything that follows.

        The given items are applied before any transition they cause.
        """
        pending: Deque[Tuple[JobInstance, Status, Optional[str]]] = deque(items)

        while pending:
            cur, st, why = pending.popleft()
            if cur.status.terminal:
                continue
            if cur.status != Status.RUNNING:
                get_console().print_job_transition(cur.instance_id, st.value, why or "")
            cur.mark(st, why)
            self._emit(cur)

            if st == Status.FAILED and self.fail_fast and self._halted is None:
                self._halted = f"fail-fast: {cur.instance_id} failed"

            self._maybe_release(cur.template.lease)

            for d in self.plan.dependents[cur.index]:
                nxt = self._promote(self.plan[d])
                if nxt is not None:
                    pending.append((self.plan[d], *nxt))

    def _settle_initial(self, inst: JobInstance) -> None:
        """Instances that were terminal at plan time (gated out) still feed their dependents."""
        self._emit(inst)
        for d in self.plan.dependents[inst.index]:
            nxt = self._promote(self.plan[d])
            if nxt is not None:
                self._conclude(self.plan[d], *nxt)

    def _promote(self, dep: JobInstance) -> Optional[Tuple[Status, Optional[str]]]:
        """
        Re-evaluate a Blocked instance once its dependencies are all terminal.

        Returns the terminal transition to apply, or None (still blocked or
        promoted to Ready).
        """
        if dep.status != Status.BLOCKED:
            return None
        if any(not self.plan[u].status.terminal for u in dep.deps):
            return None
        if self._halted is not None or self.aborted:
            return None

        failed_ups = [
            self.plan[u].instance_id
            for u in dep.deps
            if self.plan[u].status not in SATISFYING_STATUSES
        ]
        snap = self._job_snapshot(dep, upstream_failed=bool(failed_ups))
        if compile_condition(dep.template.condition).evaluate(snap):
            dep.mark(Status.READY)
            self._ready.append(dep.index)
            return None
        if failed_ups:
            return Status.CANCELLED, f"upstream failed: {', '.join(failed_ups)}"
        return Status.SKIPPED, f"condition false: {dep.template.condition}"

    def _maybe_release(self, scope: Optional[str]) -> None:
        if not scope:
            return
        if all(self.plan[j].status.terminal for j in self._scope_members[scope]):
            failure = self.leases.release(scope)
            if failure is not None:
                self._warnings.append(str(failure))

    # ---- dispatch ----

    def _dispatch(
        self,
        jobs: ThreadPoolExecutor,
        lease_pool: ThreadPoolExecutor,
        in_flight: Dict[Future, Tuple[str, Any]],
    ) -> None:
        waiting: Deque[int] = deque()
        running = sum(1 for kind, _ in in_flight.values() if kind == "job")

        while self._ready:
            i = self._ready.popleft()
            inst = self.plan[i]
            if inst.status != Status.READY:
                continue
            if running >= self.max_workers:
                waiting.append(i)
                continue

            scope = inst.template.lease
            if scope:
                if self.leases.begin_acquire(scope):
                    fut = lease_pool.submit(self.leases.acquire, scope)
                    in_flight[fut] = ("acquire", scope)
                if not self.leases.claim_slot(scope):
                    waiting.append(i)
                    continue

            leases = {}
            if scope:
                leases[scope] = self.leases.handle(scope)
            inst.mark(Status.RUNNING)
            fut = jobs.submit(self.executor.run, inst, needs=self._needs_values(inst), leases=leases)
            in_flight[fut] = ("job", i)
            running += 1

        self._ready.extend(waiting)

    def _on_job_done(self, i: int, fut: Future) -> None:
        inst = self.plan[i]
        try:
            result: JobResult = fut.result()
        except Exception as e:
            # executor.run turns step errors into results; this is an engine fault
            result = JobResult(status=Status.FAILED, cause=f"internal error: {type(e).__name__}: {e}")

        inst.step_outcomes = result.step_outcomes
        inst.outputs = result.outputs
        if result.start_time is not None:
            inst.start_time = result.start_time
        self._warnings.extend(result.warnings)
        if inst.template.lease:
            self.leases.free_slot(inst.template.lease)
        self._conclude(inst, result.status, result.cause)

    def _on_acquired(self, scope: str, fut: Future) -> None:
        try:
            fut.result()
        except ResourceUnavailable as e:
            self._conclude_all(
                (self.plan[j], Status.FAILED, e.cause)
                for j in self._scope_members[scope]
                if not self.plan[j].status.terminal
            )
            return
        # everything bound to the scope may have concluded while we waited
        self._maybe_release(scope)

    # ---- main loop ----

    def run(self) -> RunReport:
        started = datetime.now(timezone.utc)
        lease_workers = max(1, len(self.plan.scopes))

        with self.leases:
            with ThreadPoolExecutor(max_workers=self.max_workers) as jobs, \
                    ThreadPoolExecutor(max_workers=lease_workers) as lease_pool:
                for inst in self.plan:
                    if inst.status.terminal:
                        self._settle_initial(inst)
                for level in self.plan.levels:
                    for i in level:
                        if self.plan[i].status == Status.READY:
                            self._ready.append(i)

                in_flight: Dict[Future, Tuple[str, Any]] = {}
                while True:
                    if self.aborted and not self._abort_announced:
                        self._abort_announced = True
                        get_console().print_info(
                            f"\n{self._abort_reason}: aborting run (in-flight steps finish first)..."
                        )
                    if self._halted is None and not self.aborted:
                        self._dispatch(jobs, lease_pool, in_flight)
                    if not in_flight:
                        break

                    done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                    for fut in done:
                        kind, ref = in_flight.pop(fut)
                        if kind == "job":
                            self._on_job_done(ref, fut)
                        else:
                            self._on_acquired(ref, fut)

            reason = "run aborted" if self.aborted else (self._halted or "not scheduled")
            self._conclude_all(
                (inst, Status.CANCELLED, reason) for inst in self.plan if not inst.status.terminal
            )
        # leaving the LeaseManager released every lease still active

        self._warnings.extend(
            str(w) for w in self.leases.warnings if str(w) not in self._warnings
        )

        if any(inst.status == Status.FAILED for inst in self.plan):
            outcome, code = "failed", EXIT_FAILED
        elif self.aborted:
            outcome, code = "aborted", EXIT_ABORTED
        else:
            outcome, code = "succeeded", EXIT_OK

        return RunReport(
            outcome=outcome,
            exit_code=code,
            records=[JobRecord.from_instance(inst) for inst in self.plan],
            warnings=list(self._warnings),
            started_at=started,
            finished_at=datetime.now(timezone.utc),
        )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def configuration_failure(error: ConfigurationError) -> RunReport:
    """Report for a run that never started."""
    now = datetime.now(timezone.utc)
    return RunReport(
        outcome="configuration_error",
        exit_code=EXIT_CONFIG,
        warnings=[str(error)],
        started_at=now,
        finished_at=now,
    )


def run_dag(
    jobs: Union[Workflow, Sequence[JobTemplate]],
    *,
    context: Optional[RunContext] = None,
    workspace: str | Path = ".",
    cache: Optional[CacheResolver] = None,
    cache_root: Optional[str | Path] = None,
    max_workers: Optional[int] = None,
    sinks: Iterable[Any] = (),
    fail_fast: bool = False,
    print_plan: bool = False,
    orchestrator_hook=None,
    plan: Optional[ExecutionPlan] = None,
) -> RunReport:
    """
    Plan and run a workflow.

    Raises ConfigurationError before anything runs if the plan is invalid.
    orchestrator_hook(orch) is called before the run starts (signal wiring).
    A plan already built from the same workflow and context may be passed
    to skip planning again.
    """
    workflow = jobs if isinstance(jobs, Workflow) else Workflow(jobs=list(jobs))
    context = context or RunContext()

    if plan is None:
        plan = build_plan(workflow.jobs, context, scopes=workflow.scopes, targets=workflow.targets)
    if print_plan:
        get_console().print_plan(plan)

    if cache is None and cache_root is not None:
        cache = CacheResolver(FileCacheBackend(cache_root))

    orch = Orchestrator(
        plan,
        context=context,
        cache=cache,
        workspace=workspace,
        max_workers=max_workers,
        sinks=sinks,
        fail_fast=fail_fast,
    )
    if orchestrator_hook is not None:
        orchestrator_hook(orch)
    return orch.run()
