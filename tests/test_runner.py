import threading
import time

import pytest

from matrixci.cache import CacheResolver, MemoryCacheBackend
from matrixci.dag import build_plan
from matrixci.dsl import always, cache_step, call, failure, job, scope, wf
from matrixci.errors import ConfigurationError
from matrixci.leases import LeaseHandle, LeaseState
from matrixci.model import RunContext
from matrixci.runner import EXIT_ABORTED, EXIT_FAILED, EXIT_OK, Orchestrator, load_workflow, run_dag
from matrixci.sinks import CollectingSink

from helpers import FakeProvider, Recorder, boom, ok


def test_failure_cancels_dependents_transitively(tmp_path):
    report = run_dag(
        [
            job("a", boom()),
            job("b", ok("s"), needs=["a"]),
            job("c", ok("s"), needs=["a"]),
            job("d", ok("s"), needs=["b"]),
            job("independent", ok("s")),
        ],
        workspace=tmp_path,
        max_workers=2,
    )

    assert report.outcome == "failed"
    assert report.exit_code == EXIT_FAILED
    assert report.statuses() == {
        "a": "failed",
        "b": "cancelled",
        "c": "cancelled",
        "d": "cancelled",
        "independent": "succeeded",
    }
    assert report.record("b").cause == "upstream failed: a"
    assert report.record("d").cause == "upstream failed: b"
    failures = [r for r in report.records if r.cause and r.cause.startswith("StepFailure")]
    assert [r.instance_id for r in failures] == ["a"]


def test_matrix_fan_out_and_join(tmp_path):
    rec = Recorder()
    report = run_dag(
        [
            job("lint", ok("s")),
            job(
                "build",
                rec.step("compile", lambda ctx: dict(ctx.matrix)),
                needs=["lint"],
                matrix={"build_type": ["Release", "Debug"], "os": ["linux", "macos", "windows"]},
                exclude=[{"build_type": "Debug", "os": "windows"}],
            ),
            job("publish", rec.step("publish", lambda ctx: sorted(ctx.needs)), needs=["build"]),
        ],
        workspace=tmp_path,
        max_workers=4,
    )

    assert report.exit_code == EXIT_OK
    assert len(report.records) == 7
    assert all(r.status == "succeeded" for r in report.records)
    builds = [s for s in rec.seen if isinstance(s, dict)]
    assert len(builds) == 5
    assert {"build_type": "Debug", "os": "windows"} not in builds
    # publish ran last and saw every build
    assert rec.seen[-1] == ["build"]
    publish = report.record("publish")
    assert all(publish.start_time >= report.record(b.instance_id).end_time
               for b in report.records if b.template == "build")


def test_always_dependent_runs_after_failure(tmp_path):
    rec = Recorder()
    report = run_dag(
        [
            job("a", boom()),
            job("cleanup", rec.step("stop", lambda ctx: ctx.needs["a"]["result"]), needs=["a"], condition=always()),
            job("on_failure", ok("s"), needs=["a"], condition=failure()),
        ],
        workspace=tmp_path,
    )

    assert report.record("cleanup").status == "succeeded"
    assert report.record("on_failure").status == "succeeded"
    assert rec.seen == ["failed"]
    assert report.outcome == "failed"


def test_false_condition_without_failure_is_skipped(tmp_path):
    report = run_dag(
        [
            job("a", ok("s")),
            job("on_failure", ok("s"), needs=["a"], condition=failure()),
            job("after", ok("s"), needs=["on_failure"]),
        ],
        workspace=tmp_path,
    )

    assert report.record("on_failure").status == "skipped"
    assert report.record("on_failure").cause.startswith("condition false")
    # skipped satisfies the edge
    assert report.record("after").status == "succeeded"
    assert report.exit_code == EXIT_OK


def test_gated_out_template_satisfies_dependents(tmp_path):
    report = run_dag(
        [
            job("deploy", ok("s"), when="run.branch == 'master'"),
            job("notify", ok("s"), needs=["deploy"]),
        ],
        context=RunContext(branch="feature/x"),
        workspace=tmp_path,
    )

    assert report.record("deploy").status == "skipped"
    assert report.record("deploy").cause.startswith("not instantiated")
    assert report.record("notify").status == "succeeded"


def test_job_outputs_flow_through_needs(tmp_path):
    rec = Recorder()
    report = run_dag(
        [
            job("start", ok("launch", id="ec2", label="runner-42"), outputs={"label": "steps.ec2.outputs.label"}),
            job(
                "build",
                rec.step("where", lambda ctx: ctx.render("${{ needs.start.outputs.label }}")),
                needs=["start"],
                condition="needs.start.outputs.label != ''",
            ),
        ],
        workspace=tmp_path,
    )

    assert report.exit_code == EXIT_OK
    assert report.record("start").outputs == {"label": "runner-42"}
    assert rec.seen == ["runner-42"]


def test_lease_is_acquired_once_and_released_once(tmp_path, provider):
    rec = Recorder()
    plan = build_plan(
        [
            job("a", rec.step("use", lambda ctx: ctx.leases["arm"].id), lease="arm",
                matrix={"shard": [1, 2, 3]}),
            job("after", ok("s"), needs=["a"]),
        ],
        scopes=[scope("arm", provider)],
    )
    orch = Orchestrator(plan, workspace=tmp_path, max_workers=3)
    report = orch.run()

    assert report.exit_code == EXIT_OK
    assert provider.acquire_calls == 1
    assert len(provider.released) == 1
    assert rec.seen == ["arm-1", "arm-1", "arm-1"]
    assert orch.leases.state("arm") == LeaseState.RELEASED
    assert report.record("a (shard=1)").target == "arm"


def test_slots_serialise_jobs_on_one_lease(tmp_path, provider):
    active = []
    peak = []
    lock = threading.Lock()

    def use(ctx):
        with lock:
            active.append(1)
            peak.append(len(active))
        time.sleep(0.05)
        with lock:
            active.pop()

    report = run_dag(
        wf(job("a", call("use", use), lease="arm", matrix={"n": [1, 2, 3, 4]}), scopes=[scope("arm", provider, slots=1)]),
        workspace=tmp_path,
        max_workers=4,
    )

    assert report.exit_code == EXIT_OK
    assert max(peak) == 1


def test_lease_released_when_leased_job_fails(tmp_path, provider):
    plan = build_plan(
        [
            job("build", boom(), lease="arm"),
            job("stop", ok("s"), needs=["build"], condition=always()),
        ],
        scopes=[scope("arm", provider)],
    )
    orch = Orchestrator(plan, workspace=tmp_path)
    report = orch.run()

    assert report.record("build").status == "failed"
    assert report.record("stop").status == "succeeded"
    assert orch.leases.state("arm") == LeaseState.RELEASED
    assert len(provider.released) == 1


def test_acquire_failure_fails_bound_jobs_only(tmp_path):
    provider = FakeProvider(fail_acquire=2)
    report = run_dag(
        wf(
            job("lint", ok("s")),
            job("build_arm", ok("s"), lease="arm", needs=["lint"]),
            job("test_arm", ok("s"), lease="arm", needs=["build_arm"]),
            job("report", ok("s"), needs=["test_arm"]),
            job("build_x86", ok("s"), needs=["lint"]),
            scopes=[scope("arm", provider)],
        ),
        workspace=tmp_path,
    )

    assert report.outcome == "failed"
    assert report.record("build_arm").status == "failed"
    assert report.record("build_arm").cause.startswith("ResourceUnavailable")
    assert report.record("test_arm").status == "failed"
    assert report.record("test_arm").cause.startswith("ResourceUnavailable")
    assert report.record("report").status == "cancelled"
    assert report.record("build_x86").status == "succeeded"
    assert provider.release_calls == 0


def test_release_failure_is_reported_as_warning(tmp_path):
    provider = FakeProvider(fail_release=2)
    plan = build_plan([job("a", ok("s"), lease="arm")], scopes=[scope("arm", provider)])
    orch = Orchestrator(plan, workspace=tmp_path)
    report = orch.run()

    assert report.outcome == "succeeded"
    assert report.exit_code == EXIT_OK
    assert len(report.warnings) == 1
    assert "CleanupFailure" in report.warnings[0]
    assert orch.leases.state("arm") == LeaseState.RELEASED


def test_abort_cancels_pending_and_releases_leases(tmp_path, provider):
    holder = {}
    rec = Recorder()

    def trip(ctx):
        holder["orch"].abort()

    plan = build_plan(
        [
            job(
                "a",
                call("trip", trip),
                rec.step("next", lambda ctx: "next"),
                rec.step("cleanup", lambda ctx: "cleanup", condition=always()),
                lease="arm",
            ),
            job("b", ok("s"), needs=["a"]),
        ],
        scopes=[scope("arm", provider)],
    )
    orch = Orchestrator(plan, workspace=tmp_path)
    holder["orch"] = orch
    report = orch.run()

    assert report.outcome == "aborted"
    assert report.exit_code == EXIT_ABORTED
    assert report.record("a").status == "cancelled"
    assert report.record("b").status == "cancelled"
    assert report.record("b").cause == "run aborted"
    assert rec.seen == ["cleanup"]
    assert len(provider.released) == 1


def test_abort_while_lease_is_acquiring_still_releases_it(tmp_path):
    holder = {}
    released = []
    rec = Recorder()

    class AbortingProvider:
        def acquire(self, scope):
            assert holder["orch"].leases.state(scope.name) == LeaseState.ACQUIRING
            holder["orch"].abort()
            return LeaseHandle(scope.name, "i-1")

        def release(self, handle):
            released.append(handle.id)

    plan = build_plan(
        [job("a", rec.step("use"), lease="arm"), job("b", ok("s"), needs=["a"])],
        scopes=[scope("arm", AbortingProvider())],
    )
    orch = Orchestrator(plan, workspace=tmp_path)
    holder["orch"] = orch
    report = orch.run()

    assert report.outcome == "aborted"
    assert rec.seen == []
    assert report.record("a").status == "cancelled"
    assert report.record("a").cause == "run aborted"
    assert report.record("b").status == "cancelled"
    assert orch.leases.states() == {"arm": LeaseState.RELEASED}
    assert released == ["i-1"]


def test_independent_matrix_instances_run_concurrently(tmp_path):
    # all six instances must be inside the step at once to pass the barrier
    barrier = threading.Barrier(6, timeout=5)
    active = []
    peak = []
    lock = threading.Lock()

    def meet(ctx):
        with lock:
            active.append(ctx.instance_id)
            peak.append(len(active))
        barrier.wait()
        with lock:
            active.remove(ctx.instance_id)

    plan = build_plan([job("t", call("meet", meet), matrix={"os": ["linux", "macos"], "py": [1, 2, 3]})])
    assert plan.levels == [[0, 1, 2, 3, 4, 5]]

    report = Orchestrator(plan, workspace=tmp_path, max_workers=6).run()

    assert report.exit_code == EXIT_OK
    assert len(report.records) == 6
    assert max(peak) == 6


def test_fail_fast_stops_new_work(tmp_path):
    report = run_dag(
        [
            job("a", boom()),
            job("b", ok("s"), needs=["a"], condition=always()),
        ],
        workspace=tmp_path,
        fail_fast=True,
    )

    assert report.record("b").status == "cancelled"
    assert report.record("b").cause == "fail-fast: a failed"
    assert report.exit_code == EXIT_FAILED


def test_run_dag_uses_a_prebuilt_plan(tmp_path):
    jobs = [job("a", ok("s")), job("b", ok("s"), needs=["a"])]
    plan = build_plan(jobs)

    report = run_dag(jobs, workspace=tmp_path, plan=plan)

    assert report.exit_code == EXIT_OK
    assert [inst.status.value for inst in plan] == ["succeeded", "succeeded"]


def test_every_terminal_instance_reaches_sinks(tmp_path):
    sink = CollectingSink()
    report = run_dag(
        [
            job("a", boom()),
            job("b", ok("s"), needs=["a"]),
            job("c", ok("s"), matrix={"n": [1, 2]}),
            job("gated", ok("s"), when="run.event == 'tag'"),
        ],
        workspace=tmp_path,
        sinks=[sink],
    )

    assert sorted(r.instance_id for r in sink.records) == sorted(report.statuses())
    assert len(sink.records) == 5


def test_failing_sink_does_not_fail_the_run(tmp_path):
    class Broken:
        def emit(self, record):
            raise RuntimeError("sink down")

    report = run_dag([job("a", ok("s"))], workspace=tmp_path, sinks=[Broken()])
    assert report.exit_code == EXIT_OK
    assert any("sink down" in w for w in report.warnings)


def test_converging_cache_keys_are_saved_once(tmp_path):
    cache = CacheResolver(MemoryCacheBackend())

    def produce(ctx):
        (ctx.workspace / "deps").mkdir(exist_ok=True)
        (ctx.workspace / "deps" / f"{ctx.matrix['os']}.txt").write_text("x")

    t = job(
        "build",
        cache_step("deps", key="deps-${{ run.sha }}", path="deps"),
        call("install", produce),
        matrix={"os": ["linux", "macos", "windows"]},
    )
    report = run_dag([t], context=RunContext(sha="lockhash"), workspace=tmp_path, cache=cache, max_workers=3)

    assert report.exit_code == EXIT_OK
    assert cache.backend.keys() == ["deps-lockhash"]


def test_configuration_error_raised_before_anything_runs(tmp_path):
    rec = Recorder()
    with pytest.raises(ConfigurationError, match="dependency cycle"):
        run_dag(
            [job("a", rec.step("s"), needs=["b"]), job("b", rec.step("s"), needs=["a"]), job("c", rec.step("s"))],
            workspace=tmp_path,
        )
    assert rec.seen == []


def test_load_workflow_variants(tmp_path):
    fn_style = tmp_path / "fn_workflow.py"
    fn_style.write_text(
        "from matrixci.dsl import wf, job, sh\n"
        "def workflow():\n"
        "    return wf(job('a', sh('s', 'true')), job('b', sh('s', 'true'), needs=['a']))\n"
    )
    jobs_style = tmp_path / "jobs_workflow.py"
    jobs_style.write_text(
        "from matrixci.dsl import job, scope, sh\n"
        "from matrixci.leases import CallableProvider\n"
        "SCOPES = [scope('arm', CallableProvider(lambda s: 'i-1', lambda h: None))]\n"
        "JOBS = [job('a', sh('s', 'true'), lease='arm')]\n"
    )
    bad = tmp_path / "bad_workflow.py"
    bad.write_text("JOBS = ['not a job']\n")

    assert [j.name for j in load_workflow(fn_style).jobs] == ["a", "b"]
    loaded = load_workflow(jobs_style)
    assert [s.name for s in loaded.scopes] == ["arm"]

    with pytest.raises(ConfigurationError):
        load_workflow(bad)
    with pytest.raises(ConfigurationError, match="not found"):
        load_workflow(tmp_path / "missing.py")
