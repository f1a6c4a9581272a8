import pytest

from matrixci.conditions import StatusSnapshot, evaluate
from matrixci.dsl import always, branch, build, event, job, matrix, not_, scope, sh, tag, wf
from matrixci.model import JobTemplate, Workflow

from helpers import FakeProvider


def run_snap(**run):
    values = {"run": {"event": "push", "ref": "", "branch": "", "tag": "", "sha": ""}}
    values["run"].update(run)
    return StatusSnapshot(values=values)


def test_job_builds_an_immutable_template():
    t = job(
        "build",
        sh("configure", "cmake .."),
        sh("compile", "make", cwd="other"),
        needs=["lint"],
        matrix=matrix(build_type=["Release", "Debug"], os=["linux"]),
        exclude=[{"build_type": "Debug"}],
        env={"JOBS": 4},
        cwd="build",
        condition=always(),
    )

    assert isinstance(t, JobTemplate)
    assert t.matrix == {"build_type": ("Release", "Debug"), "os": ("linux",)}
    assert t.needs == ("lint",)
    assert t.env == {"JOBS": "4"}
    assert [s.cwd for s in t.steps] == ["build", "other"]
    assert t.condition == "always()"
    assert t.paths is None


def test_job_requires_steps():
    with pytest.raises(ValueError, match="at least one step"):
        job("empty")


def test_builder():
    t = (
        build("test")
        .depends_on("build")
        .define_step("pytest", "pytest -q", id="tests")
        .with_matrix(py=["3.11", "3.12"])
        .excluding(py="3.11")
        .with_outputs(report="steps.tests.outputs.report")
        .with_paths("src/**")
        .only_when(branch("main"))
        .on_lease("gpu")
        .build()
    )

    assert t.needs == ("build",)
    assert t.steps[0].id == "tests"
    assert t.exclude == ({"py": "3.11"},)
    assert t.paths == ("src/**",)
    assert t.lease == "gpu"
    assert t.when == "run.branch == 'main'"

    with pytest.raises(ValueError, match="has no steps"):
        build("nothing").build()


def test_condition_helpers_evaluate():
    assert evaluate(str(branch("master")), run_snap(branch="master"))
    assert not evaluate(str(branch("master")), run_snap(branch="dev"))
    assert evaluate(str(branch("release/*")), run_snap(branch="release/5.0"))
    assert evaluate(str(tag("v*") | branch("master")), run_snap(tag="v1.0"))
    assert not evaluate(str(event("push") & ~branch("wip/*")), run_snap(branch="wip/x"))
    assert evaluate(str(not_(event("pull_request"))), run_snap())


def test_quotes_are_escaped():
    assert evaluate(str(branch("it's")), run_snap(branch="it's"))


def test_wf_returns_list_or_workflow():
    a = job("a", sh("s", "true"))
    assert wf(a) == [a]

    s = scope("arm", FakeProvider(), slots=2, instance_type="r6g")
    w = wf(a, scopes=[s], targets={"linux": ["linux", "x86_64"]})
    assert isinstance(w, Workflow)
    assert w.targets == {"linux": ("linux", "x86_64")}
    assert w.scopes[0].params == {"instance_type": "r6g"}
    assert w.scopes[0].slots == 2
