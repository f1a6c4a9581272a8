# cli.py
from __future__ import annotations

import os
import signal
import subprocess
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path

import click

from matrixci.cache import DEFAULT_CACHE_DIR
from matrixci.dag import build_plan
from matrixci.errors import ConfigurationError
from matrixci.git_facts.git import get_remote_url, run_context
from matrixci.runner import EXIT_ABORTED, EXIT_CONFIG, EXIT_FAILED, configuration_failure, load_workflow, run_dag
from matrixci.sinks import ConsoleSink, HttpSink, JsonlSink
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "matrixci_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Exits with the configuration error status if no single workflow can
    be determined.
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1 and workflow_files[0].name != DEFAULT_WORKFLOW:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _parse_pairs(pairs: tuple[str, ...], option: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint=option)
        out[key] = value
    return out


def _secrets(names: tuple[str, ...]) -> dict[str, str]:
    missing = [n for n in names if n not in os.environ]
    if missing:
        raise click.BadParameter(f"not set in the environment: {', '.join(missing)}", param_hint="--secret")
    return {n: os.environ[n] for n in names}


def _load(ctx, workflow_path: Path):
    """load_workflow with the CLI's error reporting; bad files are configuration errors."""
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[f"{type(e).__name__}: {e}"],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(EXIT_CONFIG)


def _context(event, ref, git_diff, compare_ref, env=None, secrets=None):
    console = get_console()
    try:
        return run_context(
            event=event,
            ref=ref,
            git_diff=git_diff,
            compare_ref=compare_ref,
            env=env,
            secrets=secrets,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print_error(
            "Could not compute changed files",
            "--git-diff needs a git checkout.",
            details=[str(e)],
            suggestion="Run inside a repository or pass --no-git-diff.",
        )
        sys.exit(EXIT_CONFIG)


def _repo_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


@contextmanager
def _abort_on_signals(orchestrators: list):
    """
    SIGINT/SIGTERM abort the running orchestrator instead of killing the process.

    The handler runs on the main thread between bytecodes, possibly while the
    console lock is held, so it only flags the abort and never prints.
    """

    def handler(signum, frame):
        for orch in orchestrators:
            orch.abort(f"received {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


_run_options = [
    click.option(
        "--workflow",
        default=None,
        envvar="MATRIXCI_WORKFLOW",
        help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
    ),
    click.option("--event", default="push", envvar="MATRIXCI_EVENT", show_default=True, help="Triggering event (run.event)"),
    click.option("--ref", default=None, envvar="MATRIXCI_REF", help="Git ref (defaults to the checked-out branch/tag)"),
    click.option("--git-diff/--no-git-diff", default=False, envvar="MATRIXCI_GIT_DIFF", help="Gate jobs on changed files and job paths"),
    click.option("--compare-ref", default="origin/main", envvar="MATRIXCI_COMPARE_REF", show_default=True, help="Git ref to diff against"),
]


def run_options(fn):
    for option in reversed(_run_options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    envvar="MATRIXCI_DEBUG",
    help="Enable debug mode (show stack traces and step output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print warnings, errors and results")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: matrix-expanding, dependency-aware CI orchestrator."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@run_options
@click.option("--workers", default=None, type=int, envvar="MATRIXCI_WORKERS", help="Number of parallel workers")
@click.option("--workspace", default=".", type=click.Path(file_okay=False), help="Directory steps run in")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, envvar="MATRIXCI_CACHE_DIR", show_default=True, help="Cache directory")
@click.option("--no-cache", is_flag=True, default=False, help="Disable cache restore/save")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Stop scheduling new jobs after the first failure")
@click.option("--env", "env_pairs", multiple=True, metavar="KEY=VALUE", help="Run-level env (env.*)")
@click.option("--secret", "secret_names", multiple=True, metavar="NAME", help="Pass an environment variable as a secret")
@click.option("--records", default=None, envvar="MATRIXCI_RECORDS", type=click.Path(dir_okay=False), help="Append job records as JSON lines")
@click.option("--sink-url", default=None, envvar="MATRIXCI_SINK_URL", help="POST job records to <url>/records")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the execution plan first")
@click.pass_context
def run(ctx, workflow, event, ref, git_diff, compare_ref, workers, workspace, cache_dir, no_cache,
        fail_fast, env_pairs, secret_names, records, sink_url, print_plan):
    """Run a matrixci workflow."""
    console = get_console()
    env = _parse_pairs(env_pairs, "--env")
    secrets = _secrets(secret_names)

    workflow_path = discover_workflow(workflow)
    loaded = _load(ctx, workflow_path)
    context = _context(event, ref, git_diff, compare_ref, env=env, secrets=secrets)

    sinks: list = [ConsoleSink()]
    if records:
        sinks.append(JsonlSink(records))
    if sink_url:
        sinks.append(HttpSink(sink_url, run_id=uuid.uuid4().hex))

    orchestrators: list = []
    try:
        plan = build_plan(loaded.jobs, context, scopes=loaded.scopes, targets=loaded.targets)
        console.print_run_started(
            repository=_repo_name(),
            workflow=workflow_path.name,
            job_count=len(loaded.jobs),
            instance_count=len(plan),
        )
        with _abort_on_signals(orchestrators):
            report = run_dag(
                loaded,
                context=context,
                workspace=workspace,
                cache_root=None if no_cache else cache_dir,
                max_workers=workers,
                sinks=sinks,
                fail_fast=fail_fast,
                print_plan=print_plan,
                orchestrator_hook=orchestrators.append,
                plan=plan,
            )
    except ConfigurationError as e:
        report = configuration_failure(e)
        console.print_error("Invalid workflow", str(e), suggestion="Fix the workflow and run again.")
        console.print_info(f"OUTCOME: {report.outcome.upper()} (exit {report.exit_code})")
        sys.exit(report.exit_code)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_ABORTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(report)
    sys.exit(report.exit_code)


@cli.command()
@run_options
@click.pass_context
def plan(ctx, workflow, event, ref, git_diff, compare_ref):
    """Validate a workflow and print its execution plan without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    loaded = _load(ctx, workflow_path)
    context = _context(event, ref, git_diff, compare_ref)

    try:
        execution_plan = build_plan(loaded.jobs, context, scopes=loaded.scopes, targets=loaded.targets)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG)

    console.print_info(
        f"{workflow_path.name}: {len(loaded.jobs)} job(s), {len(execution_plan)} instance(s), "
        f"{len(execution_plan.levels)} stage(s)"
    )
    console.print_plan(execution_plan)


if __name__ == "__main__":
    cli()
