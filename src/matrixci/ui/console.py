"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..dag import ExecutionPlan
    from ..sinks import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
                   and captured step output
            quiet: If True, only print warnings, errors and the results
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count} ({instance_count} instances)",
            "",
        )

    def print_plan(self, plan: ExecutionPlan) -> None:
        """Print the execution plan, one topological stage at a time."""
        for idx, level in enumerate(plan.levels):
            self._out(f"=== Stage {idx + 1} ===")
            for i in level:
                inst = plan[i]
                deps = ", ".join(plan[d].instance_id for d in inst.deps)
                line = f"  {inst.instance_id} [{inst.status.value}]"
                if inst.template.lease:
                    line += f" lease={inst.template.lease}"
                if deps:
                    line += f" <- {deps}"
                if inst.cause:
                    line += f" ({inst.cause})"
                self._out(line)

    def print_job_start(self, name: str, target: str = "local") -> None:
        """Print job start message."""
        if not self.quiet:
            self._out(f"\nJOB STARTED: {name} (on {target})")

    def print_step(self, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"STEP: {name}")

    def print_step_skipped(self, name: str, reason: str) -> None:
        if not self.quiet:
            self._out(f"STEP SKIPPED: {name} ({reason})")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        if self.quiet:
            return
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"JOB {status.upper()}: {name}{suffix}")

    def print_job_transition(self, name: str, status: str, reason: str) -> None:
        """Jobs that end without running (skipped, cancelled, resource failure)."""
        if not self.quiet:
            self._out(f"JOB {status.upper()}: {name} ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines)

    def print_cache(self, job: str, message: str) -> None:
        """Print cache restore/save message."""
        if not self.quiet:
            self._out(f"CACHE [{job}]: {message}")

    def print_lease(self, scope: str, action: str, detail: str = "") -> None:
        """Print lease lifecycle message."""
        if self.quiet:
            return
        suffix = f" ({detail})" if detail else ""
        self._out(f"LEASE {action.upper()}: {scope}{suffix}")

    def print_results(self, report: RunReport) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for record in report.records:
            line = f"  {record.instance_id}: {record.status.upper()}"
            if record.cause and record.status != "succeeded":
                line += f" ({record.cause})"
            lines.append(line)
        for warning in report.warnings:
            lines.append(f"  WARNING: {warning}")
        lines.append(f"\nOUTCOME: {report.outcome.upper()} (exit {report.exit_code})")
        self._out(*lines)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", f"{message}"]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
