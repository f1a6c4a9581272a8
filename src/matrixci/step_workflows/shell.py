# step_workflows/shell.py
from __future__ import annotations

import re
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence

from ..model import Step, StepResult, StepStatus

if TYPE_CHECKING:
    from ..executor import StepContext


TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "cmake": "Install CMake or fix PATH.",
    "git": "Install Git or fix PATH.",
}

_SET_OUTPUT_RE = re.compile(r"^::set-output name=([\w\-.]+)::(.*)$")
_PLAIN_OUTPUT_RE = re.compile(r"^([A-Za-z_][\w\-.]*)=(.*)$")


def parse_outputs(text: str, *, plain: bool = True) -> Dict[str, str]:
    """
    Collect outputs from command output.

    `::set-output name=KEY::value` lines are always recognised; bare
    `KEY=value` lines only when plain=True (output files, provider output).
    """
    outputs: Dict[str, str] = {}
    for line in (text or "").splitlines():
        line = line.strip()
        m = _SET_OUTPUT_RE.match(line)
        if m is None and plain:
            m = _PLAIN_OUTPUT_RE.match(line)
        if m is not None:
            outputs[m.group(1)] = m.group(2)
    return outputs


def _hint_for(cmd: str) -> Optional[str]:
    try:
        first = shlex.split(cmd)[0]
    except (ValueError, IndexError):
        return None
    return TOOL_HINTS.get(Path(first).name)


# ---------------------------------------------------------------------
# Shell step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    condition: str | None = None,
    shell: str | None = None,
    timeout: float | None = None,
    outputs: Sequence[str] = (),
) -> Step:
    """Create a shell step. `cmd` may contain ${{ }} expressions."""
    return Step(
        name=name,
        action=ShellAction(run=cmd, shell=shell, timeout=timeout),
        id=id,
        condition=condition,
        env=dict(env or {}),
        cwd=cwd,
        outputs=tuple(outputs),
    )


# ---------------------------------------------------------------------
# Shell step execution
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ShellAction:
    run: str
    shell: Optional[str] = None
    timeout: Optional[float] = None

    def templates(self) -> List[str]:
        return [self.run]

    def execute(self, ctx: StepContext) -> StepResult:
        cmd = ctx.render(self.run)
        cwd = ctx.workdir
        if not cwd.exists():
            return StepResult.fail(f"cwd not found: {cwd}")

        executable = None
        if self.shell:
            executable = shutil.which(self.shell)
            if executable is None:
                return StepResult.fail(f"shell '{self.shell}' not found on PATH")

        with tempfile.TemporaryDirectory(prefix="matrixci-") as tmp:
            output_file = Path(tmp) / "outputs"
            output_file.touch()
            env = ctx.environ()
            env["MATRIXCI_OUTPUT"] = str(output_file)

            try:
                proc = subprocess.run(
                    cmd,
                    shell=True,
                    executable=executable,
                    cwd=str(cwd),
                    env=env,
                    text=True,
                    capture_output=True,   # so you can show output on failure
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                return StepResult.fail(f"timed out after {self.timeout}s")

            outputs = parse_outputs(proc.stdout, plain=False)
            outputs.update(parse_outputs(output_file.read_text(encoding="utf-8")))

        ctx.log(proc.stdout, proc.stderr)

        if proc.returncode != 0:
            reason = f"exit code {proc.returncode}"
            tail = (proc.stderr or proc.stdout or "").strip().splitlines()[-1:]
            if tail:
                reason = f"{reason}: {tail[0]}"
            hint = _hint_for(cmd) if proc.returncode == 127 else None
            if hint:
                reason = f"{reason} (hint: {hint})"
            return StepResult(StepStatus.FAILED, outputs, reason, exit_code=proc.returncode)

        return StepResult(StepStatus.SUCCEEDED, outputs)
