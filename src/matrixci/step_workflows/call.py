# step_workflows/call.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, List, Mapping, Sequence

from ..model import Step, StepResult, StepStatus

if TYPE_CHECKING:
    from ..executor import StepContext


def call(
    name: str,
    fn: Callable[[StepContext], Any],
    *,
    id: str | None = None,
    condition: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    outputs: Sequence[str] = (),
) -> Step:
    """
    Create a step that runs a Python callable.

    fn(ctx) may return a StepResult, a mapping of outputs (success),
    True/None (success) or False (failure). Exceptions fail the step.
    """
    return Step(
        name=name,
        action=CallableAction(fn),
        id=id,
        condition=condition,
        env=dict(env or {}),
        cwd=cwd,
        outputs=tuple(outputs),
    )


@dataclass(frozen=True)
class CallableAction:
    fn: Callable[[Any], Any]

    def templates(self) -> List[str]:
        return []

    def execute(self, ctx: StepContext) -> StepResult:
        result = self.fn(ctx)
        if isinstance(result, StepResult):
            return result
        if result is None or result is True:
            return StepResult(StepStatus.SUCCEEDED)
        if result is False:
            return StepResult.fail("callable returned False")
        if isinstance(result, Mapping):
            return StepResult.ok(**{str(k): v for k, v in result.items()})
        raise TypeError(f"step callable returned unsupported value: {result!r}")
