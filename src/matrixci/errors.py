# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Optional


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the run report (every non-succeeded job names its cause)
      - debugging without full tracebacks
    """
    message: str
    job: str = ""
    step: Optional[str] = None
    details: dict = field(default_factory=dict)

    kind: ClassVar[str] = "ci_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    @property
    def cause(self) -> str:
        """One-line form used as a JobInstance cause."""
        return f"{self.kind}: {self.message}"


@dataclass
class ConfigurationError(CIError):
    """Cycle, unknown need, malformed exclude, bad expression. Nothing runs."""
    kind: ClassVar[str] = "ConfigurationError"


@dataclass
class ResourceUnavailable(CIError):
    """A lease scope could not be acquired; fails only the jobs bound to it."""
    kind: ClassVar[str] = "ResourceUnavailable"


@dataclass
class StepFailure(CIError):
    """A step failed; local to one job."""
    exit_code: Optional[int] = None

    kind: ClassVar[str] = "StepFailure"

    def __str__(self) -> str:
        code = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] step '{self.step}' failed{code}: {self.message}"


@dataclass
class CleanupFailure(CIError):
    """Releasing a lease failed. Reported as a warning, never retried further."""
    kind: ClassVar[str] = "CleanupFailure"


@dataclass
class ProviderError(CIError):
    """Raised by resource providers when acquire/release does not succeed."""
    kind: ClassVar[str] = "ProviderError"
