from .dsl import (
    JobBuilder, always, branch, build, cache_step, call, cancelled, event,
    failure, job, matrix, not_, scope, sh, success, tag, wf,
)
from .errors import CIError, ConfigurationError, ResourceUnavailable, StepFailure
from .leases import CallableProvider, CommandProvider
from .model import JobTemplate, RunContext, Step, StepResult, Workflow
from .runner import Orchestrator, load_workflow, run_dag

__all__ = [
    "job", "sh", "call", "cache_step", "matrix", "scope", "wf", "JobBuilder", "build",
    "always", "success", "failure", "cancelled", "branch", "tag", "event", "not_",
    "run_dag", "load_workflow", "Orchestrator",
    "JobTemplate", "Step", "StepResult", "RunContext", "Workflow",
    "CallableProvider", "CommandProvider",
    "CIError", "ConfigurationError", "ResourceUnavailable", "StepFailure",
]
