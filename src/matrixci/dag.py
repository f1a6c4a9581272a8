# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from .conditions import Expression, StatusSnapshot, compile_condition, render, validate_template
from .errors import ConfigurationError
from .matrix import expand_template, matrix_label
from .model import JobInstance, JobTemplate, ResourceScope, RunContext, Status


@dataclass
class ExecutionPlan:
    """
    The DAG of JobInstances.

    Instances live in an arena (`instances`) and refer to each other by
    integer index. `dependents[i]` lists the instances that need i.
    `levels` is a topological layering: each level only depends on
    earlier ones.
    """
    instances: List[JobInstance]
    dependents: Dict[int, List[int]]
    levels: List[List[int]]
    by_template: Dict[str, List[int]]
    scopes: Dict[str, ResourceScope] = field(default_factory=dict)

    def __iter__(self) -> Iterator[JobInstance]:
        return iter(self.instances)

    def __len__(self) -> int:
        return len(self.instances)

    def __getitem__(self, index: int) -> JobInstance:
        return self.instances[index]

    def get(self, instance_id: str) -> JobInstance:
        for inst in self.instances:
            if inst.instance_id == instance_id:
                return inst
        raise KeyError(instance_id)

    def of_template(self, name: str) -> List[JobInstance]:
        return [self.instances[i] for i in self.by_template.get(name, [])]

    def edges(self) -> List[Tuple[str, str]]:
        """(upstream id, downstream id) pairs in plan order."""
        return [
            (self.instances[d].instance_id, inst.instance_id)
            for inst in self.instances
            for d in inst.deps
        ]


def topo_levels(adj: Mapping[int, Iterable[int]], indeg: Mapping[int, int]) -> List[List[int]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel. Raises ValueError on a cycle.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[int]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[int] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, ())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ValueError(remaining)

    return levels


# ----------------------------------------------------------------------
# Instantiation
# ----------------------------------------------------------------------

def _context_values(context: RunContext, bindings: Optional[Mapping] = None) -> Dict:
    return {
        "run": context.as_dict(),
        "env": dict(context.env),
        "matrix": dict(bindings or {}),
    }


def _matches_any(path: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def instantiation_gate(template: JobTemplate, context: RunContext) -> Optional[str]:
    """Return None if the template is instantiated, else the reason it is not."""
    if template.when is not None:
        expr = Expression.parse(template.when)
        if not expr.evaluate(StatusSnapshot(values=_context_values(context))):
            return f"not instantiated: when '{template.when}' is false"

    # paths filter only applies when changed files are known (git diff mode)
    if template.paths and context.changed_files is not None:
        if not any(_matches_any(f, template.paths) for f in context.changed_files):
            return f"not instantiated: no changed file matches {list(template.paths)}"

    return None


def _agrees(a: Mapping, b: Mapping) -> bool:
    shared = set(a) & set(b)
    return all(a[k] == b[k] for k in shared)


def _select_target(
    template: JobTemplate,
    bindings: Mapping,
    context: RunContext,
    targets: Optional[Mapping[str, Sequence[str]]],
) -> str:
    snap = StatusSnapshot(values=_context_values(context, bindings))
    wanted = [render(tag, snap) for tag in template.requires]

    # the leased resource is the target
    if template.lease and not wanted:
        return template.lease
    if not targets:
        return ",".join(wanted) or "local"

    for label, tags in targets.items():
        if set(wanted) <= set(tags):
            return label

    raise ConfigurationError(
        f"no compute target offers tags {wanted}",
        job=template.name,
        details={"targets": {k: list(v) for k, v in targets.items()}},
    )


def _validate_expressions(template: JobTemplate) -> None:
    if template.when is not None:
        Expression.parse(template.when)
    compile_condition(template.condition)
    for expr in template.outputs.values():
        Expression.parse(expr)
    for tag in template.requires:
        validate_template(tag)
    for value in template.env.values():
        validate_template(value)

    seen_ids: Set[str] = set()
    for step in template.steps:
        if step.id:
            if step.id in seen_ids:
                raise ConfigurationError(f"duplicate step id '{step.id}'", job=template.name)
            seen_ids.add(step.id)
        compile_condition(step.condition)
        validate_template(step.cwd or "")
        for value in step.env.values():
            validate_template(value)
        for text in getattr(step.action, "templates", lambda: [])():
            validate_template(text)


# ----------------------------------------------------------------------
# Plan building
# ----------------------------------------------------------------------

def build_plan(
    templates: Sequence[JobTemplate],
    context: Optional[RunContext] = None,
    *,
    scopes: Iterable[ResourceScope] = (),
    targets: Optional[Mapping[str, Sequence[str]]] = None,
) -> ExecutionPlan:
    """
    Expand matrices, resolve `needs` into instance edges, validate, and order.

    Raises ConfigurationError (nothing has run yet) for duplicate names,
    unknown needs or scopes, malformed matrices, bad expressions and cycles.
    """
    context = context or RunContext()
    templates = list(templates)

    names = [t.name for t in templates]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    scope_map: Dict[str, ResourceScope] = {}
    for s in scopes:
        if s.name in scope_map:
            raise ConfigurationError(f"Duplicate resource scope: {s.name}")
        if s.slots < 1:
            raise ConfigurationError(f"resource scope '{s.name}' needs at least one slot")
        scope_map[s.name] = s

    name_set = set(names)
    for t in templates:
        if not t.steps:
            raise ConfigurationError("job has no steps", job=t.name)
        for need in t.needs:
            if need not in name_set:
                raise ConfigurationError(
                    f"Job '{t.name}' needs missing job '{need}'",
                    job=t.name,
                    details={"known": sorted(name_set)},
                )
        if t.lease is not None and t.lease not in scope_map:
            raise ConfigurationError(
                f"Job '{t.name}' uses undeclared resource scope '{t.lease}'",
                job=t.name,
                details={"scopes": sorted(scope_map)},
            )
        _validate_expressions(t)

    # ---- arena ----
    instances: List[JobInstance] = []
    by_template: Dict[str, List[int]] = {}

    for t in templates:
        gate = instantiation_gate(t, context)
        combos = expand_template(t) if gate is None else [{}]
        by_template[t.name] = []
        for bindings in combos:
            inst = JobInstance(
                index=len(instances),
                template=t,
                label=matrix_label(bindings),
                bindings=dict(bindings),
            )
            if gate is not None:
                inst.mark(Status.SKIPPED, gate)
            else:
                inst.target = _select_target(t, bindings, context, targets)
            instances.append(inst)
            by_template[t.name].append(inst.index)

    # ---- edges ----
    dependents: Dict[int, List[int]] = {i.index: [] for i in instances}
    indeg: Dict[int, int] = {i.index: 0 for i in instances}

    for inst in instances:
        deps: List[int] = []
        for need in inst.template.needs:
            upstream = by_template[need]
            matched = [u for u in upstream if _agrees(instances[u].bindings, inst.bindings)]
            # no agreeing point (or nothing shared): join on every upstream instance
            for u in matched or upstream:
                if u not in deps:
                    deps.append(u)
        inst.deps = tuple(deps)
        for u in deps:
            dependents[u].append(inst.index)
            indeg[inst.index] += 1

    try:
        levels = topo_levels(dependents, indeg)
    except ValueError as e:
        stuck = [instances[i].instance_id for i in e.args[0]]
        raise ConfigurationError(
            "dependency cycle detected",
            details={"stuck": stuck},
        ) from None

    for inst in instances:
        if inst.status == Status.PENDING:
            inst.mark(Status.BLOCKED if inst.deps else Status.READY)

    return ExecutionPlan(
        instances=instances,
        dependents=dependents,
        levels=levels,
        by_template=by_template,
        scopes=scope_map,
    )
