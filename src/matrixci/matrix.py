# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List, Mapping

from .errors import ConfigurationError
from .model import JobTemplate


def matrix_label(bindings: Mapping[str, Any]) -> str:
    """axis=value pairs in declaration order, e.g. 'build_type=Release, os=ubuntu-18.04'."""
    return ", ".join(f"{axis}={value}" for axis, value in bindings.items())


def _validate(template: JobTemplate) -> None:
    for axis, values in template.matrix.items():
        if not list(values):
            raise ConfigurationError(
                f"matrix axis '{axis}' has no values",
                job=template.name,
            )

    for rule in template.exclude:
        if not rule:
            raise ConfigurationError("empty matrix exclude rule", job=template.name)
        for axis, value in rule.items():
            if axis not in template.matrix:
                raise ConfigurationError(
                    f"exclude references undeclared axis '{axis}'",
                    job=template.name,
                    details={"axes": sorted(template.matrix)},
                )
            if value not in list(template.matrix[axis]):
                raise ConfigurationError(
                    f"exclude references undeclared value {value!r} for axis '{axis}'",
                    job=template.name,
                    details={"values": list(template.matrix[axis])},
                )


def _excluded(bindings: Mapping[str, Any], rules) -> bool:
    return any(all(bindings[axis] == value for axis, value in rule.items()) for rule in rules)


def expand_template(template: JobTemplate) -> List[Dict[str, Any]]:
    """
    Expand a template's matrix into ordered parameter bindings.

    The result is the cross-product of all axes in declaration order minus
    any combination matched by an exclude rule. No axes -> [{}] (exactly one
    unparameterised instance).
    """
    _validate(template)

    axes = list(template.matrix.keys())
    if not axes:
        return [{}]

    combos: List[Dict[str, Any]] = []
    for values in product(*(list(template.matrix[a]) for a in axes)):
        bindings = dict(zip(axes, values))
        if _excluded(bindings, template.exclude):
            continue
        combos.append(bindings)

    if not combos:
        raise ConfigurationError("every matrix combination is excluded", job=template.name)

    labels = [matrix_label(b) for b in combos]
    if len(set(labels)) != len(labels):
        dupes = sorted({lbl for lbl in labels if labels.count(lbl) > 1})
        raise ConfigurationError(f"duplicate matrix labels: {dupes}", job=template.name)

    return combos
