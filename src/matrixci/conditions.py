"""
Condition expressions.

A small, side-effect free expression language used for step and job
conditions, instantiation predicates, job outputs and ${{ }} interpolation:

    success() && matrix.build_type != 'RelWithDebInfo'
    always()
    startsWith(run.ref, 'refs/tags/') || run.branch == 'master'
    steps.build_paths.outputs.BINARY

Expressions are parsed once (at plan time, so syntax errors surface before
any job starts) and evaluated against an immutable StatusSnapshot.

An expression that calls none of the status functions (success, failure,
always, cancelled) is treated as `success() && (<expr>)`.
"""
from __future__ import annotations

import operator
import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})


@dataclass(frozen=True)
class StatusSnapshot:
    """
    Everything a predicate may look at.

    failed:    an earlier step in this job failed (step scope), or a
               dependency ended Failed/Cancelled (job scope)
    cancelled: the run has been aborted
    values:    namespaces for references (matrix, steps, needs, env, run, lease)
    """
    values: Mapping[str, Any] = field(default_factory=dict)
    failed: bool = False
    cancelled: bool = False


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<num>\d+(?:\.\d+)?)
      | (?P<str>'(?:[^']|'')*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|<=|>=|&&|\|\||[<>!(),])
      | (?P<ident>[A-Za-z_][\w\-]*(?:\.[A-Za-z_*][\w\-]*)*)
    )
    """,
    re.VERBOSE,
)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ConfigurationError(
                f"invalid expression {text!r}: unexpected character at {pos}",
            )
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

class _Node:
    def value(self, snap: StatusSnapshot) -> Any:
        raise NotImplementedError

    def calls(self) -> set:
        return set()


@dataclass(frozen=True)
class _Literal(_Node):
    v: Any

    def value(self, snap: StatusSnapshot) -> Any:
        return self.v


@dataclass(frozen=True)
class _Ref(_Node):
    path: Tuple[str, ...]

    def value(self, snap: StatusSnapshot) -> Any:
        cur: Any = snap.values
        for part in self.path:
            if not isinstance(cur, Mapping):
                return None
            cur = cur.get(part)
            if cur is None:
                return None
        return cur


@dataclass(frozen=True)
class _Not(_Node):
    operand: _Node

    def value(self, snap: StatusSnapshot) -> Any:
        return not _truthy(self.operand.value(snap))

    def calls(self) -> set:
        return self.operand.calls()


@dataclass(frozen=True)
class _Logical(_Node):
    op: str
    left: _Node
    right: _Node

    def value(self, snap: StatusSnapshot) -> Any:
        lhs = self.left.value(snap)
        if self.op == "&&":
            return self.right.value(snap) if _truthy(lhs) else lhs
        return lhs if _truthy(lhs) else self.right.value(snap)

    def calls(self) -> set:
        return self.left.calls() | self.right.calls()


def _coerce(a: Any, b: Any) -> Tuple[Any, Any]:
    # matrix values may be ints while literals are strings (or the reverse)
    if type(a) is type(b) or a is None or b is None:
        return a, b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a, b
    try:
        return float(a), float(b)
    except (TypeError, ValueError):
        return _text(a), _text(b)


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        try:
            return op(a, b)
        except TypeError:
            return False
    return compare


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": _ordered(operator.lt),
    ">": _ordered(operator.gt),
    "<=": _ordered(operator.le),
    ">=": _ordered(operator.ge),
}


@dataclass(frozen=True)
class _Compare(_Node):
    op: str
    left: _Node
    right: _Node

    def value(self, snap: StatusSnapshot) -> Any:
        a, b = _coerce(self.left.value(snap), self.right.value(snap))
        return OPERATORS[self.op](a, b)

    def calls(self) -> set:
        return self.left.calls() | self.right.calls()


def _contains(haystack: Any, needle: Any) -> bool:
    if haystack is None:
        return False
    if isinstance(haystack, (list, tuple, set, frozenset)):
        return any(operator.eq(*_coerce(item, needle)) for item in haystack)
    return _text(needle) in _text(haystack)


FUNCTIONS: Dict[str, Tuple[int, Callable[..., Any]]] = {
    "contains": (2, _contains),
    "startsWith": (2, lambda a, b: _text(a).startswith(_text(b))),
    "endsWith": (2, lambda a, b: _text(a).endswith(_text(b))),
    "matches": (2, lambda a, b: fnmatchcase(_text(a), _text(b))),
}


@dataclass(frozen=True)
class _Call(_Node):
    name: str
    args: Tuple[_Node, ...]

    def value(self, snap: StatusSnapshot) -> Any:
        if self.name == "always":
            return True
        if self.name == "success":
            return not snap.failed and not snap.cancelled
        if self.name == "failure":
            return snap.failed
        if self.name == "cancelled":
            return snap.cancelled
        _, fn = FUNCTIONS[self.name]
        return fn(*(arg.value(snap) for arg in self.args))

    def calls(self) -> set:
        out = {self.name}
        for arg in self.args:
            out |= arg.calls()
        return out


# ---------------------------------------------------------------------
# Parser (recursive descent)
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def error(self, msg: str) -> ConfigurationError:
        return ConfigurationError(f"invalid expression {self.text!r}: {msg}")

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, value: Optional[str] = None) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise self.error("unexpected end of expression")
        if value is not None and tok[1] != value:
            raise self.error(f"expected '{value}', got '{tok[1]}'")
        self.pos += 1
        return tok

    def parse(self) -> _Node:
        if not self.tokens:
            raise self.error("empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise self.error(f"unexpected token '{self.peek()[1]}'")
        return node

    def parse_or(self) -> _Node:
        node = self.parse_and()
        while self.peek() == ("op", "||"):
            self.take()
            node = _Logical("||", node, self.parse_and())
        return node

    def parse_and(self) -> _Node:
        node = self.parse_not()
        while self.peek() == ("op", "&&"):
            self.take()
            node = _Logical("&&", node, self.parse_not())
        return node

    def parse_not(self) -> _Node:
        if self.peek() == ("op", "!"):
            self.take()
            return _Not(self.parse_not())
        return self.parse_compare()

    def parse_compare(self) -> _Node:
        node = self.parse_primary()
        tok = self.peek()
        if tok and tok[0] == "op" and tok[1] in OPERATORS:
            self.take()
            node = _Compare(tok[1], node, self.parse_primary())
        return node

    def parse_primary(self) -> _Node:
        kind, text = self.take()
        if kind == "num":
            return _Literal(float(text) if "." in text else int(text))
        if kind == "str":
            if text[0] == "'":
                return _Literal(text[1:-1].replace("''", "'"))
            return _Literal(re.sub(r"\\(.)", r"\1", text[1:-1]))
        if kind == "op" and text == "(":
            node = self.parse_or()
            self.take(")")
            return node
        if kind == "ident":
            if text == "true":
                return _Literal(True)
            if text == "false":
                return _Literal(False)
            if text == "null":
                return _Literal(None)
            if self.peek() == ("op", "("):
                return self.parse_call(text)
            return _Ref(tuple(text.split(".")))
        raise self.error(f"unexpected token '{text}'")

    def parse_call(self, name: str) -> _Node:
        self.take("(")
        args: List[_Node] = []
        if self.peek() != ("op", ")"):
            args.append(self.parse_or())
            while self.peek() == ("op", ","):
                self.take()
                args.append(self.parse_or())
        self.take(")")

        if name in STATUS_FUNCTIONS:
            if args:
                raise self.error(f"{name}() takes no arguments")
        elif name in FUNCTIONS:
            arity, _ = FUNCTIONS[name]
            if len(args) != arity:
                raise self.error(f"{name}() takes {arity} arguments, got {len(args)}")
        else:
            raise self.error(f"unknown function '{name}'")
        return _Call(name, tuple(args))


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)
_INTERP_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def _truthy(v: Any) -> bool:
    return bool(v)


def _text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


class Expression:
    """A parsed expression. Build with Expression.parse()."""

    def __init__(self, source: str, node: _Node):
        self.source = source
        self._node = node
        self.checks_status = bool(node.calls() & STATUS_FUNCTIONS)

    @staticmethod
    def parse(text: str) -> Expression:
        return _parse_cached(text)

    def value(self, snap: StatusSnapshot) -> Any:
        """Raw value, used for outputs and interpolation."""
        return self._node.value(snap)

    def evaluate(self, snap: StatusSnapshot) -> bool:
        """Boolean result as a condition (implicit success() when no status check)."""
        if not self.checks_status and (snap.failed or snap.cancelled):
            return False
        return _truthy(self._node.value(snap))

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


@lru_cache(maxsize=1024)
def _parse_cached(text: str) -> Expression:
    m = _WRAPPED_RE.match(text)
    body = m.group(1) if m else text
    return Expression(text, _Parser(body.strip()).parse())


def compile_condition(text: Optional[str]) -> Expression:
    """Parse a step/job condition; None or '' means success()."""
    if text is None or not str(text).strip():
        return Expression.parse("success()")
    return Expression.parse(str(text))


def evaluate(text: Optional[str], snap: StatusSnapshot) -> bool:
    return compile_condition(text).evaluate(snap)


def expressions_in(template: str) -> List[str]:
    """The ${{ }} bodies embedded in a string."""
    return [m.group(1).strip() for m in _INTERP_RE.finditer(template or "")]


def validate_template(template: str) -> None:
    """Parse every ${{ }} in a string so syntax errors surface at plan time."""
    for body in expressions_in(template):
        Expression.parse(body)


def render(template: str, snap: StatusSnapshot) -> str:
    """Replace every ${{ expr }} in a string with the expression's value."""
    if not template or "${{" not in template:
        return template
    return _INTERP_RE.sub(lambda m: _text(Expression.parse(m.group(1).strip()).value(snap)), template)


def render_value(v: Any) -> str:
    return _text(v)
