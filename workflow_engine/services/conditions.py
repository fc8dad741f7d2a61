"""
Condition expressions for branching steps.

A condition is a JSON expression tree, parsed once into a small AST and then
interpreted against the execution context. Nothing in a condition is ever
executed as code.

Grammar:
    true | false
    {"path": "a.b", "op": "eq|ne|gt|gte|lt|lte|in|contains", "value": X}
    {"exists": "a.b"}
    {"all": [cond, ...]}
    {"any": [cond, ...]}
    {"not": cond}
"""

import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Tuple, Union

from workflow_engine.domain import ValidationError


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


@dataclass(frozen=True)
class Path:
    """Dotted lookup into the context."""
    parts: Tuple[str, ...]

    @classmethod
    def parse(cls, raw: Any) -> "Path":
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError(f"Condition path must be a non-empty string, got {raw!r}")
        parts = tuple(raw.split("."))
        if any(not part for part in parts):
            raise ValidationError(f"Condition path '{raw}' has an empty segment")
        return cls(parts)

    def resolve(self, context: Mapping[str, Any]) -> Any:
        value: Any = context
        for part in self.parts:
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
                value = value[int(part)]
            else:
                return MISSING
        return value

    def __str__(self) -> str:
        return ".".join(self.parts)


@dataclass(frozen=True)
class Literal:
    value: bool


@dataclass(frozen=True)
class Compare:
    path: Path
    op: str
    value: Any


@dataclass(frozen=True)
class Exists:
    path: Path


@dataclass(frozen=True)
class AllOf:
    operands: Tuple["Condition", ...]


@dataclass(frozen=True)
class AnyOf:
    operands: Tuple["Condition", ...]


@dataclass(frozen=True)
class Not:
    operand: "Condition"


Condition = Union[Literal, Compare, Exists, AllOf, AnyOf, Not]


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str) and not isinstance(item, str):
        raise TypeError("substring test needs a string")
    if not isinstance(container, (str, list, tuple, dict)):
        raise TypeError("value is not a container")
    return item in container


def _member_of(item: Any, container: Any) -> bool:
    return _contains(container, item)


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    # bool is an int subclass; never order a bool against a number
    def compare(left: Any, right: Any) -> bool:
        if isinstance(left, bool) != isinstance(right, bool):
            raise TypeError("cannot order bool against non-bool")
        return op(left, right)
    return compare


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": _ordered(operator.gt),
    "gte": _ordered(operator.ge),
    "lt": _ordered(operator.lt),
    "lte": _ordered(operator.le),
    "in": _member_of,
    "contains": _contains,
}


def parse(raw: Any) -> Condition:
    """
    Parse a JSON condition into its AST.

    Raises ValidationError describing the first malformed node.
    """
    if isinstance(raw, bool):
        return Literal(raw)

    if not isinstance(raw, Mapping):
        raise ValidationError(f"Condition must be an object or boolean, got {type(raw).__name__}")

    if "path" in raw or "op" in raw:
        op = raw.get("op")
        if op not in OPERATORS:
            raise ValidationError(
                f"Unknown condition operator {op!r}; expected one of {sorted(OPERATORS)}"
            )
        if "value" not in raw:
            raise ValidationError(f"Comparison '{op}' requires a 'value'")
        return Compare(Path.parse(raw.get("path")), op, raw["value"])

    if len(raw) != 1:
        raise ValidationError(f"Condition object must have exactly one key, got {sorted(raw)}")

    key, body = next(iter(raw.items()))

    if key == "exists":
        return Exists(Path.parse(body))

    if key in ("all", "any"):
        if not isinstance(body, list) or not body:
            raise ValidationError(f"'{key}' requires a non-empty list of conditions")
        operands = tuple(parse(item) for item in body)
        return AllOf(operands) if key == "all" else AnyOf(operands)

    if key == "not":
        return Not(parse(body))

    raise ValidationError(f"Unknown condition key '{key}'")


def evaluate(node: Condition, context: Mapping[str, Any]) -> bool:
    """Evaluate a parsed condition. Incompatible comparisons are False."""
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Exists):
        return node.path.resolve(context) is not MISSING

    if isinstance(node, Compare):
        actual = node.path.resolve(context)
        if actual is MISSING:
            return False
        try:
            return bool(OPERATORS[node.op](actual, node.value))
        except TypeError:
            return False

    if isinstance(node, AllOf):
        return all(evaluate(operand, context) for operand in node.operands)

    if isinstance(node, AnyOf):
        return any(evaluate(operand, context) for operand in node.operands)

    if isinstance(node, Not):
        return not evaluate(node.operand, context)

    raise TypeError(f"Not a condition node: {node!r}")


def check(raw: Any) -> list:
    """Return the syntax problems of a raw condition (empty if it parses)."""
    try:
        parse(raw)
    except ValidationError as e:
        return [str(e)]
    return []
