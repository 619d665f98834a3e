"""
Condition Evaluator: pure boolean evaluation of rule condition trees.

A condition tree arrives as JSON (rule row, API body, ``conditional_branch``
params) and is parsed ONCE into the sum type ``ConditionLeaf | ConditionGroup``.
Evaluation only ever walks the parsed form.

Leaf:   {"field": "payload.to", "op": "eq", "value": "stored"}
Group:  {"operator": "AND" | "OR", "conditions": [...]}

Semantics:
    - A missing field path resolves to ``UNDEFINED``; every operator, ``ne``
      included, is False against it.
    - ``eq`` / ``ne`` compare by value with a string-form fallback (5 == "5");
      arrays and objects compare element-wise with the same rule.
    - ``in`` with a scalar value is a one-element set.
    - ``contains``: case-sensitive substring on strings, membership on lists.
    - ``gt/gte/lt/lte`` coerce both sides to float; bool, None, NaN and
      non-numeric strings make the comparison False.
    - Empty AND is True, empty OR is False; groups short-circuit.

Usage:
    from wms_workflow.services.condition_evaluator import parse_condition, evaluate

    tree = parse_condition(rule.conditions, max_depth=5, max_nodes=200)
    evaluate(tree, event.to_context())
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from wms_workflow.core.exceptions import ConfigurationError, EvaluationError

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Types
# ═════════════════════════════════════════════════════════════════════════════

OPERATORS = ("eq", "ne", "gt", "gte", "lt", "lte", "in", "contains")
GROUP_OPERATORS = ("AND", "OR")

DEFAULT_MAX_DEPTH = 5
DEFAULT_MAX_NODES = 200


class _Undefined:
    """Marker for a field path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNDEFINED"

    def __bool__(self):
        return False


UNDEFINED = _Undefined()


@dataclass(frozen=True)
class ConditionLeaf:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class ConditionGroup:
    operator: str
    conditions: tuple


Condition = Union[ConditionLeaf, ConditionGroup]


# ═════════════════════════════════════════════════════════════════════════════
# Parsing (JSON → sum type)
# ═════════════════════════════════════════════════════════════════════════════

def _freeze(value):
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def parse_condition(raw, *, max_depth: int = DEFAULT_MAX_DEPTH,
                    max_nodes: int = DEFAULT_MAX_NODES,
                    path: str = "conditions") -> Condition | None:
    """Validate and convert a JSON condition tree.

    Args:
        raw: dict (leaf or group), or ``None`` / ``{}`` for "no conditions".
        max_depth: maximum node nesting, root counts as 1.
        max_nodes: maximum total node count.
        path: JSON path prefix used in error details.

    Returns:
        Parsed tree, or None when the rule has no conditions (always matches).

    Raises:
        ConfigurationError: with ``details`` keyed by the offending node's path.
    """
    if raw is None or (isinstance(raw, Mapping) and not raw):
        return None

    errors: dict[str, str] = {}
    counter = {"nodes": 0}
    tree = _parse_node(raw, path, 1, max_depth, max_nodes, counter, errors, ancestors=set())
    if errors:
        raise ConfigurationError("Invalid condition tree", details=errors)
    return tree


def _parse_node(raw, path, depth, max_depth, max_nodes, counter, errors, ancestors):
    if depth > max_depth:
        errors[path] = f"nesting deeper than {max_depth} levels"
        return None
    counter["nodes"] += 1
    if counter["nodes"] > max_nodes:
        errors[path] = f"tree exceeds {max_nodes} nodes"
        return None
    if not isinstance(raw, Mapping):
        errors[path] = "condition must be an object"
        return None
    if id(raw) in ancestors:
        errors[path] = "cyclic condition tree"
        return None

    if "operator" in raw or "conditions" in raw:
        operator = str(raw.get("operator", "AND")).upper()
        children = raw.get("conditions", [])
        if operator not in GROUP_OPERATORS:
            errors[f"{path}.operator"] = f"unknown group operator {raw.get('operator')!r}; expected AND or OR"
        if not isinstance(children, (list, tuple)):
            errors[f"{path}.conditions"] = "conditions must be a list"
            return None
        ancestors = ancestors | {id(raw)}
        parsed = []
        for i, child in enumerate(children):
            node = _parse_node(child, f"{path}.conditions[{i}]", depth + 1,
                               max_depth, max_nodes, counter, errors, ancestors)
            if counter["nodes"] > max_nodes:
                break
            parsed.append(node)
        return ConditionGroup(operator=operator, conditions=tuple(parsed))

    field = raw.get("field")
    op = raw.get("op")
    if not isinstance(field, str) or not field.strip():
        errors[f"{path}.field"] = "field is required"
    if op not in OPERATORS:
        errors[f"{path}.op"] = f"unknown operator {op!r}; expected one of {', '.join(OPERATORS)}"
    if "value" not in raw:
        errors[f"{path}.value"] = "value is required"
    return ConditionLeaf(field=(field or "").strip(), op=op, value=_freeze(raw.get("value")))


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════

def resolve_path(payload, path: str):
    """Walk a dot-path through dicts (and list indices). Missing → UNDEFINED."""
    current = payload
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return UNDEFINED
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return UNDEFINED
            current = current[idx]
        else:
            return UNDEFINED
    return current


def _to_number(value) -> float | None:
    if value is None or value is UNDEFINED or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def _equals(actual, expected) -> bool:
    if actual == expected:
        return True
    if isinstance(actual, (list, tuple)) and isinstance(expected, (list, tuple)):
        return len(actual) == len(expected) and all(map(_equals, actual, expected))
    if isinstance(actual, Mapping) and isinstance(expected, Mapping):
        return actual.keys() == expected.keys() and all(_equals(actual[k], expected[k]) for k in actual)
    if isinstance(actual, (Mapping, list, tuple)) or isinstance(expected, (Mapping, list, tuple)):
        return False
    return str(actual) == str(expected)


def _compare(op, actual, expected) -> bool:
    left, right = _to_number(actual), _to_number(expected)
    if left is None or right is None:
        return False
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    return left <= right


def _evaluate_leaf(leaf: ConditionLeaf, payload) -> bool:
    actual = resolve_path(payload, leaf.field)
    if actual is UNDEFINED:
        return False

    op, expected = leaf.op, leaf.value
    if op == "eq":
        return _equals(actual, expected)
    if op == "ne":
        return not _equals(actual, expected)
    if op in ("gt", "gte", "lt", "lte"):
        return _compare(op, actual, expected)
    if op == "in":
        options = expected if isinstance(expected, (list, tuple)) else (expected,)
        return any(_equals(actual, option) for option in options)
    if op == "contains":
        if isinstance(actual, str):
            return isinstance(expected, str) and expected in actual
        if isinstance(actual, (list, tuple)):
            return any(_equals(item, expected) for item in actual)
        return False
    raise EvaluationError(f"unknown operator {op!r}")


def evaluate(tree: Condition | None, payload) -> bool:
    """Evaluate a parsed tree against an event payload. No I/O, no state.

    ``None`` (no conditions) always matches.

    Raises:
        EvaluationError: when the payload is not a mapping.
    """
    if tree is None:
        return True
    if not isinstance(payload, Mapping):
        raise EvaluationError(f"payload must be an object, got {type(payload).__name__}")
    return _evaluate_node(tree, payload)


def _evaluate_node(node: Condition, payload) -> bool:
    if isinstance(node, ConditionLeaf):
        return _evaluate_leaf(node, payload)
    if node.operator == "AND":
        return all(_evaluate_node(child, payload) for child in node.conditions)
    return any(_evaluate_node(child, payload) for child in node.conditions)


def evaluate_raw(raw, payload, *, max_depth: int = DEFAULT_MAX_DEPTH,
                 max_nodes: int = DEFAULT_MAX_NODES) -> bool:
    """Parse and evaluate in one step (``conditional_branch`` params)."""
    return evaluate(parse_condition(raw, max_depth=max_depth, max_nodes=max_nodes), payload)
