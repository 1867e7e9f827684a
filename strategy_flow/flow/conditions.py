from __future__ import annotations

import logging
import math
from collections.abc import Mapping

from strategy_flow.flow.errors import ConditionEvaluationError
from strategy_flow.flow.interpolation import render_value


LOGGER = logging.getLogger(__name__)

NUMERIC_OPERATORS = {">", "<", ">=", "<="}
EQUALITY_OPERATORS = {"==", "!="}
TEXT_OPERATORS = {"contains", "startsWith", "endsWith"}
SUPPORTED_OPERATORS = NUMERIC_OPERATORS | EQUALITY_OPERATORS | TEXT_OPERATORS
OPERATOR_ALIASES = {
    "eq": "==",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "starts_with": "startsWith",
    "ends_with": "endsWith",
}

_MISSING = object()


def to_number(value: object) -> float | None:
    """Parse a value as a finite number, or return None when it is not numeric."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text or "_" in text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def resolve_operand(operand: object, variables: Mapping[str, object]) -> object:
    """Resolve a condition operand against the variable environment.

    ``$name`` (optionally dotted, ``$price.value``) names a variable; a bare
    operand is a literal unless a variable with exactly that name exists.
    A ``$`` reference to a missing variable resolves to its literal text.
    """
    if not isinstance(operand, str):
        return operand

    name = operand.strip()
    if name.startswith("$"):
        value = _lookup_path(name[1:], variables)
        if value is _MISSING:
            LOGGER.warning("Condition operand %s is not defined; using it as a literal.", name)
            return operand
        return value

    if name in variables:
        return variables[name]
    return operand


def _lookup_path(path: str, variables: Mapping[str, object]) -> object:
    if path in variables:
        return variables[path]

    parts = [part for part in path.split(".") if part]
    if not parts:
        return _MISSING

    current: object = variables
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
            continue
        if isinstance(current, list) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return _MISSING
            current = current[idx]
            continue
        return _MISSING
    return current


def loose_equals(left: object, right: object) -> bool:
    if left == right:
        return True
    return render_value(left) == render_value(right)


def evaluate_condition(left: object, operator: str, right: object) -> bool:
    op = OPERATOR_ALIASES.get(operator, operator)

    if op in NUMERIC_OPERATORS:
        left_number = to_number(left)
        right_number = to_number(right)
        if left_number is None or right_number is None:
            raise ConditionEvaluationError(
                f"Operator '{op}' requires numeric operands, got {left!r} and {right!r}."
            )
        if op == ">":
            return left_number > right_number
        if op == "<":
            return left_number < right_number
        if op == ">=":
            return left_number >= right_number
        return left_number <= right_number

    if op in EQUALITY_OPERATORS:
        left_number = to_number(left)
        right_number = to_number(right)
        if left_number is not None and right_number is not None:
            equal = left_number == right_number
        else:
            equal = loose_equals(left, right)
        return equal if op == "==" else not equal

    if op in TEXT_OPERATORS:
        left_text = render_value(left)
        right_text = render_value(right)
        if op == "contains":
            return right_text in left_text
        if op == "startsWith":
            return left_text.startswith(right_text)
        return left_text.endswith(right_text)

    raise ConditionEvaluationError(f"Unsupported condition operator '{operator}'.")
