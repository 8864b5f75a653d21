# core/story_engine/conditions.py
"""
Guards for "if" items and choices.

A guard is a comma separated list of checks that must all hold:
    "torch"                  torch is true
    "health>50"              health is a number above 50
    "mood=happy,trust>=30"   mood is "happy" and trust is at least 30
"""

import operator
import re
from typing import Any, Callable, Optional

# Two-character operators come first so "a>=1" is not read as "a" > "=1"
_CHECK = re.compile(r"^\s*([^<>=!]+?)\s*(>=|<=|!=|>|<|=)\s*(.*?)\s*$")

_ORDERING = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}

Condition = tuple[str, str, Any]


def parse_conditions(condition_str: Optional[str]) -> list[Condition]:
    """Split a guard into (variable, operator, expected) checks. No guard means no checks."""
    conditions = []
    for part in (condition_str or "").split(","):
        part = part.strip()
        if not part:
            continue
        match = _CHECK.match(part)
        if match:
            name, op, raw = match.groups()
            conditions.append((name, op, parse_value(raw)))
        else:
            conditions.append((part, "=", True))
    return conditions


def parse_value(v: Any) -> Any:
    """'true'/'false' become booleans, numbers become int or float, anything else stays as is."""
    if not isinstance(v, str):
        return v
    lowered = v.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for number_type in (int, float):
        try:
            return number_type(v)
        except ValueError:
            pass
    return v


def match_conditions(conditions: list[Condition], variable_getter: Callable[[str], Any]) -> bool:
    return all(_holds(variable_getter(name), op, expected) for name, op, expected in conditions)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float))


def _holds(actual: Any, op: str, expected: Any) -> bool:
    if op == "=":
        return actual == expected
    if op == "!=":
        return actual != expected
    # Ordering only makes sense between numbers
    return _is_number(actual) and _is_number(expected) and _ORDERING[op](actual, expected)
