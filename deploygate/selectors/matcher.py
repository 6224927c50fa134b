from __future__ import annotations

import fnmatch
import re
from datetime import datetime
from typing import Any, Dict, List

from deploygate.errors import PolicyMisconfigurationError
from deploygate.selectors.types import (
    COLUMN_OPERATORS,
    COMPARISON_OPERATORS,
    COMPARISON_TYPE,
    DATE_OPERATORS,
    DATE_TYPE,
    MAX_DEPTH,
    METADATA_OPERATORS,
    METADATA_TYPE,
    PROPERTY_CONDITION_TYPES,
    Selector,
)
from deploygate.utils.canonical import parse_ts


def _field(entity: Any, name: str) -> Any:
    if isinstance(entity, dict):
        return entity.get(name)
    return getattr(entity, name, None)


def _children(node: Dict[str, Any]) -> List[Any]:
    if "all" in node:
        children = node.get("all")
    elif "any" in node:
        children = node.get("any")
    else:
        children = node.get("conditions")
    if not isinstance(children, list):
        raise PolicyMisconfigurationError("comparison condition requires a list of conditions")
    return children


def _comparison_operator(node: Dict[str, Any]) -> str:
    if "all" in node:
        return "and"
    if "any" in node:
        return "or"
    return str(node.get("operator") or "").strip().lower()


def _is_comparison(node: Dict[str, Any]) -> bool:
    return "all" in node or "any" in node or node.get("type") == COMPARISON_TYPE


def _validate(node: Any, depth: int) -> None:
    if depth > MAX_DEPTH:
        raise PolicyMisconfigurationError(f"selector nested deeper than {MAX_DEPTH} levels")
    if not isinstance(node, dict):
        raise PolicyMisconfigurationError(f"selector condition must be an object, got {type(node).__name__}")

    if _is_comparison(node):
        operator = _comparison_operator(node)
        if operator not in COMPARISON_OPERATORS:
            raise PolicyMisconfigurationError(f"invalid comparison operator: {operator or '<missing>'}")
        for child in _children(node):
            _validate(child, depth + 1)
        return

    cond_type = str(node.get("type") or "").strip().lower()
    operator = str(node.get("operator") or "").strip().lower()
    value = node.get("value")

    if cond_type == DATE_TYPE:
        if operator not in DATE_OPERATORS:
            raise PolicyMisconfigurationError(f"invalid date operator: {operator or '<missing>'}")
        try:
            parse_ts(value)
        except (TypeError, ValueError) as exc:
            raise PolicyMisconfigurationError(f"invalid date value: {value!r}") from exc
        if value in (None, ""):
            raise PolicyMisconfigurationError("date condition requires a value")
        return

    if cond_type == METADATA_TYPE:
        key = str(node.get("key") or "").strip()
        if not key:
            raise PolicyMisconfigurationError("metadata condition requires a key")
        if operator not in METADATA_OPERATORS:
            raise PolicyMisconfigurationError(f"invalid column operator: {operator or '<missing>'}")
        if operator == "null":
            return
    elif cond_type in PROPERTY_CONDITION_TYPES:
        if operator not in COLUMN_OPERATORS:
            raise PolicyMisconfigurationError(f"invalid column operator: {operator or '<missing>'}")
    else:
        raise PolicyMisconfigurationError(f"unknown condition type: {cond_type or '<missing>'}")

    if not isinstance(value, str) or value == "":
        raise PolicyMisconfigurationError("value cannot be empty")
    if operator == "regex":
        try:
            re.compile(value)
        except re.error as exc:
            raise PolicyMisconfigurationError(f"invalid regex {value!r}: {exc}") from exc


def validate_selector(selector: Selector) -> None:
    """Raise PolicyMisconfigurationError when the condition tree is malformed."""
    if not selector:
        return
    _validate(selector, 0)


def _compare_column(operator: str, actual: Any, expected: str) -> bool:
    if actual is None:
        return False
    text = str(actual)
    if operator == "equals":
        return text == expected
    if operator == "not-equals":
        return text != expected
    if operator == "starts-with":
        return text.startswith(expected)
    if operator == "ends-with":
        return text.endswith(expected)
    if operator == "contains":
        return expected in text
    if operator == "regex":
        return re.search(expected, text) is not None
    if operator == "glob":
        return fnmatch.fnmatchcase(text, expected)
    return False


def _compare_date(operator: str, actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    left = actual if isinstance(actual, datetime) else parse_ts(actual)
    right = parse_ts(expected)
    if left is None or right is None:
        return False
    if operator == "before":
        return left < right
    if operator == "after":
        return left > right
    if operator == "before-or-on":
        return left <= right
    return left >= right


def _match(node: Dict[str, Any], entity: Any) -> bool:
    if _is_comparison(node):
        children = _children(node)
        if _comparison_operator(node) == "and":
            result = all(_match(child, entity) for child in children)
        else:
            result = any(_match(child, entity) for child in children)
        return (not result) if node.get("not") else result

    cond_type = str(node.get("type") or "").strip().lower()
    operator = str(node.get("operator") or "").strip().lower()
    value = node.get("value")

    if cond_type == DATE_TYPE:
        return _compare_date(operator, _field(entity, "created_at"), value)

    if cond_type == METADATA_TYPE:
        metadata = _field(entity, "metadata") or {}
        actual = metadata.get(str(node.get("key")).strip())
        if operator == "null":
            return actual is None
        return _compare_column(operator, actual, value)

    return _compare_column(operator, _field(entity, PROPERTY_CONDITION_TYPES[cond_type]), value)


def matches(selector: Selector, entity: Any) -> bool:
    """
    True when entity satisfies the selector. A missing selector matches
    everything. Malformed selectors raise PolicyMisconfigurationError before
    any matching happens so short-circuiting never hides a bad branch.
    """
    if not selector:
        return True
    validate_selector(selector)
    return _match(selector, entity)
