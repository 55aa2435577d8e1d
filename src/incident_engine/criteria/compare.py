from __future__ import annotations

import json
import re
from collections.abc import Iterable
from typing import Any

from incident_engine.models import Filter, FilterType

NEGATIVE_FILTERS: frozenset[str] = frozenset({"not_equal_to", "not_contains"})

_LABELS: dict[str, str] = {
    "equal_to": "equal to",
    "not_equal_to": "not equal to",
    "greater_than": "greater than",
    "less_than": "less than",
    "greater_than_or_equal_to": "greater than or equal to",
    "less_than_or_equal_to": "less than or equal to",
    "contains": "contains",
    "not_contains": "does not contain",
    "starts_with": "starts with",
    "ends_with": "ends with",
    "matches_regex": "matches",
    "is_empty": "is empty",
    "is_not_empty": "is not empty",
}


def operator_label(filter_type: FilterType) -> str:
    return _LABELS.get(filter_type, filter_type.replace("_", " "))


def to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def compare_number(actual: Any, filter_type: FilterType, expected: Any) -> bool:
    left = to_float(actual)
    right = to_float(expected)
    if left is None or right is None:
        return False
    if filter_type == "equal_to":
        return left == right
    if filter_type == "not_equal_to":
        return left != right
    if filter_type == "greater_than":
        return left > right
    if filter_type == "less_than":
        return left < right
    if filter_type == "greater_than_or_equal_to":
        return left >= right
    if filter_type == "less_than_or_equal_to":
        return left <= right
    return False


def compare_text(actual: Any, filter_type: FilterType, expected: Any) -> bool:
    text = to_text(actual)
    target = to_text(expected)
    if filter_type == "is_empty":
        return text.strip() == ""
    if filter_type == "is_not_empty":
        return text.strip() != ""
    if filter_type == "equal_to":
        return text == target
    if filter_type == "not_equal_to":
        return text != target
    if filter_type == "contains":
        return target in text
    if filter_type == "not_contains":
        return target not in text
    if filter_type == "starts_with":
        return text.startswith(target)
    if filter_type == "ends_with":
        return text.endswith(target)
    if filter_type == "matches_regex":
        try:
            return re.search(target, text) is not None
        except re.error:
            return False
    return False


def compare_value(actual: Any, filter_type: FilterType, expected: Any) -> bool:
    if to_float(actual) is not None and to_float(expected) is not None:
        if filter_type in {
            "equal_to",
            "not_equal_to",
            "greater_than",
            "less_than",
            "greater_than_or_equal_to",
            "less_than_or_equal_to",
        }:
            return compare_number(actual, filter_type, expected)
    return compare_text(actual, filter_type, expected)


def compare_flag(actual: bool, filter_type: FilterType) -> bool:
    if filter_type == "true":
        return actual
    if filter_type == "false":
        return not actual
    return False


def match_collection(values: Iterable[Any], criteria_filter: Filter) -> bool:
    items = list(values)
    if criteria_filter.filter_type in NEGATIVE_FILTERS:
        return all(compare_value(item, criteria_filter.filter_type, criteria_filter.value) for item in items)
    return any(compare_value(item, criteria_filter.filter_type, criteria_filter.value) for item in items)


def describe(subject: str, actual: Any, criteria_filter: Filter, unit: str = "") -> str:
    suffix = f" {unit}" if unit else ""
    if criteria_filter.filter_type in {"is_empty", "is_not_empty"}:
        return f"{subject} {operator_label(criteria_filter.filter_type)}."
    shown = to_text(actual)
    if len(shown) > 200:
        shown = shown[:200] + "..."
    return (
        f"{subject} is {shown}{suffix}, which {_verb(criteria_filter.filter_type)}"
        f" {to_text(criteria_filter.value)}{suffix}."
    )


def _verb(filter_type: FilterType) -> str:
    label = operator_label(filter_type)
    if filter_type in {"contains", "not_contains", "starts_with", "ends_with", "matches_regex"}:
        return label
    return f"is {label}"
