"""Rule evaluation and first-match territory selection.

Everything here is pure: evaluation takes resolved field values and never raises
for malformed input, it simply fails the predicate.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any, Protocol, TypeVar

from app.territories.errors import InvalidRuleError


RULE_FIELDS = frozenset({"region", "state", "country", "industry", "companySize", "annualRevenue"})
RULE_OPERATORS = frozenset({"equals", "notEquals", "contains", "startsWith", "greaterThan", "lessThan", "in"})
NUMERIC_FIELDS = frozenset({"annualRevenue"})
TEXT_OPERATORS = frozenset({"contains", "startsWith"})
NUMERIC_OPERATORS = frozenset({"greaterThan", "lessThan"})


class HasRules(Protocol):
    rules: Any


TerritoryT = TypeVar("TerritoryT", bound=HasRules)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, bool)) or _is_number(value)


def strict_equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def _parse_numeric_text(text: str) -> float | None:
    # only the numeric literal forms a JavaScript Number() call accepts
    if "_" in text:
        return None
    if text[:2].lower() in {"0x", "0o", "0b"}:
        try:
            return float(int(text, 0))
        except ValueError:
            return None
    unsigned = text.lstrip("+-")
    if unsigned.lower() in {"inf", "infinity", "nan"} and unsigned != "Infinity":
        return None
    try:
        return float(text)
    except ValueError:
        return None


def to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        number = _parse_numeric_text(value.strip())
        if number is None:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def display_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None else display_value(item) for item in value)
    return str(value)


def evaluate(entity_value: Any, operator: Any, rule_value: Any) -> bool:
    if entity_value is None:
        # an absent field only satisfies notEquals against a concrete value
        return operator == "notEquals" and rule_value is not None
    if operator == "equals":
        return strict_equals(entity_value, rule_value)
    if operator == "notEquals":
        return not strict_equals(entity_value, rule_value)
    if operator == "contains":
        return isinstance(entity_value, str) and display_value(rule_value).lower() in entity_value.lower()
    if operator == "startsWith":
        return isinstance(entity_value, str) and entity_value.lower().startswith(display_value(rule_value).lower())
    if operator in NUMERIC_OPERATORS:
        left = to_number(entity_value)
        right = to_number(rule_value)
        if left is None or right is None:
            return False
        return left > right if operator == "greaterThan" else left < right
    if operator == "in":
        if not isinstance(rule_value, (list, tuple)):
            return False
        return any(strict_equals(entity_value, item) for item in rule_value)
    return False


def matches_rule(entity_fields: Mapping[str, Any], rule: Any) -> bool:
    if not isinstance(rule, Mapping):
        return False
    return evaluate(entity_fields.get(rule.get("field")), rule.get("operator"), rule.get("value"))


def matches_all_rules(entity_fields: Mapping[str, Any], rules: Any) -> bool:
    # an empty rule set would match everything, so it matches nothing
    if not isinstance(rules, Sequence) or isinstance(rules, str) or not rules:
        return False
    return all(matches_rule(entity_fields, rule) for rule in rules)


def find_matching_territory(entity_fields: Mapping[str, Any], territories: Sequence[TerritoryT]) -> TerritoryT | None:
    """Return the first territory, in the given order, whose whole rule set matches."""

    for territory in territories:
        if matches_all_rules(entity_fields, territory.rules):
            return territory
    return None


def validate_rule(field: Any, operator: Any, value: Any, *, rule_id: str | None = None) -> None:
    if field not in RULE_FIELDS:
        raise InvalidRuleError(f"unknown field {field!r}", rule_id=rule_id)
    if operator not in RULE_OPERATORS:
        raise InvalidRuleError(f"unknown operator {operator!r}", rule_id=rule_id)

    if operator in {"equals", "notEquals"}:
        if not _is_scalar(value):
            raise InvalidRuleError(f"{operator} requires a non-null scalar value", rule_id=rule_id)
        return

    if operator in TEXT_OPERATORS:
        if field in NUMERIC_FIELDS:
            raise InvalidRuleError(f"{operator} is not supported on {field}", rule_id=rule_id)
        if not isinstance(value, str) or not value:
            raise InvalidRuleError(f"{operator} requires a non-empty string value", rule_id=rule_id)
        return

    if operator in NUMERIC_OPERATORS:
        if field not in NUMERIC_FIELDS:
            raise InvalidRuleError(f"{operator} is only supported on numeric fields", rule_id=rule_id)
        if not _is_number(value) or (isinstance(value, float) and not math.isfinite(value)):
            raise InvalidRuleError(f"{operator} requires a numeric value", rule_id=rule_id)
        return

    if not isinstance(value, list) or not value:
        raise InvalidRuleError("in requires a non-empty list value", rule_id=rule_id)
    if not all(_is_scalar(item) for item in value):
        raise InvalidRuleError("in values must be non-null scalars", rule_id=rule_id)


def region_label(rules: Any) -> str:
    if isinstance(rules, Sequence) and not isinstance(rules, str):
        for rule in rules:
            if isinstance(rule, Mapping) and rule.get("field") == "region":
                return display_value(rule.get("value"))
    return "Unassigned"
