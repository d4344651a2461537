from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import Any

import pytest
from pydantic import ValidationError

from app.territories.errors import InvalidRuleError
from app.territories.rules import (
    display_value,
    evaluate,
    find_matching_territory,
    matches_all_rules,
    matches_rule,
    region_label,
    to_number,
    validate_rule,
)
from app.territories.schemas import TerritoryRule


@dataclass
class FakeTerritory:
    name: str
    rules: list[dict[str, Any]]
    id: uuid.UUID = field(default_factory=uuid.uuid4)


def _rule(field_name: str, operator: str, value: Any) -> dict[str, Any]:
    return {"id": uuid.uuid4().hex, "field": field_name, "operator": operator, "value": value}


@pytest.mark.parametrize(
    ("entity_value", "operator", "rule_value", "expected"),
    [
        ("CA", "equals", "CA", True),
        ("ca", "equals", "CA", False),
        (1, "equals", "1", False),
        (True, "equals", 1, False),
        (1000, "equals", 1000.0, True),
        (None, "equals", None, False),
        (None, "notEquals", None, False),
        (None, "in", [None, "CA"], False),
        (None, "lessThan", 10, False),
        ("CA", "notEquals", "NY", True),
        ("CA", "notEquals", "CA", False),
        (None, "notEquals", "CA", True),
        ("Enterprise Software", "contains", "soft", True),
        ("Enterprise Software", "contains", "hardware", False),
        (42, "contains", "4", False),
        (None, "contains", "a", False),
        ("California", "startsWith", "cal", True),
        ("California", "startsWith", "nia", False),
        (None, "startsWith", "c", False),
        (2_000_000, "greaterThan", 1_000_000, True),
        (1_000_000, "greaterThan", 1_000_000, False),
        ("2500000", "greaterThan", 1_000_000, True),
        ("2_500_000", "greaterThan", 1_000_000, False),
        ("infinity", "greaterThan", 1_000_000, False),
        ("Infinity", "greaterThan", 1_000_000, True),
        ("lots", "greaterThan", 1, False),
        (None, "greaterThan", -1, False),
        ("", "lessThan", 10, False),
        (500, "lessThan", 1000, True),
        (500, "lessThan", "abc", False),
        ("TX", "in", ["CA", "TX"], True),
        ("NY", "in", ["CA", "TX"], False),
        ("TX", "in", "TX", False),
        (1, "in", ["1"], False),
        ("CA", "between", "CA", False),
    ],
)
def test_evaluate_operator_table(entity_value: Any, operator: str, rule_value: Any, expected: bool) -> None:
    assert evaluate(entity_value, operator, rule_value) is expected


def test_to_number_follows_numeric_coercion() -> None:
    assert to_number(True) == 1.0
    assert to_number(False) == 0.0
    assert to_number(" 12.5 ") == 12.5
    assert to_number("nan") is None
    assert to_number(None) is None
    assert to_number("   ") is None
    assert to_number(["1"]) is None


def test_to_number_rejects_literals_outside_javascript_number_syntax() -> None:
    assert to_number("1_000") is None
    assert to_number("infinity") is None
    assert to_number("-inf") is None
    assert to_number("NaN") is None
    assert to_number("Infinity") == math.inf
    assert to_number("-Infinity") == -math.inf
    assert to_number("0x10") == 16.0
    assert to_number("-0x10") is None
    assert to_number("1e3") == 1000.0


def test_display_value_renders_like_text_conversion() -> None:
    assert display_value(None) == "null"
    assert display_value(True) == "true"
    assert display_value(10.0) == "10"
    assert display_value(["CA", "TX"]) == "CA,TX"
    assert display_value("West") == "West"


def test_matches_rule_reads_field_from_resolved_values() -> None:
    fields = {"state": "CA", "industry": None}
    assert matches_rule(fields, _rule("state", "equals", "CA"))
    assert not matches_rule(fields, _rule("industry", "equals", "Software"))
    assert not matches_rule(fields, "not-a-rule")


def test_empty_rule_set_never_matches() -> None:
    assert matches_all_rules({"state": "CA"}, []) is False
    assert matches_all_rules({"state": "CA"}, None) is False
    assert matches_all_rules({"state": "CA"}, "state=CA") is False


def test_rule_set_is_a_conjunction() -> None:
    rules = [_rule("state", "equals", "CA"), _rule("industry", "equals", "Software")]
    assert matches_all_rules({"state": "CA", "industry": "Software"}, rules)
    assert not matches_all_rules({"state": "CA", "industry": "Retail"}, rules)


def test_first_matching_territory_wins_in_supplied_order() -> None:
    enterprise = FakeTerritory("Enterprise", [_rule("annualRevenue", "greaterThan", 1_000_000)])
    west = FakeTerritory("West", [_rule("state", "in", ["CA", "OR", "WA"])])
    fields = {"state": "CA", "annualRevenue": 5_000_000}

    assert find_matching_territory(fields, [enterprise, west]) is enterprise
    assert find_matching_territory(fields, [west, enterprise]) is west


def test_territory_with_no_rules_is_skipped() -> None:
    catch_all = FakeTerritory("Catch all", [])
    west = FakeTerritory("West", [_rule("state", "equals", "CA")])

    assert find_matching_territory({"state": "CA"}, [catch_all, west]) is west
    assert find_matching_territory({"state": "NY"}, [catch_all, west]) is None


def test_region_label_uses_first_region_rule() -> None:
    assert region_label([_rule("state", "equals", "CA"), _rule("region", "equals", "West")]) == "West"
    assert region_label([_rule("region", "in", ["CA", "OR"])]) == "CA,OR"
    assert region_label([_rule("state", "equals", "CA")]) == "Unassigned"
    assert region_label([]) == "Unassigned"


@pytest.mark.parametrize(
    ("field_name", "operator", "value"),
    [
        ("state", "equals", "CA"),
        ("industry", "notEquals", "Retail"),
        ("industry", "contains", "soft"),
        ("annualRevenue", "greaterThan", 1_000_000),
        ("annualRevenue", "lessThan", 10.5),
        ("state", "in", ["CA", "TX"]),
    ],
)
def test_validate_rule_accepts_well_formed_rules(field_name: str, operator: str, value: Any) -> None:
    validate_rule(field_name, operator, value)


@pytest.mark.parametrize(
    ("field_name", "operator", "value"),
    [
        ("zip", "equals", "94105"),
        ("state", "between", "CA"),
        ("state", "equals", ["CA"]),
        ("state", "equals", None),
        ("industry", "notEquals", None),
        ("state", "in", [None, "CA"]),
        ("industry", "contains", ""),
        ("industry", "startsWith", 5),
        ("annualRevenue", "contains", "1"),
        ("state", "greaterThan", 5),
        ("annualRevenue", "greaterThan", "1000"),
        ("annualRevenue", "lessThan", True),
        ("state", "in", []),
        ("state", "in", "CA"),
        ("state", "in", [["CA"]]),
    ],
)
def test_validate_rule_rejects_malformed_rules(field_name: str, operator: str, value: Any) -> None:
    with pytest.raises(InvalidRuleError):
        validate_rule(field_name, operator, value, rule_id="r1")


def test_null_rule_values_are_rejected_and_absent_fields_only_satisfy_not_equals() -> None:
    with pytest.raises(ValidationError):
        TerritoryRule(field="industry", operator="equals", value=None)
    with pytest.raises(ValidationError):
        TerritoryRule(field="state", operator="in", value=[None])

    absent = FakeTerritory("Absent", [_rule("state", "notEquals", "CA"), _rule("industry", "notEquals", "Retail")])
    present_only = FakeTerritory("Present", [_rule("state", "in", ["CA", "TX"])])
    fields: dict[str, Any] = {}

    assert find_matching_territory(fields, [present_only]) is None
    assert find_matching_territory(fields, [present_only, absent]) is absent
