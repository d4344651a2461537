from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.territories.rules import validate_rule


EntityType = Literal["contact", "company", "deal"]
RuleField = Literal["region", "state", "country", "industry", "companySize", "annualRevenue"]
RuleOperator = Literal["equals", "notEquals", "contains", "startsWith", "greaterThan", "lessThan", "in"]


class TerritoryRule(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    field: RuleField
    operator: RuleOperator
    value: Any = None

    @model_validator(mode="after")
    def validate_value_for_operator(self) -> "TerritoryRule":
        validate_rule(self.field, self.operator, self.value, rule_id=self.id)
        return self


def _ensure_unique_rule_ids(rules: list[TerritoryRule]) -> list[TerritoryRule]:
    seen: set[str] = set()
    for rule in rules:
        if rule.id in seen:
            raise ValueError(f"duplicate rule id: {rule.id}")
        seen.add(rule.id)
    return rules


class TerritoryCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    color: str = Field(min_length=1)
    owner_user_id: uuid.UUID | None = None
    rules: list[TerritoryRule] = Field(default_factory=list)
    is_active: bool = True
    priority: int = 0

    @field_validator("rules")
    @classmethod
    def unique_rule_ids(cls, value: list[TerritoryRule]) -> list[TerritoryRule]:
        return _ensure_unique_rule_ids(value)


class TerritoryUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    color: str | None = Field(default=None, min_length=1)
    owner_user_id: uuid.UUID | None = None
    rules: list[TerritoryRule] | None = None
    is_active: bool | None = None
    priority: int | None = None

    @field_validator("rules")
    @classmethod
    def unique_rule_ids(cls, value: list[TerritoryRule] | None) -> list[TerritoryRule] | None:
        return None if value is None else _ensure_unique_rule_ids(value)


class TerritoryRuleRead(BaseModel):
    id: str
    field: str
    operator: str
    value: Any = None


class TerritoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    color: str
    owner_user_id: uuid.UUID | None
    rules: list[TerritoryRuleRead]
    is_active: bool
    priority: int
    assigned_contacts: int
    assigned_companies: int
    assigned_deals: int
    total_deal_value: Decimal
    created_at: datetime
    updated_at: datetime


class ActualCounts(BaseModel):
    contacts: int = 0
    companies: int = 0
    deals: int = 0


class TerritoryListItem(TerritoryRead):
    actual_counts: ActualCounts


class TerritoryAssignmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    territory_id: uuid.UUID
    entity_type: EntityType
    entity_id: uuid.UUID
    assigned_at: datetime
    auto_assigned: bool


class TerritoryAssignmentsByType(BaseModel):
    contacts: list[TerritoryAssignmentRead] = Field(default_factory=list)
    companies: list[TerritoryAssignmentRead] = Field(default_factory=list)
    deals: list[TerritoryAssignmentRead] = Field(default_factory=list)


class TerritoryDetail(TerritoryRead):
    assignments: TerritoryAssignmentsByType


class AssignEntityRequest(BaseModel):
    entity_type: EntityType
    entity_id: uuid.UUID
    auto_assigned: bool = False


class AutoAssignRequest(BaseModel):
    entity_type: EntityType


class AutoAssignResult(BaseModel):
    entity_type: EntityType
    assigned: int = 0
    unchanged: int = 0
    skipped_manual: int = 0
    unmatched: int = 0
    failed: int = 0


class RegionStats(BaseModel):
    region: str
    territories: int = 0
    total_contacts: int = 0
    total_companies: int = 0
    total_deals: int = 0
    total_value: Decimal = Decimal("0")


class ReconcileResult(BaseModel):
    territories: int
    failed_territory_ids: list[uuid.UUID] = Field(default_factory=list)
