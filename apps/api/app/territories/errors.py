from __future__ import annotations

import uuid


class TerritoryError(Exception):
    """Base error for territory engine failures."""


class TerritoryNotFoundError(TerritoryError):
    def __init__(self, territory_id: uuid.UUID) -> None:
        self.territory_id = territory_id
        super().__init__(f"territory not found: {territory_id}")


class EntityNotFoundError(TerritoryError):
    def __init__(self, entity_type: str, entity_id: uuid.UUID) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class InvalidRuleError(TerritoryError, ValueError):
    """Raised for rule definitions the evaluator could never match as intended.

    Subclasses ``ValueError`` so pydantic validators surface it as a 422.
    """

    def __init__(self, message: str, *, rule_id: str | None = None) -> None:
        self.rule_id = rule_id
        super().__init__(f"rule {rule_id}: {message}" if rule_id else message)
