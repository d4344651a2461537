"""Read-side adapter over the company, contact and deal stores.

The territory engine never queries entity tables directly; it goes through an
``EntityStore`` so the stores can live elsewhere. ``SqlEntityStore`` is the
implementation backed by the local ``crm_*`` tables.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator, Sequence
from typing import Any, Protocol, get_args

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.crm.models import CRMCompany, CRMContact, CRMDeal
from app.territories.schemas import EntityType, RuleField

Entity = CRMCompany | CRMContact | CRMDeal

ENTITY_TYPES: tuple[str, ...] = get_args(EntityType)
RULE_FIELDS: tuple[str, ...] = get_args(RuleField)

_ADDRESS_KEYS = {
    "region": "state",
    "state": "state",
    "country": "country",
}
_COMPANY_ATTRIBUTES = {
    "industry": "industry",
    "companySize": "size",
    "annualRevenue": "annual_revenue",
}


class EntityStore(Protocol):
    def get_entity(self, entity_type: str, entity_id: uuid.UUID) -> Entity | None:
        ...

    def get_entities(self, entity_type: str, entity_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, Entity]:
        ...

    def iter_entity_chunks(self, entity_type: str, chunk_size: int) -> Iterator[list[Entity]]:
        ...

    def get_entity_field(self, entity: Entity, field: str) -> Any:
        ...


def _address_value(address: dict[str, Any] | None, key: str) -> Any:
    if not isinstance(address, dict):
        return None
    return address.get(key)


def _owning_company(entity: Entity) -> CRMCompany | None:
    if isinstance(entity, CRMCompany):
        return entity
    return entity.company


def get_entity_field_value(entity: Entity, field: str) -> Any:
    """Resolve a rule field on an entity; unknown combinations resolve to ``None``.

    ``region`` reads the address state. Contacts and deals take company-level
    attributes from their linked company, and deals have no address of their own.
    """

    if field in _ADDRESS_KEYS:
        source = _owning_company(entity) if isinstance(entity, CRMDeal) else entity
        if source is None:
            return None
        return _address_value(source.address, _ADDRESS_KEYS[field])

    if field in _COMPANY_ATTRIBUTES:
        company = _owning_company(entity)
        if company is None:
            return None
        return getattr(company, _COMPANY_ATTRIBUTES[field])

    return None


def get_entity_fields(entity: Entity) -> dict[str, Any]:
    return {field: get_entity_field_value(entity, field) for field in RULE_FIELDS}


class SqlEntityStore:
    _models: dict[str, type[CRMCompany] | type[CRMContact] | type[CRMDeal]] = {
        "company": CRMCompany,
        "contact": CRMContact,
        "deal": CRMDeal,
    }

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_entity(self, entity_type: str, entity_id: uuid.UUID) -> Entity | None:
        model = self._model_for(entity_type)
        return self._session.scalar(self._select(model).where(model.id == entity_id))

    def get_entities(self, entity_type: str, entity_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, Entity]:
        if not entity_ids:
            return {}
        model = self._model_for(entity_type)
        rows = self._session.scalars(self._select(model).where(model.id.in_(list(entity_ids)))).all()
        return {row.id: row for row in rows}

    def iter_entity_chunks(self, entity_type: str, chunk_size: int) -> Iterator[list[Entity]]:
        model = self._model_for(entity_type)
        size = max(1, chunk_size)
        last_id: uuid.UUID | None = None

        while True:
            stmt = self._select(model).order_by(model.id.asc()).limit(size)
            if last_id is not None:
                stmt = stmt.where(model.id > last_id)
            chunk = list(self._session.scalars(stmt).all())
            if not chunk:
                return
            last_id = chunk[-1].id
            yield chunk
            if len(chunk) < size:
                return

    def get_entity_field(self, entity: Entity, field: str) -> Any:
        return get_entity_field_value(entity, field)

    def _model_for(self, entity_type: str) -> type[CRMCompany] | type[CRMContact] | type[CRMDeal]:
        try:
            return self._models[entity_type]
        except KeyError:
            raise ValueError(f"unknown entity_type: {entity_type}") from None

    @staticmethod
    def _select(model: type[CRMCompany] | type[CRMContact] | type[CRMDeal]) -> Any:
        stmt = select(model)
        if model is not CRMCompany:
            stmt = stmt.options(selectinload(model.company))
        return stmt
