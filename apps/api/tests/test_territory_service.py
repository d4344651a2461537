from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal
from typing import Any

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.entities import SqlEntityStore
from app.crm.models import CRMCompany, CRMContact, CRMDeal
from app.territories.models import CRMTerritory
from app.territories.schemas import TerritoryCreate, TerritoryUpdate
from app.territories.service import ActorUser, TerritoryService


ACTOR = ActorUser(user_id="user-1", permissions=set(), correlation_id="corr-service")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def service() -> TerritoryService:
    return TerritoryService()


def _create(service: TerritoryService, session: Session, name: str, rules: list[dict[str, Any]], **extra: Any):
    dto = TerritoryCreate(name=name, color="#0055aa", rules=rules, **extra)
    return service.create_territory(session, ACTOR, dto)


def _enterprise_and_west(service: TerritoryService, session: Session):
    enterprise = _create(
        service,
        session,
        "Enterprise",
        [{"field": "annualRevenue", "operator": "greaterThan", "value": 1_000_000}],
    )
    west = _create(
        service,
        session,
        "West",
        [{"field": "region", "operator": "in", "value": ["CA", "OR", "WA"]}],
    )
    return enterprise, west


def _company(session: Session, *, state: str = "CA", revenue: float | None = 5_000_000) -> CRMCompany:
    company = CRMCompany(name=f"Company {state}", annual_revenue=revenue, address={"state": state, "country": "US"})
    session.add(company)
    session.commit()
    return company


def test_create_territory_stores_validated_rules_and_publishes_event(
    service: TerritoryService,
    db_session: Session,
) -> None:
    created = _create(
        service,
        db_session,
        "  West  ",
        [{"id": "west-1", "field": "state", "operator": "equals", "value": "CA"}],
        priority=5,
    )

    assert created.name == "West"
    assert created.priority == 5
    assert created.rules[0].id == "west-1"
    assert created.assigned_companies == 0
    assert created.total_deal_value == Decimal("0")

    assert audit.audit_entries[-1]["action"] == "create"
    assert audit.audit_entries[-1]["correlation_id"] == "corr-service"
    assert events.published_events[-1]["event_type"] == "crm.territory.created"


def test_rule_ids_are_generated_when_omitted(service: TerritoryService, db_session: Session) -> None:
    created = _create(service, db_session, "West", [{"field": "state", "operator": "equals", "value": "CA"}])

    assert created.rules[0].id


def test_invalid_rule_payload_is_rejected() -> None:
    with pytest.raises(ValidationError):
        TerritoryCreate(
            name="Broken",
            color="#000000",
            rules=[{"field": "state", "operator": "greaterThan", "value": 10}],
        )

    with pytest.raises(ValidationError):
        TerritoryCreate(
            name="Duplicate ids",
            color="#000000",
            rules=[
                {"id": "a", "field": "state", "operator": "equals", "value": "CA"},
                {"id": "a", "field": "country", "operator": "equals", "value": "US"},
            ],
        )


def test_update_territory_applies_partial_changes(service: TerritoryService, db_session: Session) -> None:
    created = _create(service, db_session, "West", [{"field": "state", "operator": "equals", "value": "CA"}])

    updated = service.update_territory(
        db_session,
        ACTOR,
        created.id,
        TerritoryUpdate(is_active=False, rules=[{"field": "state", "operator": "equals", "value": "OR"}]),
    )

    assert updated.name == "West"
    assert updated.is_active is False
    assert updated.rules[0].value == "OR"
    assert events.published_events[-1]["payload"]["changed_fields"] == ["is_active", "rules"]
    assert audit.audit_entries[-1]["changed_fields"] == ["is_active", "rules"]


def test_update_missing_territory_is_not_found(service: TerritoryService, db_session: Session) -> None:
    with pytest.raises(HTTPException) as exc_info:
        service.update_territory(db_session, ACTOR, uuid.uuid4(), TerritoryUpdate(name="Nope"))

    assert exc_info.value.status_code == 404


def test_auto_assign_takes_first_matching_territory(service: TerritoryService, db_session: Session) -> None:
    enterprise, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)

    result = service.auto_assign_all(db_session, ACTOR, "company")

    assert result.assigned == 1
    assignment = service.find_assignment(db_session, "company", company.id)
    assert assignment is not None
    assert assignment.territory_id == enterprise.id
    assert assignment.auto_assigned is True
    assert service.get_territory(db_session, enterprise.id).assigned_companies == 1
    assert service.get_territory(db_session, west.id).assigned_companies == 0


def test_company_size_territory_listed_first_wins_over_state_territory(
    service: TerritoryService,
    db_session: Session,
) -> None:
    enterprise = _create(
        service,
        db_session,
        "Enterprise",
        [{"field": "companySize", "operator": "in", "value": ["1001-5000", "5001+"]}],
    )
    west = _create(
        service,
        db_session,
        "West",
        [{"field": "state", "operator": "equals", "value": "CA"}],
    )
    large = CRMCompany(name="Large", size="5001+", address={"state": "CA"})
    small = CRMCompany(name="Small", size="11-50", address={"state": "CA"})
    db_session.add_all([large, small])
    db_session.commit()
    large_id, small_id = large.id, small.id

    result = service.auto_assign_all(db_session, ACTOR, "company")

    assert result.assigned == 2
    assert service.find_assignment(db_session, "company", large_id).territory_id == enterprise.id
    assert service.find_assignment(db_session, "company", small_id).territory_id == west.id
    assert service.get_territory(db_session, enterprise.id).assigned_companies == 1
    assert service.get_territory(db_session, west.id).assigned_companies == 1


def test_priority_overrides_creation_order(service: TerritoryService, db_session: Session) -> None:
    _create(
        service,
        db_session,
        "Enterprise",
        [{"field": "annualRevenue", "operator": "greaterThan", "value": 1_000_000}],
    )
    west = _create(
        service,
        db_session,
        "West",
        [{"field": "state", "operator": "equals", "value": "CA"}],
        priority=-1,
    )
    company = _company(db_session)

    service.auto_assign_all(db_session, ACTOR, "company")

    assignment = service.find_assignment(db_session, "company", company.id)
    assert assignment is not None
    assert assignment.territory_id == west.id


def test_auto_assign_is_idempotent(service: TerritoryService, db_session: Session) -> None:
    enterprise, _ = _enterprise_and_west(service, db_session)
    _company(db_session)
    _company(db_session, state="OR", revenue=10)

    first = service.auto_assign_all(db_session, ACTOR, "company")
    before = service.get_territory(db_session, enterprise.id)
    second = service.auto_assign_all(db_session, ACTOR, "company")
    after = service.get_territory(db_session, enterprise.id)

    assert first.assigned == 2
    assert second.assigned == 0
    assert second.unchanged == 2
    assert after.assigned_companies == before.assigned_companies == 1
    assert [item.id for item in after.assignments.companies] == [item.id for item in before.assignments.companies]


def test_auto_assign_leaves_unmatched_entities_alone(service: TerritoryService, db_session: Session) -> None:
    _, west = _enterprise_and_west(service, db_session)
    company = _company(db_session, state="NY", revenue=10)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)

    result = service.auto_assign_all(db_session, ACTOR, "company")

    assert result.unmatched == 1
    assignment = service.find_assignment(db_session, "company", company.id)
    assert assignment is not None
    assert assignment.territory_id == west.id


def test_inactive_territories_are_not_matched(service: TerritoryService, db_session: Session) -> None:
    enterprise, west = _enterprise_and_west(service, db_session)
    service.update_territory(db_session, ACTOR, enterprise.id, TerritoryUpdate(is_active=False))
    company = _company(db_session)

    service.auto_assign_all(db_session, ACTOR, "company")

    assignment = service.find_assignment(db_session, "company", company.id)
    assert assignment is not None
    assert assignment.territory_id == west.id


def test_manual_assignments_are_protected_from_auto_assign(service: TerritoryService, db_session: Session) -> None:
    enterprise, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)

    result = service.auto_assign_all(db_session, ACTOR, "company")

    assert result.skipped_manual == 1
    assert result.assigned == 0
    assignment = service.find_assignment(db_session, "company", company.id)
    assert assignment is not None
    assert assignment.territory_id == west.id
    assert service.get_territory(db_session, enterprise.id).assigned_companies == 0


def test_overwrite_manual_setting_restores_overwrite(
    service: TerritoryService,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TERRITORY_AUTO_ASSIGN_OVERWRITE_MANUAL", "true")
    get_settings.cache_clear()
    enterprise, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)

    result = service.auto_assign_all(db_session, ACTOR, "company")

    assert result.assigned == 1
    assert service.get_territory(db_session, enterprise.id).assigned_companies == 1
    assert service.get_territory(db_session, west.id).assigned_companies == 0


def test_auto_assign_walks_entities_in_chunks(
    service: TerritoryService,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TERRITORY_AUTO_ASSIGN_CHUNK_SIZE", "2")
    get_settings.cache_clear()
    _, west = _enterprise_and_west(service, db_session)
    for _ in range(5):
        _company(db_session, revenue=None)

    result = service.auto_assign_all(db_session, ACTOR, "company")

    assert result.assigned == 5
    assert service.get_territory(db_session, west.id).assigned_companies == 5


def test_auto_assign_counts_per_entity_failures_and_continues(db_session: Session) -> None:
    broken_ids: set[uuid.UUID] = set()

    class FlakyStore(SqlEntityStore):
        def get_entity_field(self, entity, field):  # type: ignore[no-untyped-def]
            if entity.id in broken_ids:
                raise RuntimeError("address lookup failed")
            return super().get_entity_field(entity, field)

    service = TerritoryService(entity_store_factory=FlakyStore)
    _, west = _enterprise_and_west(service, db_session)
    broken = _company(db_session, revenue=None)
    _company(db_session, revenue=None)
    broken_ids.add(broken.id)

    result = service.auto_assign_all(db_session, ACTOR, "company")

    assert result.failed == 1
    assert result.assigned == 1
    assert service.find_assignment(db_session, "company", broken.id) is None
    assert service.get_territory(db_session, west.id).assigned_companies == 1


def test_auto_assign_covers_contacts_and_deals(service: TerritoryService, db_session: Session) -> None:
    enterprise, _ = _enterprise_and_west(service, db_session)
    company = _company(db_session)
    contact = CRMContact(company_id=company.id, first_name="Ada", last_name="L", address={"state": "CA"})
    deal = CRMDeal(company_id=company.id, name="Big", amount=Decimal("2500"))
    db_session.add_all([contact, deal])
    db_session.commit()

    contact_result = service.auto_assign_all(db_session, ACTOR, "contact")
    deal_result = service.auto_assign_all(db_session, ACTOR, "deal")

    assert contact_result.assigned == 1
    assert deal_result.assigned == 1
    detail = service.get_territory(db_session, enterprise.id)
    assert detail.assigned_contacts == 1
    assert detail.assigned_deals == 1
    assert detail.total_deal_value == Decimal("2500")
    assert events.published_events[-1]["event_type"] == "crm.territory.auto_assign_completed"


def test_reassignment_moves_counters_between_territories(service: TerritoryService, db_session: Session) -> None:
    enterprise, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)
    deal = CRMDeal(company_id=company.id, name="Deal", amount=Decimal("400"))
    db_session.add(deal)
    db_session.commit()

    first = service.assign_entity(db_session, ACTOR, west.id, "deal", deal.id)
    assert service.get_territory(db_session, west.id).total_deal_value == Decimal("400")

    second = service.assign_entity(db_session, ACTOR, enterprise.id, "deal", deal.id)

    assert second.id == first.id
    west_detail = service.get_territory(db_session, west.id)
    enterprise_detail = service.get_territory(db_session, enterprise.id)
    assert west_detail.assigned_deals == 0
    assert west_detail.total_deal_value == Decimal("0")
    assert enterprise_detail.assigned_deals == 1
    assert enterprise_detail.total_deal_value == Decimal("400")
    assert events.published_events[-1]["payload"]["previous_territory_id"] == str(west.id)


def test_assign_missing_entity_or_territory_is_not_found(service: TerritoryService, db_session: Session) -> None:
    _, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)

    with pytest.raises(HTTPException) as missing_entity:
        service.assign_entity(db_session, ACTOR, west.id, "company", uuid.uuid4())
    with pytest.raises(HTTPException) as missing_territory:
        service.assign_entity(db_session, ACTOR, uuid.uuid4(), "company", company.id)

    assert missing_entity.value.status_code == 404
    assert missing_territory.value.status_code == 404
    assert service.find_assignment(db_session, "company", company.id) is None


def test_unknown_entity_type_is_rejected(service: TerritoryService, db_session: Session) -> None:
    with pytest.raises(HTTPException) as exc_info:
        service.auto_assign_all(db_session, ACTOR, "lead")

    assert exc_info.value.status_code == 422


def test_unassign_recomputes_vacated_territory(service: TerritoryService, db_session: Session) -> None:
    _, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)

    vacated = service.unassign_entity(db_session, ACTOR, "company", company.id)

    assert vacated == west.id
    assert service.get_territory(db_session, west.id).assigned_companies == 0
    assert service.unassign_entity(db_session, ACTOR, "company", company.id) is None


def test_delete_territory_cascades_assignments(service: TerritoryService, db_session: Session) -> None:
    _, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)

    service.delete_territory(db_session, ACTOR, west.id)

    assert service.find_assignment(db_session, "company", company.id) is None
    with pytest.raises(HTTPException) as exc_info:
        service.get_territory(db_session, west.id)
    assert exc_info.value.status_code == 404
    assert events.published_events[-1]["payload"]["removed_assignments"] == 1


def test_purge_entity_drops_assignment_for_deleted_entity(service: TerritoryService, db_session: Session) -> None:
    _, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)

    assert service.purge_entity(db_session, "company", company.id) == west.id
    assert service.purge_entity(db_session, "lead", company.id) is None
    assert service.get_territory(db_session, west.id).assigned_companies == 0


def test_list_territories_reports_actual_counts(service: TerritoryService, db_session: Session) -> None:
    enterprise, west = _enterprise_and_west(service, db_session)
    service.update_territory(db_session, ACTOR, enterprise.id, TerritoryUpdate(is_active=False))
    company = _company(db_session)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)

    active = service.list_territories(db_session)
    everything = service.list_territories(db_session, include_inactive=True)

    assert [item.id for item in active] == [west.id]
    assert active[0].actual_counts.companies == 1
    assert {item.id for item in everything} == {enterprise.id, west.id}


def test_stats_by_region_groups_on_region_rule(service: TerritoryService, db_session: Session) -> None:
    west = _create(service, db_session, "West", [{"field": "region", "operator": "equals", "value": "West"}])
    _create(service, db_session, "West 2", [{"field": "region", "operator": "equals", "value": "West"}], is_active=False)
    _create(service, db_session, "Software", [{"field": "industry", "operator": "equals", "value": "Software"}])
    company = _company(db_session)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)

    stats = {item.region: item for item in service.get_stats_by_region(db_session)}

    assert set(stats) == {"West", "Unassigned"}
    assert stats["West"].territories == 2
    assert stats["West"].total_companies == 1
    assert stats["Unassigned"].territories == 1


def test_reconcile_counters_repairs_every_territory(service: TerritoryService, db_session: Session) -> None:
    enterprise, west = _enterprise_and_west(service, db_session)
    company = _company(db_session)
    service.assign_entity(db_session, ACTOR, west.id, "company", company.id)
    territory = db_session.get(CRMTerritory, west.id)
    assert territory is not None
    territory.assigned_companies = 99
    db_session.commit()

    result = service.reconcile_counters(db_session, ACTOR)

    assert result.territories == 2
    assert result.failed_territory_ids == []
    assert service.get_territory(db_session, west.id).assigned_companies == 1
    assert service.get_territory(db_session, enterprise.id).assigned_companies == 0
