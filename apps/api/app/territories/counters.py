"""Derived territory counters.

Counters on ``CRMTerritory`` are a cache over the assignment table. They are only
ever re-derived from the current assignment rows, never incremented, so a
recompute can be repeated at any time and a lost race only leaves a counter stale
until the next one.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.crm.entities import EntityStore, SqlEntityStore
from app.metrics import observe_counter_recompute, observe_stale_reference
from app.territories.models import CRMTerritory, utcnow
from app.territories.repository import TerritoryAssignmentRepository, TerritoryRepository


logger = logging.getLogger("app.territories")

_assignment_repository = TerritoryAssignmentRepository()
_territory_repository = TerritoryRepository()


@dataclass(slots=True)
class TerritoryCounters:
    assigned_contacts: int = 0
    assigned_companies: int = 0
    assigned_deals: int = 0
    total_deal_value: Decimal = Decimal("0")
    stale_deal_ids: list[uuid.UUID] = field(default_factory=list)


def derive_counters(session: Session, territory_id: uuid.UUID, entity_store: EntityStore | None = None) -> TerritoryCounters:
    store = entity_store or SqlEntityStore(session)
    assignments = _assignment_repository.list_by_territory(session, territory_id)
    by_type = Counter(assignment.entity_type for assignment in assignments)

    deal_ids = [assignment.entity_id for assignment in assignments if assignment.entity_type == "deal"]
    deals = store.get_entities("deal", deal_ids)

    total = Decimal("0")
    stale: list[uuid.UUID] = []
    for deal_id in deal_ids:
        deal = deals.get(deal_id)
        if deal is None:
            stale.append(deal_id)
            continue
        amount = getattr(deal, "amount", None)
        if amount is not None:
            total += Decimal(str(amount))

    return TerritoryCounters(
        assigned_contacts=by_type["contact"],
        assigned_companies=by_type["company"],
        assigned_deals=by_type["deal"],
        total_deal_value=total,
        stale_deal_ids=stale,
    )


def recompute_counters(
    session: Session,
    territory_id: uuid.UUID,
    entity_store: EntityStore | None = None,
) -> TerritoryCounters:
    """Re-derive and store the four counters of one territory in a single update.

    Deals that were deleted after being assigned count as zero value. Flushes
    but does not commit.
    """

    counters = derive_counters(session, territory_id, entity_store)
    if counters.stale_deal_ids:
        observe_stale_reference("deal", len(counters.stale_deal_ids))
        logger.warning(
            "territory.stale_deal_reference",
            extra={
                "territory_id": str(territory_id),
                "entity_type": "deal",
                "entity_id": ",".join(str(item) for item in counters.stale_deal_ids),
            },
        )

    session.execute(
        update(CRMTerritory)
        .where(CRMTerritory.id == territory_id)
        .values(
            assigned_contacts=counters.assigned_contacts,
            assigned_companies=counters.assigned_companies,
            assigned_deals=counters.assigned_deals,
            total_deal_value=counters.total_deal_value,
            updated_at=utcnow(),
        )
    )
    session.flush()
    observe_counter_recompute("succeeded")
    return counters


def recompute_many(
    session: Session,
    territory_ids: list[uuid.UUID],
    entity_store: EntityStore | None = None,
) -> list[uuid.UUID]:
    """Recompute each territory in its own commit; return the ids that failed."""

    failed: list[uuid.UUID] = []
    for territory_id in dict.fromkeys(territory_ids):
        try:
            recompute_counters(session, territory_id, entity_store)
            session.commit()
        except Exception as exc:
            session.rollback()
            failed.append(territory_id)
            observe_counter_recompute("failed")
            logger.exception(
                "territory.recompute_failed",
                extra={"territory_id": str(territory_id), "error": str(exc)},
            )
    return failed


def reconcile_all_counters(session: Session, entity_store: EntityStore | None = None) -> tuple[int, list[uuid.UUID]]:
    territory_ids = _territory_repository.list_ids(session)
    failed = recompute_many(session, territory_ids, entity_store)
    return len(territory_ids), failed
