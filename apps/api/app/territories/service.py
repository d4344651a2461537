from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.entities import ENTITY_TYPES, RULE_FIELDS, EntityStore, SqlEntityStore
from app.metrics import observe_assignment, observe_auto_assign_run, observe_unassignment
from app.territories.counters import recompute_counters, recompute_many, reconcile_all_counters
from app.territories.errors import EntityNotFoundError, InvalidRuleError, TerritoryError, TerritoryNotFoundError
from app.territories.models import CRMTerritory, utcnow
from app.territories.repository import TerritoryAssignmentRepository, TerritoryRepository
from app.territories.rules import find_matching_territory, region_label
from app.territories.schemas import (
    ActualCounts,
    AutoAssignResult,
    ReconcileResult,
    RegionStats,
    TerritoryAssignmentRead,
    TerritoryAssignmentsByType,
    TerritoryCreate,
    TerritoryDetail,
    TerritoryListItem,
    TerritoryRead,
    TerritoryUpdate,
)


logger = logging.getLogger("app.territories")
tracer = trace.get_tracer("app.territories")

_NON_NULLABLE_FIELDS = {"name", "color", "rules", "is_active", "priority"}
_GROUP_KEYS = {"contact": "contacts", "company": "companies", "deal": "deals"}


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


SYSTEM_ACTOR = ActorUser(user_id="system")


@dataclass(frozen=True)
class _MatchCandidate:
    id: uuid.UUID
    rules: list[dict[str, Any]]


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (TerritoryNotFoundError, EntityNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidRuleError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except TerritoryError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _validate_entity_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid entity_type")


def _territory_snapshot(territory: CRMTerritory) -> dict[str, Any]:
    return {
        "name": territory.name,
        "description": territory.description,
        "color": territory.color,
        "owner_user_id": str(territory.owner_user_id) if territory.owner_user_id else None,
        "rules": list(territory.rules or []),
        "is_active": territory.is_active,
        "priority": territory.priority,
    }


class TerritoryService:
    entity_type = "crm.territory"

    def __init__(self, entity_store_factory: Callable[[Session], EntityStore] = SqlEntityStore) -> None:
        self.territories = TerritoryRepository()
        self.assignments = TerritoryAssignmentRepository()
        self._entity_store_factory = entity_store_factory

    def create_territory(self, session: Session, actor_user: ActorUser, dto: TerritoryCreate) -> TerritoryRead:
        if not dto.name.strip():
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name is required")

        territory = CRMTerritory(
            name=dto.name.strip(),
            description=dto.description,
            color=dto.color,
            owner_user_id=dto.owner_user_id,
            rules=[rule.model_dump(mode="json") for rule in dto.rules],
            is_active=dto.is_active,
            priority=dto.priority,
        )
        session.add(territory)
        session.flush()

        after = _territory_snapshot(territory)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(territory.id),
            action="create",
            before=None,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.territory.created",
                actor_user.user_id,
                {"territory_id": str(territory.id), "name": territory.name, "rule_count": len(territory.rules)},
            )
        )
        session.commit()
        session.refresh(territory)
        logger.info("territory.created", extra={"territory_id": str(territory.id)})
        return TerritoryRead.model_validate(territory)

    def update_territory(
        self,
        session: Session,
        actor_user: ActorUser,
        territory_id: uuid.UUID,
        dto: TerritoryUpdate,
    ) -> TerritoryRead:
        with _domain_errors():
            territory = self.territories.require(session, territory_id)

        changes = dto.model_dump(exclude_unset=True)
        if "rules" in changes and dto.rules is not None:
            changes["rules"] = [rule.model_dump(mode="json") for rule in dto.rules]
        if isinstance(changes.get("name"), str):
            changes["name"] = changes["name"].strip()
            if not changes["name"]:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name cannot be empty")

        before = _territory_snapshot(territory)
        for key, value in changes.items():
            if value is None and key in _NON_NULLABLE_FIELDS:
                continue
            setattr(territory, key, value)
        territory.updated_at = utcnow()
        session.add(territory)
        session.flush()

        after = _territory_snapshot(territory)
        changed_fields = sorted(key for key in after if after[key] != before[key])
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(territory.id),
            action="update",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.territory.updated",
                actor_user.user_id,
                {"territory_id": str(territory.id), "changed_fields": changed_fields},
            )
        )
        session.commit()
        session.refresh(territory)
        return TerritoryRead.model_validate(territory)

    def delete_territory(self, session: Session, actor_user: ActorUser, territory_id: uuid.UUID) -> None:
        with _domain_errors():
            territory = self.territories.require(session, territory_id)

        before = _territory_snapshot(territory)
        removed = self.assignments.delete_for_territory(session, territory_id)
        session.delete(territory)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(territory_id),
            action="delete",
            before=before,
            after={"removed_assignments": len(removed)},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.territory.deleted",
                actor_user.user_id,
                {"territory_id": str(territory_id), "removed_assignments": len(removed)},
            )
        )
        session.commit()
        logger.info("territory.deleted", extra={"territory_id": str(territory_id)})

    def get_territory(self, session: Session, territory_id: uuid.UUID) -> TerritoryDetail:
        with _domain_errors():
            territory = self.territories.require(session, territory_id)

        grouped: dict[str, list[TerritoryAssignmentRead]] = {key: [] for key in _GROUP_KEYS.values()}
        for assignment in self.assignments.list_by_territory(session, territory_id):
            group = _GROUP_KEYS.get(assignment.entity_type)
            if group is not None:
                grouped[group].append(TerritoryAssignmentRead.model_validate(assignment))

        read = TerritoryRead.model_validate(territory)
        return TerritoryDetail(**read.model_dump(), assignments=TerritoryAssignmentsByType(**grouped))

    def list_territories(self, session: Session, *, include_inactive: bool = False) -> list[TerritoryListItem]:
        territories = self.territories.list_all(session, include_inactive=include_inactive)
        counts = self.assignments.count_by_territory(session, [territory.id for territory in territories])

        items: list[TerritoryListItem] = []
        for territory in territories:
            by_type = counts.get(territory.id, {})
            actual = ActualCounts(
                contacts=by_type.get("contact", 0),
                companies=by_type.get("company", 0),
                deals=by_type.get("deal", 0),
            )
            read = TerritoryRead.model_validate(territory)
            items.append(TerritoryListItem(**read.model_dump(), actual_counts=actual))
        return items

    def find_assignment(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> TerritoryAssignmentRead | None:
        _validate_entity_type(entity_type)
        assignment = self.assignments.find_by_entity(session, entity_type, entity_id)
        return TerritoryAssignmentRead.model_validate(assignment) if assignment is not None else None

    def assign_entity(
        self,
        session: Session,
        actor_user: ActorUser,
        territory_id: uuid.UUID,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        auto_assigned: bool = False,
    ) -> TerritoryAssignmentRead:
        _validate_entity_type(entity_type)
        store = self._entity_store_factory(session)

        with _domain_errors():
            self.territories.require(session, territory_id)
            if store.get_entity(entity_type, entity_id) is None:
                raise EntityNotFoundError(entity_type, entity_id)

        assignment, vacated_territory_id = self.assignments.assign(
            session,
            territory_id,
            entity_type,
            entity_id,
            auto_assigned=auto_assigned,
        )
        recompute_counters(session, territory_id, store)
        if vacated_territory_id is not None:
            recompute_counters(session, vacated_territory_id, store)

        payload = {
            "territory_id": str(territory_id),
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "auto_assigned": auto_assigned,
            "previous_territory_id": str(vacated_territory_id) if vacated_territory_id else None,
        }
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(territory_id),
            action="assign",
            before={"territory_id": payload["previous_territory_id"]} if vacated_territory_id else None,
            after=payload,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("crm.territory.entity_assigned", actor_user.user_id, payload))
        session.commit()
        session.refresh(assignment)

        observe_assignment(entity_type, auto_assigned)
        logger.info("territory.entity_assigned", extra=payload)
        return TerritoryAssignmentRead.model_validate(assignment)

    def unassign_entity(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> uuid.UUID | None:
        """Remove the entity's assignment; a missing assignment is a no-op returning ``None``."""

        _validate_entity_type(entity_type)
        return self._unassign(session, actor_user, entity_type, entity_id, reason="manual")

    def purge_entity(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> uuid.UUID | None:
        if entity_type not in ENTITY_TYPES:
            return None
        return self._unassign(session, SYSTEM_ACTOR, entity_type, entity_id, reason="entity_deleted")

    def _unassign(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        reason: str,
    ) -> uuid.UUID | None:
        vacated_territory_id = self.assignments.unassign(session, entity_type, entity_id)
        if vacated_territory_id is None:
            return None

        recompute_counters(session, vacated_territory_id, self._entity_store_factory(session))
        payload = {
            "territory_id": str(vacated_territory_id),
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "reason": reason,
        }
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(vacated_territory_id),
            action="unassign",
            before=payload,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("crm.territory.entity_unassigned", actor_user.user_id, payload))
        session.commit()

        observe_unassignment(entity_type)
        logger.info(
            "territory.entity_unassigned",
            extra=payload,
        )
        return vacated_territory_id

    def auto_assign_all(self, session: Session, actor_user: ActorUser, entity_type: str) -> AutoAssignResult:
        """Run every entity of ``entity_type`` through the matcher and store the winners.

        Each changed assignment commits on its own, so an interrupted run can simply
        be started again. Counters are re-derived once at the end for every active
        territory and every territory an entity moved away from.
        """

        _validate_entity_type(entity_type)
        settings = get_settings()
        store = self._entity_store_factory(session)
        overwrite_manual = settings.territory_auto_assign_overwrite_manual

        candidates = [
            _MatchCandidate(id=territory.id, rules=list(territory.rules or []))
            for territory in self.territories.list_active(session)
        ]
        result = AutoAssignResult(entity_type=entity_type)
        vacated: list[uuid.UUID] = []
        started = time.perf_counter()
        final_status = "failed"

        with tracer.start_as_current_span("crm.territory.auto_assign") as span:
            span.set_attribute("entity_type", entity_type)
            span.set_attribute("territory_count", len(candidates))
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)

            logger.info(
                "territory.auto_assign.started",
                extra={"entity_type": entity_type, "duration_ms": 0.0},
            )
            try:
                for chunk in store.iter_entity_chunks(entity_type, settings.territory_auto_assign_chunk_size):
                    self._auto_assign_chunk(
                        session,
                        store,
                        entity_type,
                        chunk,
                        candidates,
                        result,
                        vacated,
                        overwrite_manual=overwrite_manual,
                    )

                failed_recomputes = recompute_many(
                    session,
                    [candidate.id for candidate in candidates] + vacated,
                    store,
                )
                final_status = "succeeded"
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.exception(
                    "territory.auto_assign.aborted",
                    extra={"entity_type": entity_type, "error": str(exc)[:500]},
                )
                raise
            finally:
                observe_auto_assign_run(entity_type, final_status, time.perf_counter() - started)

            span.set_attribute("assigned", result.assigned)
            span.set_attribute("unchanged", result.unchanged)
            span.set_attribute("unmatched", result.unmatched)
            span.set_attribute("failed", result.failed)

        summary = result.model_dump(exclude={"entity_type"})
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.auto_assign",
            entity_id=entity_type,
            action="auto_assign",
            before=None,
            after={**summary, "failed_recomputes": [str(item) for item in failed_recomputes]},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.territory.auto_assign_completed",
                actor_user.user_id,
                {"entity_type": entity_type, **summary},
            )
        )
        logger.info(
            "territory.auto_assign.finished",
            extra={
                "entity_type": entity_type,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                **summary,
            },
        )
        return result

    def _auto_assign_chunk(
        self,
        session: Session,
        store: EntityStore,
        entity_type: str,
        chunk: list[Any],
        candidates: list[_MatchCandidate],
        result: AutoAssignResult,
        vacated: list[uuid.UUID],
        *,
        overwrite_manual: bool,
    ) -> None:
        # commits below expire the chunk's ORM rows, so everything is read up front
        resolved: list[tuple[uuid.UUID, dict[str, Any]]] = []
        for entity in chunk:
            entity_id = entity.id
            try:
                resolved.append((entity_id, {name: store.get_entity_field(entity, name) for name in RULE_FIELDS}))
            except Exception as exc:
                result.failed += 1
                logger.warning(
                    "territory.auto_assign.entity_failed",
                    extra={"entity_type": entity_type, "entity_id": str(entity_id), "error": str(exc)[:500]},
                )

        existing = {
            entity_id: (assignment.territory_id, assignment.auto_assigned)
            for entity_id, assignment in self.assignments.find_by_entities(
                session,
                entity_type,
                [entity_id for entity_id, _ in resolved],
            ).items()
        }

        for entity_id, fields in resolved:
            match = find_matching_territory(fields, candidates)
            if match is None:
                result.unmatched += 1
                continue

            current = existing.get(entity_id)
            if current is not None:
                current_territory_id, current_auto = current
                if current_territory_id == match.id:
                    result.unchanged += 1
                    continue
                if not current_auto and not overwrite_manual:
                    result.skipped_manual += 1
                    continue

            try:
                _, vacated_territory_id = self.assignments.assign(
                    session,
                    match.id,
                    entity_type,
                    entity_id,
                    auto_assigned=True,
                )
                session.commit()
            except Exception as exc:
                session.rollback()
                result.failed += 1
                logger.warning(
                    "territory.auto_assign.entity_failed",
                    extra={
                        "entity_type": entity_type,
                        "entity_id": str(entity_id),
                        "territory_id": str(match.id),
                        "error": str(exc)[:500],
                    },
                )
                continue

            result.assigned += 1
            observe_assignment(entity_type, True)
            if vacated_territory_id is not None:
                vacated.append(vacated_territory_id)

    def get_stats_by_region(self, session: Session) -> list[RegionStats]:
        stats: dict[str, RegionStats] = {}
        for territory in self.territories.list_all(session, include_inactive=True):
            label = region_label(territory.rules)
            entry = stats.setdefault(label, RegionStats(region=label))
            entry.territories += 1
            entry.total_contacts += territory.assigned_contacts
            entry.total_companies += territory.assigned_companies
            entry.total_deals += territory.assigned_deals
            entry.total_value += territory.total_deal_value
        return list(stats.values())

    def recompute_territory(self, session: Session, actor_user: ActorUser, territory_id: uuid.UUID) -> TerritoryRead:
        with _domain_errors():
            territory = self.territories.require(session, territory_id)

        recompute_counters(session, territory_id, self._entity_store_factory(session))
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(territory_id),
            action="recompute",
            before=None,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(territory)
        return TerritoryRead.model_validate(territory)

    def reconcile_counters(self, session: Session, actor_user: ActorUser = SYSTEM_ACTOR) -> ReconcileResult:
        total, failed = reconcile_all_counters(session, self._entity_store_factory(session))
        logger.info(
            "territory.reconcile.finished",
            extra={"territories": total, "failed": len(failed)},
        )
        if failed:
            logger.warning(
                "territory.reconcile.partial",
                extra={"territory_id": ",".join(str(item) for item in failed), "failed": len(failed)},
            )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.reconcile",
            entity_id="all",
            action="reconcile",
            before=None,
            after={"territories": total, "failed_territory_ids": [str(item) for item in failed]},
            correlation_id=actor_user.correlation_id,
        )
        return ReconcileResult(territories=total, failed_territory_ids=failed)


territory_service = TerritoryService()
