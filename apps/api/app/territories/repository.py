from __future__ import annotations

import uuid
from collections.abc import Sequence

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.territories.errors import TerritoryNotFoundError
from app.territories.models import CRMTerritory, CRMTerritoryAssignment, utcnow


class TerritoryRepository:
    def get(self, session: Session, territory_id: uuid.UUID) -> CRMTerritory | None:
        return session.get(CRMTerritory, territory_id)

    def require(self, session: Session, territory_id: uuid.UUID) -> CRMTerritory:
        territory = self.get(session, territory_id)
        if territory is None:
            raise TerritoryNotFoundError(territory_id)
        return territory

    def list_all(self, session: Session, *, include_inactive: bool = False) -> list[CRMTerritory]:
        stmt: Select[tuple[CRMTerritory]] = select(CRMTerritory)
        if not include_inactive:
            stmt = stmt.where(CRMTerritory.is_active.is_(True))
        return list(session.scalars(self._match_order(stmt)).all())

    def list_active(self, session: Session) -> list[CRMTerritory]:
        return self.list_all(session, include_inactive=False)

    def list_ids(self, session: Session) -> list[uuid.UUID]:
        return list(session.scalars(self._match_order(select(CRMTerritory.id))).all())

    @staticmethod
    def _match_order(stmt: Select) -> Select:
        # equal priorities fall back to creation order
        return stmt.order_by(CRMTerritory.priority.asc(), CRMTerritory.created_at.asc(), CRMTerritory.id.asc())


class TerritoryAssignmentRepository:
    """Unique ``(entity_type, entity_id) -> territory`` mapping.

    Writes flush but never commit; callers own the transaction.
    """

    def find_by_entity(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> CRMTerritoryAssignment | None:
        return session.scalar(
            select(CRMTerritoryAssignment).where(
                CRMTerritoryAssignment.entity_type == entity_type,
                CRMTerritoryAssignment.entity_id == entity_id,
            )
        )

    def list_by_territory(self, session: Session, territory_id: uuid.UUID) -> list[CRMTerritoryAssignment]:
        stmt = (
            select(CRMTerritoryAssignment)
            .where(CRMTerritoryAssignment.territory_id == territory_id)
            .order_by(CRMTerritoryAssignment.assigned_at.asc(), CRMTerritoryAssignment.id.asc())
        )
        return list(session.scalars(stmt).all())

    def find_by_entities(
        self,
        session: Session,
        entity_type: str,
        entity_ids: Sequence[uuid.UUID],
    ) -> dict[uuid.UUID, CRMTerritoryAssignment]:
        if not entity_ids:
            return {}
        stmt = select(CRMTerritoryAssignment).where(
            CRMTerritoryAssignment.entity_type == entity_type,
            CRMTerritoryAssignment.entity_id.in_(list(entity_ids)),
        )
        return {row.entity_id: row for row in session.scalars(stmt).all()}

    def count_by_territory(
        self,
        session: Session,
        territory_ids: Sequence[uuid.UUID],
    ) -> dict[uuid.UUID, dict[str, int]]:
        counts: dict[uuid.UUID, dict[str, int]] = {territory_id: {} for territory_id in territory_ids}
        if not territory_ids:
            return counts
        stmt = (
            select(CRMTerritoryAssignment.territory_id, CRMTerritoryAssignment.entity_type, func.count())
            .where(CRMTerritoryAssignment.territory_id.in_(list(territory_ids)))
            .group_by(CRMTerritoryAssignment.territory_id, CRMTerritoryAssignment.entity_type)
        )
        for territory_id, entity_type, total in session.execute(stmt).all():
            counts[territory_id][entity_type] = int(total)
        return counts

    def assign(
        self,
        session: Session,
        territory_id: uuid.UUID,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        auto_assigned: bool,
    ) -> tuple[CRMTerritoryAssignment, uuid.UUID | None]:
        """Upsert the entity's assignment and return it with the territory it left, if any.

        A concurrent insert for the same entity loses on the unique constraint. The
        insert runs in a savepoint, so only it is rolled back and the write is retried
        as an update while the caller's pending work survives.
        """

        existing = self.find_by_entity(session, entity_type, entity_id)
        if existing is None:
            assignment = CRMTerritoryAssignment(
                territory_id=territory_id,
                entity_type=entity_type,
                entity_id=entity_id,
                assigned_at=utcnow(),
                auto_assigned=auto_assigned,
            )
            try:
                with session.begin_nested():
                    session.add(assignment)
                return assignment, None
            except IntegrityError:
                existing = self.find_by_entity(session, entity_type, entity_id)
                if existing is None:
                    raise

        previous_territory_id = existing.territory_id
        existing.territory_id = territory_id
        existing.assigned_at = utcnow()
        existing.auto_assigned = auto_assigned
        session.add(existing)
        session.flush()
        vacated = previous_territory_id if previous_territory_id != territory_id else None
        return existing, vacated

    def unassign(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> uuid.UUID | None:
        assignment = self.find_by_entity(session, entity_type, entity_id)
        if assignment is None:
            return None
        territory_id = assignment.territory_id
        session.delete(assignment)
        session.flush()
        return territory_id

    def delete_for_territory(self, session: Session, territory_id: uuid.UUID) -> list[CRMTerritoryAssignment]:
        assignments = self.list_by_territory(session, territory_id)
        for assignment in assignments:
            session.delete(assignment)
        session.flush()
        return assignments
