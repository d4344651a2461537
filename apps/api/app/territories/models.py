from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMTerritory(Base):
    __tablename__ = "crm_territory"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(String(32), nullable=False)
    owner_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    rules: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    assigned_contacts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    assigned_companies: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    assigned_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_deal_value: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=Decimal("0"),
        server_default="0",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    assignments: Mapped[list[CRMTerritoryAssignment]] = relationship(
        "CRMTerritoryAssignment",
        back_populates="territory",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_crm_territory_active_priority", "is_active", "priority", "created_at"),)


class CRMTerritoryAssignment(Base):
    __tablename__ = "crm_territory_assignment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    territory_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_territory.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    auto_assigned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    territory: Mapped[CRMTerritory] = relationship("CRMTerritory", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_crm_territory_assignment_entity"),
        CheckConstraint("entity_type IN ('contact', 'company', 'deal')", name="ck_crm_territory_assignment_entity_type"),
        Index("ix_crm_territory_assignment_territory", "territory_id", "entity_type"),
    )
