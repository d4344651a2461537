"""create crm territory and assignment tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_territory",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=32), nullable=False),
        sa.Column("owner_user_id", sa.Uuid(), nullable=True),
        sa.Column("rules", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assigned_contacts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assigned_companies", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assigned_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_deal_value", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_territory_active_priority",
        "crm_territory",
        ["is_active", "priority", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_territory_assignment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("territory_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_assigned", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["territory_id"], ["crm_territory.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "entity_id", name="uq_crm_territory_assignment_entity"),
        sa.CheckConstraint(
            "entity_type IN ('contact', 'company', 'deal')",
            name="ck_crm_territory_assignment_entity_type",
        ),
    )
    op.create_index(
        "ix_crm_territory_assignment_territory",
        "crm_territory_assignment",
        ["territory_id", "entity_type"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_territory_assignment_territory", table_name="crm_territory_assignment")
    op.drop_table("crm_territory_assignment")
    op.drop_index("ix_crm_territory_active_priority", table_name="crm_territory")
    op.drop_table("crm_territory")
