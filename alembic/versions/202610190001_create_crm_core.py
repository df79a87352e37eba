"""create crm users, leads, goals, notes, budget templates

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_user",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("reports_to_id", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["reports_to_id"], ["crm_user.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("email", name="uq_crm_user_email"),
    )
    op.create_index("ix_crm_user_reports_to_id", "crm_user", ["reports_to_id"], unique=False)

    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("vehicle_model", sa.Text(), nullable=False),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("budget", sa.Text(), nullable=True),
        sa.Column("trade_in_info", sa.Text(), nullable=True),
        sa.Column("delivery", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("lead_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=64), nullable=False, server_default="nuevo"),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="otro"),
        sa.Column("assigned_to_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("team", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["assigned_to_id"], ["crm_user.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by_id"], ["crm_user.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_crm_lead_scope_filter",
        "crm_lead",
        ["assigned_to_id", "status", "created_at"],
        unique=False,
    )
    op.create_index("ix_crm_lead_team", "crm_lead", ["team"], unique=False)

    op.create_table(
        "crm_lead_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("lead_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=64), nullable=False),
        sa.Column("actor_name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_crm_lead_history_lead_id", "crm_lead_history", ["lead_id"], unique=False)

    op.create_table(
        "crm_lead_note",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("lead_id", sa.Integer(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("author_id", sa.Integer(), nullable=True),
        sa.Column("author_name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_crm_lead_note_lead_id", "crm_lead_note", ["lead_id"], unique=False)

    op.create_table(
        "crm_goal",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("salesperson_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("sales_target", sa.Integer(), nullable=False),
        sa.Column("lead_target", sa.Integer(), nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["salesperson_id"], ["crm_user.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("salesperson_id", "month", name="uq_crm_goal_salesperson_month"),
    )

    op.create_table(
        "crm_budget_template",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("brand", sa.String(length=128), nullable=False),
        sa.Column("vehicle_model", sa.String(length=255), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("cash_price", sa.Numeric(14, 2), nullable=True),
        sa.Column("technical_specs", sa.Text(), nullable=True),
        sa.Column("installment_plans", sa.JSON(), nullable=True),
        sa.Column("bonuses", sa.Text(), nullable=True),
        sa.Column("down_payment", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "crm_assignment_cursor",
        sa.Column("pool", sa.String(length=64), primary_key=True),
        sa.Column("last_user_id", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("crm_assignment_cursor")
    op.drop_table("crm_budget_template")
    op.drop_table("crm_goal")
    op.drop_index("ix_crm_lead_note_lead_id", table_name="crm_lead_note")
    op.drop_table("crm_lead_note")
    op.drop_index("ix_crm_lead_history_lead_id", table_name="crm_lead_history")
    op.drop_table("crm_lead_history")
    op.drop_index("ix_crm_lead_team", table_name="crm_lead")
    op.drop_index("ix_crm_lead_scope_filter", table_name="crm_lead")
    op.drop_table("crm_lead")
    op.drop_index("ix_crm_user_reports_to_id", table_name="crm_user")
    op.drop_table("crm_user")
