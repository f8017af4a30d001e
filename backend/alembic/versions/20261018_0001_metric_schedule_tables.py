"""Create portfolio, template, schedule, request, reminder, and run ledger tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("full_name", sa.String(length=256), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="founder"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "companies",
        sa.Column("company_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("founder_id", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["founder_id"], ["users.user_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("company_id"),
    )

    op.create_table(
        "investor_company_relationships",
        sa.Column("investor_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["investor_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("investor_id", "company_id"),
    )

    op.create_table(
        "metric_templates",
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("investor_id", sa.String(length=64), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("template_id"),
    )
    op.create_index("ix_metric_templates_investor_id", "metric_templates", ["investor_id"], unique=False)

    op.create_table(
        "metric_template_items",
        sa.Column("item_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("metric_name", sa.String(length=256), nullable=False),
        sa.Column("period_type", sa.String(length=32), nullable=False),
        sa.Column("data_type", sa.String(length=32), nullable=False, server_default="number"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["template_id"], ["metric_templates.template_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_metric_template_items_template_id", "metric_template_items", ["template_id"], unique=False)

    op.create_table(
        "metric_request_schedules",
        sa.Column("schedule_id", sa.String(length=64), nullable=False),
        sa.Column("investor_id", sa.String(length=64), nullable=False),
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("cadence", sa.String(length=16), nullable=False),
        sa.Column("day_of_month", sa.Integer(), nullable=False),
        sa.Column("company_ids_json", sa.Text(), nullable=True),
        sa.Column("include_future_companies", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("due_days_offset", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("reminder_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reminder_days_json", sa.Text(), nullable=False, server_default="[3,1]"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("day_of_month BETWEEN 1 AND 28", name="ck_metric_request_schedules_day_of_month"),
        sa.CheckConstraint(
            "(is_active AND next_run_at IS NOT NULL) OR (NOT is_active AND next_run_at IS NULL)",
            name="ck_metric_request_schedules_next_run_active",
        ),
        sa.ForeignKeyConstraint(["template_id"], ["metric_templates.template_id"]),
        sa.PrimaryKeyConstraint("schedule_id"),
    )
    op.create_index("ix_metric_request_schedules_investor_id", "metric_request_schedules", ["investor_id"], unique=False)
    op.create_index("ix_metric_request_schedules_is_active", "metric_request_schedules", ["is_active"], unique=False)
    op.create_index("ix_metric_request_schedules_next_run_at", "metric_request_schedules", ["next_run_at"], unique=False)

    op.create_table(
        "metric_definitions",
        sa.Column("definition_id", sa.String(length=64), nullable=False),
        sa.Column("investor_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("period_type", sa.String(length=32), nullable=False),
        sa.Column("data_type", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("definition_id"),
        sa.UniqueConstraint("investor_id", "name", "period_type", name="uq_metric_definitions_key"),
    )
    op.create_index("ix_metric_definitions_investor_id", "metric_definitions", ["investor_id"], unique=False)

    op.create_table(
        "metric_requests",
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("investor_id", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=64), nullable=False),
        sa.Column("metric_definition_id", sa.String(length=64), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("schedule_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["metric_definition_id"], ["metric_definitions.definition_id"]),
        sa.PrimaryKeyConstraint("request_id"),
        sa.UniqueConstraint(
            "investor_id",
            "company_id",
            "metric_definition_id",
            "period_start",
            "period_end",
            name="uq_metric_requests_key",
        ),
    )
    op.create_index("ix_metric_requests_investor_id", "metric_requests", ["investor_id"], unique=False)
    op.create_index("ix_metric_requests_company_id", "metric_requests", ["company_id"], unique=False)
    op.create_index("ix_metric_requests_schedule_id", "metric_requests", ["schedule_id"], unique=False)

    op.create_table(
        "metric_request_reminders",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("metric_request_id", sa.String(length=64), nullable=False),
        sa.Column("schedule_id", sa.String(length=64), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["metric_request_id"], ["metric_requests.request_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index(
        "ix_metric_request_reminders_metric_request_id",
        "metric_request_reminders",
        ["metric_request_id"],
        unique=False,
    )
    op.create_index("ix_metric_request_reminders_schedule_id", "metric_request_reminders", ["schedule_id"], unique=False)
    op.create_index("ix_metric_request_reminders_scheduled_for", "metric_request_reminders", ["scheduled_for"], unique=False)
    op.create_index("ix_metric_request_reminders_status", "metric_request_reminders", ["status"], unique=False)

    op.create_table(
        "scheduled_request_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("schedule_id", sa.String(length=64), nullable=False),
        sa.Column("trigger_kind", sa.String(length=16), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("requests_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("company_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["schedule_id"], ["metric_request_schedules.schedule_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_scheduled_request_runs_schedule_id", "scheduled_request_runs", ["schedule_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_scheduled_request_runs_schedule_id", table_name="scheduled_request_runs")
    op.drop_table("scheduled_request_runs")

    op.drop_index("ix_metric_request_reminders_status", table_name="metric_request_reminders")
    op.drop_index("ix_metric_request_reminders_scheduled_for", table_name="metric_request_reminders")
    op.drop_index("ix_metric_request_reminders_schedule_id", table_name="metric_request_reminders")
    op.drop_index("ix_metric_request_reminders_metric_request_id", table_name="metric_request_reminders")
    op.drop_table("metric_request_reminders")

    op.drop_index("ix_metric_requests_schedule_id", table_name="metric_requests")
    op.drop_index("ix_metric_requests_company_id", table_name="metric_requests")
    op.drop_index("ix_metric_requests_investor_id", table_name="metric_requests")
    op.drop_table("metric_requests")

    op.drop_index("ix_metric_definitions_investor_id", table_name="metric_definitions")
    op.drop_table("metric_definitions")

    op.drop_index("ix_metric_request_schedules_next_run_at", table_name="metric_request_schedules")
    op.drop_index("ix_metric_request_schedules_is_active", table_name="metric_request_schedules")
    op.drop_index("ix_metric_request_schedules_investor_id", table_name="metric_request_schedules")
    op.drop_table("metric_request_schedules")

    op.drop_index("ix_metric_template_items_template_id", table_name="metric_template_items")
    op.drop_table("metric_template_items")

    op.drop_index("ix_metric_templates_investor_id", table_name="metric_templates")
    op.drop_table("metric_templates")

    op.drop_table("investor_company_relationships")
    op.drop_table("companies")
    op.drop_table("users")
