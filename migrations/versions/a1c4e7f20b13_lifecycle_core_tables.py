"""lifecycle_core_tables

Create users and the five lifecycle tables (test_scenarios, test_plans,
test_cycles, test_executions, defects). Every lifecycle table carries
``lock_version`` for optimistic locking.

Revision ID: a1c4e7f20b13
Revises:
Create Date: 2026-10-12 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c4e7f20b13"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("username", sa.String(length=50), nullable=False),
            sa.Column("email", sa.String(length=100), nullable=False),
            sa.Column("first_name", sa.String(length=50), nullable=True),
            sa.Column("last_name", sa.String(length=50), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False),
            sa.Column("department", sa.String(length=100), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("username"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_role", "users", ["role"])

    if "test_scenarios" not in existing_tables:
        op.create_table(
            "test_scenarios",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("scenario_code", sa.String(length=50), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("module_feature", sa.String(length=100), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("action", sa.Text(), nullable=True),
            sa.Column("expected_outcome", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="Draft"),
            sa.Column("owner_id", sa.Integer(), nullable=True),
            sa.Column("reviewed_by", sa.Integer(), nullable=True),
            sa.Column("review_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
            sa.Column("lock_version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["reviewed_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("scenario_code"),
        )
        op.create_index("ix_test_scenarios_status", "test_scenarios", ["status"])
        op.create_index("ix_test_scenarios_owner_id", "test_scenarios", ["owner_id"])

    if "test_plans" not in existing_tables:
        op.create_table(
            "test_plans",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("objective", sa.Text(), nullable=True),
            sa.Column("scope", sa.Text(), nullable=True),
            sa.Column("test_type", sa.String(length=50), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="Draft"),
            sa.Column("created_by", sa.Integer(), nullable=False),
            sa.Column("approved_by", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("lock_version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
            sa.ForeignKeyConstraint(["approved_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_plans_status", "test_plans", ["status"])
        op.create_index("ix_test_plans_created_by", "test_plans", ["created_by"])

    if "test_cycles" not in existing_tables:
        op.create_table(
            "test_cycles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("test_plan_id", sa.Integer(), nullable=False),
            sa.Column("cycle_name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="Planning"),
            sa.Column("created_by", sa.Integer(), nullable=False),
            sa.Column("assigned_testers", sa.JSON(), nullable=True),
            sa.Column("environment", sa.String(length=100), nullable=True),
            sa.Column("completion_percentage", sa.Float(), nullable=False, server_default="0"),
            sa.Column("planned_start_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("planned_end_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("lock_version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["test_plan_id"], ["test_plans.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_cycles_test_plan_id", "test_cycles", ["test_plan_id"])
        op.create_index("ix_test_cycles_status", "test_cycles", ["status"])
        op.create_index("ix_test_cycles_created_by", "test_cycles", ["created_by"])

    if "test_executions" not in existing_tables:
        op.create_table(
            "test_executions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("test_cycle_id", sa.Integer(), nullable=False),
            sa.Column("test_scenario_id", sa.Integer(), nullable=False),
            sa.Column("assigned_tester", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="Not Started"),
            sa.Column("execution_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completion_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("actual_duration", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("retest_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("previous_attempt_id", sa.Integer(), nullable=True),
            sa.Column("lock_version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["test_cycle_id"], ["test_cycles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["test_scenario_id"], ["test_scenarios.id"]),
            sa.ForeignKeyConstraint(["assigned_tester"], ["users.id"]),
            sa.ForeignKeyConstraint(["previous_attempt_id"], ["test_executions.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_executions_test_cycle_id", "test_executions", ["test_cycle_id"])
        op.create_index("ix_test_executions_test_scenario_id", "test_executions", ["test_scenario_id"])
        op.create_index("ix_test_executions_assigned_tester", "test_executions", ["assigned_tester"])
        op.create_index("ix_test_executions_status", "test_executions", ["status"])
        op.create_index("ix_test_executions_previous_attempt_id", "test_executions", ["previous_attempt_id"])

    if "defects" not in existing_tables:
        op.create_table(
            "defects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("defect_code", sa.String(length=50), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=False, server_default="Medium"),
            sa.Column("category", sa.String(length=30), nullable=False, server_default="Functional"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="Open"),
            sa.Column("reported_by", sa.Integer(), nullable=False),
            sa.Column("assigned_to", sa.Integer(), nullable=True),
            sa.Column("assigned_group", sa.String(length=100), nullable=True),
            sa.Column("test_cycle_id", sa.Integer(), nullable=True),
            sa.Column("test_execution_id", sa.Integer(), nullable=True),
            sa.Column("test_scenario_id", sa.Integer(), nullable=True),
            sa.Column("reported_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("assigned_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolved_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("closed_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolution_notes", sa.Text(), nullable=True),
            sa.Column("root_cause", sa.Text(), nullable=True),
            sa.Column("solution", sa.Text(), nullable=True),
            sa.Column("retest_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("retest_result", sa.String(length=20), nullable=True),
            sa.Column("retest_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("retest_notes", sa.Text(), nullable=True),
            sa.Column("reopen_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("lock_version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["reported_by"], ["users.id"]),
            sa.ForeignKeyConstraint(["assigned_to"], ["users.id"]),
            sa.ForeignKeyConstraint(["test_cycle_id"], ["test_cycles.id"]),
            sa.ForeignKeyConstraint(["test_execution_id"], ["test_executions.id"]),
            sa.ForeignKeyConstraint(["test_scenario_id"], ["test_scenarios.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("defect_code"),
        )
        op.create_index("ix_defects_severity", "defects", ["severity"])
        op.create_index("ix_defects_category", "defects", ["category"])
        op.create_index("ix_defects_status", "defects", ["status"])
        op.create_index("ix_defects_reported_by", "defects", ["reported_by"])
        op.create_index("ix_defects_assigned_to", "defects", ["assigned_to"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in ("defects", "test_executions", "test_cycles", "test_plans", "test_scenarios", "users"):
        if table in existing_tables:
            op.drop_table(table)
