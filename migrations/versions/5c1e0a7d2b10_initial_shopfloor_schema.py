"""initial_shopfloor_schema

Create users, machines, PPIC schedules (assignments, links), operation
plans (steps, approvals) and notifications.

Revision ID: 5c1e0a7d2b10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5c1e0a7d2b10"
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
            sa.Column("username", sa.String(length=100), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("username"),
            sa.UniqueConstraint("email"),
        )

    if "machines" not in existing_tables:
        op.create_table(
            "machines",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("machine_code", sa.String(length=50), nullable=False),
            sa.Column("machine_name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("machine_code"),
        )

    if "ppic_schedules" not in existing_tables:
        op.create_table(
            "ppic_schedules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("njo", sa.String(length=50), nullable=False),
            sa.Column("part_name", sa.String(length=200), nullable=False),
            sa.Column("priority", sa.String(length=20), nullable=False),
            sa.Column("priority_alpha", sa.String(length=10), nullable=True),
            sa.Column("material_status", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("progress", sa.Integer(), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("finish_date", sa.Date(), nullable=False),
            sa.Column("ppic_notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("njo"),
            sa.CheckConstraint("finish_date >= start_date", name="ck_ppic_schedule_dates"),
            sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_ppic_schedule_progress"),
        )
        op.create_index("ix_ppic_schedules_status", "ppic_schedules", ["status"])
        op.create_index("ix_ppic_schedules_start_date", "ppic_schedules", ["start_date"])

    if "machine_assignments" not in existing_tables:
        op.create_table(
            "machine_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("schedule_id", sa.Integer(), nullable=False),
            sa.Column("machine_id", sa.Integer(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("target_hours", sa.Float(), nullable=True),
            sa.Column("scheduled_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("scheduled_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("actual_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("actual_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["schedule_id"], ["ppic_schedules.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["machine_id"], ["machines.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("schedule_id", "sequence", name="uq_assignment_sequence"),
            sa.CheckConstraint("sequence >= 1 AND sequence <= 5", name="ck_assignment_sequence_range"),
        )
        op.create_index("ix_machine_assignments_schedule_id", "machine_assignments", ["schedule_id"])
        op.create_index("ix_machine_assignments_machine_id", "machine_assignments", ["machine_id"])

    if "schedule_links" not in existing_tables:
        op.create_table(
            "schedule_links",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("source_schedule_id", sa.Integer(), nullable=False),
            sa.Column("target_schedule_id", sa.Integer(), nullable=False),
            sa.Column("link_type", sa.String(length=30), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["source_schedule_id"], ["ppic_schedules.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["target_schedule_id"], ["ppic_schedules.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("source_schedule_id", "target_schedule_id", name="uq_schedule_link"),
            sa.CheckConstraint("source_schedule_id != target_schedule_id", name="ck_schedule_link_no_self_loop"),
        )
        op.create_index("ix_schedule_links_source_schedule_id", "schedule_links", ["source_schedule_id"])
        op.create_index("ix_schedule_links_target_schedule_id", "schedule_links", ["target_schedule_id"])

    if "operation_plans" not in existing_tables:
        op.create_table(
            "operation_plans",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("form_number", sa.String(length=30), nullable=False),
            sa.Column("ppic_schedule_id", sa.Integer(), nullable=True),
            sa.Column("part_name", sa.String(length=200), nullable=False),
            sa.Column("material", sa.String(length=200), nullable=True),
            sa.Column("dial_size", sa.String(length=100), nullable=True),
            sa.Column("quantity", sa.Integer(), nullable=True),
            sa.Column("revision", sa.String(length=30), nullable=True),
            sa.Column("no_wp", sa.String(length=50), nullable=True),
            sa.Column("page", sa.String(length=30), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False),
            sa.Column("created_by", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["ppic_schedule_id"], ["ppic_schedules.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("form_number"),
            sa.CheckConstraint(
                "status IN ('draft', 'pending_approval', 'approved', 'rejected')",
                name="ck_operation_plan_status",
            ),
            sa.CheckConstraint("quantity >= 1", name="ck_operation_plan_quantity"),
        )
        op.create_index("ix_operation_plans_ppic_schedule_id", "operation_plans", ["ppic_schedule_id"])
        op.create_index("ix_operation_plans_status", "operation_plans", ["status"])
        op.create_index("ix_operation_plans_created_by", "operation_plans", ["created_by"])

    if "operation_plan_steps" not in existing_tables:
        op.create_table(
            "operation_plan_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("operation_plan_id", sa.Integer(), nullable=False),
            sa.Column("step_number", sa.Integer(), nullable=False),
            sa.Column("picture_url", sa.String(length=500), nullable=True),
            sa.Column("picture_filename", sa.String(length=255), nullable=True),
            sa.Column("clamping_system", sa.Text(), nullable=True),
            sa.Column("raw_material", sa.Text(), nullable=True),
            sa.Column("setting", sa.Text(), nullable=True),
            sa.Column("process", sa.Text(), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("checking_method", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["operation_plan_id"], ["operation_plans.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("operation_plan_id", "step_number", name="uq_plan_step_number"),
            sa.CheckConstraint("step_number >= 1", name="ck_plan_step_number_positive"),
        )
        op.create_index("ix_operation_plan_steps_operation_plan_id", "operation_plan_steps", ["operation_plan_id"])

    if "plan_approvals" not in existing_tables:
        op.create_table(
            "plan_approvals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("operation_plan_id", sa.Integer(), nullable=False),
            sa.Column("approver_role", sa.String(length=20), nullable=False),
            sa.Column("approver_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["operation_plan_id"], ["operation_plans.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approver_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("operation_plan_id", "approver_role", name="uq_plan_approval_role"),
            sa.CheckConstraint(
                "approver_role IN ('PEM', 'Toolpather', 'QC', 'Custom1', 'Custom2')",
                name="ck_plan_approval_role",
            ),
            sa.CheckConstraint(
                "status IN ('pending', 'approved', 'rejected')",
                name="ck_plan_approval_status",
            ),
        )
        op.create_index("ix_plan_approvals_operation_plan_id", "plan_approvals", ["operation_plan_id"])
        op.create_index("ix_plan_approvals_approver_id", "plan_approvals", ["approver_id"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=150), nullable=False),
            sa.Column("event_kind", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
        op.create_index("ix_notifications_event_kind", "notifications", ["event_kind"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "notifications",
        "plan_approvals",
        "operation_plan_steps",
        "operation_plans",
        "schedule_links",
        "machine_assignments",
        "ppic_schedules",
        "machines",
        "users",
    ):
        if table in existing_tables:
            op.drop_table(table)
