"""decision_engine_initial

Create decision process, instance, transition, proposal and scheduled job tables.

Revision ID: a1c4e2f90b10
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c4e2f90b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "decision_processes" not in existing_tables:
        op.create_table(
            "decision_processes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("process_schema", sa.JSON(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    if "process_instances" not in existing_tables:
        op.create_table(
            "process_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("process_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("owner_profile_id", sa.String(length=150), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("current_state_id", sa.String(length=100), nullable=True),
            sa.Column("instance_data", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["process_id"], ["decision_processes.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_instances_process_id", "process_instances", ["process_id"])
        op.create_index("ix_process_instances_owner_profile_id", "process_instances", ["owner_profile_id"])
        op.create_index("ix_process_instances_status", "process_instances", ["status"])

    if "decision_process_transitions" not in existing_tables:
        op.create_table(
            "decision_process_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("process_instance_id", sa.Integer(), nullable=False),
            sa.Column("from_state_id", sa.String(length=100), nullable=False),
            sa.Column("to_state_id", sa.String(length=100), nullable=False),
            sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["process_instance_id"], ["process_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_decision_process_transitions_process_instance_id",
            "decision_process_transitions", ["process_instance_id"],
        )
        op.create_index(
            "ix_transitions_due",
            "decision_process_transitions", ["completed_at", "scheduled_date"],
        )

    if "proposals" not in existing_tables:
        op.create_table(
            "proposals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("process_instance_id", sa.Integer(), nullable=False),
            sa.Column("submitted_by", sa.String(length=150), nullable=True),
            sa.Column("last_edited_by", sa.String(length=150), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="draft"),
            sa.Column("visibility", sa.String(length=20), nullable=False, server_default="visible"),
            sa.Column("proposal_data", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["process_instance_id"], ["process_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_proposals_process_instance_id", "proposals", ["process_instance_id"])
        op.create_index("ix_proposals_submitted_by", "proposals", ["submitted_by"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    op.drop_table("scheduled_jobs")
    op.drop_index("ix_proposals_submitted_by", table_name="proposals")
    op.drop_index("ix_proposals_process_instance_id", table_name="proposals")
    op.drop_table("proposals")
    op.drop_index("ix_transitions_due", table_name="decision_process_transitions")
    op.drop_index(
        "ix_decision_process_transitions_process_instance_id",
        table_name="decision_process_transitions",
    )
    op.drop_table("decision_process_transitions")
    op.drop_index("ix_process_instances_status", table_name="process_instances")
    op.drop_index("ix_process_instances_owner_profile_id", table_name="process_instances")
    op.drop_index("ix_process_instances_process_id", table_name="process_instances")
    op.drop_table("process_instances")
    op.drop_table("decision_processes")
