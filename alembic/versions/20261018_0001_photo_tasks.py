"""Create photo task store and task event audit trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "photo_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("params_json", sa.Text(), nullable=False),
        sa.Column("state_data_json", sa.Text(), server_default="{}", nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_invocation_id", sa.String(), nullable=True),
        sa.Column("worker_dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_photo_tasks_status", "photo_tasks", ["status"], unique=False)
    op.create_index(
        "ix_photo_tasks_worker_invocation_id",
        "photo_tasks",
        ["worker_invocation_id"],
        unique=False,
    )
    op.create_index(
        "idx_photo_tasks_status_updated",
        "photo_tasks",
        ["status", "updated_at"],
        unique=False,
    )

    op.create_table(
        "photo_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["photo_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_photo_task_events_task_id",
        "photo_task_events",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_photo_task_events_event_type",
        "photo_task_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_photo_task_events_task_time",
        "photo_task_events",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_photo_task_events_task_time", table_name="photo_task_events")
    op.drop_index("ix_photo_task_events_event_type", table_name="photo_task_events")
    op.drop_index("ix_photo_task_events_task_id", table_name="photo_task_events")
    op.drop_table("photo_task_events")
    op.drop_index("idx_photo_tasks_status_updated", table_name="photo_tasks")
    op.drop_index("ix_photo_tasks_worker_invocation_id", table_name="photo_tasks")
    op.drop_index("ix_photo_tasks_status", table_name="photo_tasks")
    op.drop_table("photo_tasks")
