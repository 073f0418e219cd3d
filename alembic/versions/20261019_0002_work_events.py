"""Add durable work event queue for worker dispatch."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("deliveries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_work_events_name", "work_events", ["name"])
    op.create_index("ix_work_events_status", "work_events", ["status"])
    op.create_index("ix_work_events_worker_id", "work_events", ["worker_id"])
    op.create_index("idx_work_events_queue", "work_events", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_work_events_queue", table_name="work_events")
    op.drop_index("ix_work_events_worker_id", table_name="work_events")
    op.drop_index("ix_work_events_status", table_name="work_events")
    op.drop_index("ix_work_events_name", table_name="work_events")
    op.drop_table("work_events")
