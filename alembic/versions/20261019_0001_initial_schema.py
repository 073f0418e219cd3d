"""Initial study generation schema: users, ledger, requests, materials."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("used_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subscription_tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("subscription_expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.UniqueConstraint("external_id", name="uq_users_external_id"),
    )
    op.create_index("ix_users_external_id", "users", ["external_id"])
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "credit_ledger",
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index("ix_credit_ledger_user_id", "credit_ledger", ["user_id"])
    op.create_index("ix_credit_ledger_request_id", "credit_ledger", ["request_id"])

    op.create_table(
        "study_requests",
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("purpose", sa.String(), nullable=False),
        sa.Column("difficulty", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("request_id"),
    )
    op.create_index("ix_study_requests_user_id", "study_requests", ["user_id"])
    op.create_index("ix_study_requests_status", "study_requests", ["status"])
    op.create_index(
        "idx_study_requests_user_status",
        "study_requests",
        ["user_id", "status"],
    )

    op.create_table(
        "study_materials",
        sa.Column("material_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("difficulty_level", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("layout_json", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["request_id"],
            ["study_requests.request_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("material_id"),
        sa.UniqueConstraint("request_id", name="uq_study_materials_request_id"),
    )
    op.create_index("ix_study_materials_course_id", "study_materials", ["course_id"])
    op.create_index("idx_study_materials_created_by", "study_materials", ["created_by"])


def downgrade() -> None:
    op.drop_index("idx_study_materials_created_by", table_name="study_materials")
    op.drop_index("ix_study_materials_course_id", table_name="study_materials")
    op.drop_table("study_materials")
    op.drop_index("idx_study_requests_user_status", table_name="study_requests")
    op.drop_index("ix_study_requests_status", table_name="study_requests")
    op.drop_index("ix_study_requests_user_id", table_name="study_requests")
    op.drop_table("study_requests")
    op.drop_index("ix_credit_ledger_request_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_external_id", table_name="users")
    op.drop_table("users")
