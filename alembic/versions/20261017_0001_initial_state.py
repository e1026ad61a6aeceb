"""Initial coordination state schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("channel_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("path"),
    )
    op.create_index("ix_projects_name", "projects", ["name"], unique=False)

    op.create_table(
        "execution_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_path", sa.String(), nullable=False),
        sa.Column("prd_file", sa.String(), nullable=False),
        sa.Column("timestamp", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("exit_code", sa.Integer(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_execution_history_lookup",
        "execution_history",
        ["project_path", "prd_file", sa.text("timestamp DESC")],
        unique=False,
    )

    op.create_table(
        "persisted_status",
        sa.Column("project_path", sa.String(), nullable=False),
        sa.Column("item_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("branch", sa.String(), nullable=False, server_default=""),
        sa.Column("timestamp", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("project_path", "item_name"),
    )

    op.create_table(
        "scanner_bookmarks",
        sa.Column("scope_key", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_scan", sa.String(), nullable=False, server_default=""),
        sa.Column("items_json", sa.Text(), nullable=False, server_default="{}"),
        sa.PrimaryKeyConstraint("scope_key"),
    )

    op.create_table(
        "schema_meta",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("schema_meta")
    op.drop_table("scanner_bookmarks")
    op.drop_table("persisted_status")
    op.drop_index("idx_execution_history_lookup", table_name="execution_history")
    op.drop_table("execution_history")
    op.drop_index("ix_projects_name", table_name="projects")
    op.drop_table("projects")
