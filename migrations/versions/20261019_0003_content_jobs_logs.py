"""stories, content items, job queue and job log stream

Revision ID: 20261019_0003
Revises: 20261019_0002
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0003"
down_revision = "20261019_0002"
branch_labels = None
depends_on = None

ACCOUNT_SCOPED_TABLES = ["stories", "content_items", "jobs", "job_log_entries"]


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "stories",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("source_id", sa.String(length=36), nullable=True),
        sa.Column("source_name", sa.String(length=120), nullable=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("full_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("url", sa.String(length=1000), nullable=True),
        sa.Column("publication_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("relevance_score", sa.Float(), nullable=True),
        sa.Column("keywords_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_stories_account_created_at", "stories", ["account_id", "created_at"], unique=False)
    op.create_index("ix_stories_account_relevance", "stories", ["account_id", "relevance_score"], unique=False)

    op.create_table(
        "content_items",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("story_id", sa.String(length=36), nullable=True),
        sa.Column("prompt_category", sa.String(length=48), nullable=False),
        sa.Column("template_id", sa.String(length=36), nullable=True),
        sa.Column("version_id", sa.String(length=36), nullable=True),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("regenerated_from_id", sa.String(length=36), nullable=True),
        sa.Column("content_data_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("raw_text", sa.Text(), nullable=True),
        sa.Column("parse_error", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="draft"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["story_id"], ["stories.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_content_items_account_created_at",
        "content_items",
        ["account_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_content_items_account_status_created_at",
        "content_items",
        ["account_id", "status", "created_at"],
        unique=False,
    )
    op.create_index("ix_content_items_story", "content_items", ["story_id"], unique=False)

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("job_type", sa.String(length=40), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_details", sa.String(length=255), nullable=True),
        sa.Column("results_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("retry_of_job_id", sa.String(length=36), nullable=True),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("worker_id", sa.String(length=80), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_jobs_account_created_at", "jobs", ["account_id", "created_at"], unique=False)
    op.create_index(
        "ix_jobs_account_status_created_at",
        "jobs",
        ["account_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_jobs_dedupe_lookup",
        "jobs",
        ["account_id", "job_type", "payload_hash", "status"],
        unique=False,
    )
    op.create_index("ix_jobs_status_heartbeat", "jobs", ["status", "heartbeat_at"], unique=False)

    op.create_table(
        "job_log_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("level", sa.String(length=8), nullable=False, server_default="info"),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="system"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_job_log_entries_account_job_timestamp",
        "job_log_entries",
        ["account_id", "job_id", "timestamp"],
        unique=False,
    )
    op.create_index(
        "ix_job_log_entries_account_timestamp",
        "job_log_entries",
        ["account_id", "timestamp"],
        unique=False,
    )

    if _is_postgresql():
        for table_name in ACCOUNT_SCOPED_TABLES:
            op.execute(f"ALTER TABLE {table_name} ENABLE ROW LEVEL SECURITY;")
            op.execute(f"ALTER TABLE {table_name} FORCE ROW LEVEL SECURITY;")
            # The worker claims and reclaims across accounts with no account bound.
            op.execute(
                f"""
                CREATE POLICY {table_name}_select_policy ON {table_name}
                FOR SELECT USING (
                    app_current_account_id() IS NULL OR account_id = app_current_account_id()
                );
                """
            )
            op.execute(
                f"""
                CREATE POLICY {table_name}_insert_policy ON {table_name}
                FOR INSERT WITH CHECK (
                    app_current_account_id() IS NULL OR account_id = app_current_account_id()
                );
                """
            )
            op.execute(
                f"""
                CREATE POLICY {table_name}_update_policy ON {table_name}
                FOR UPDATE USING (
                    app_current_account_id() IS NULL OR account_id = app_current_account_id()
                );
                """
            )
            op.execute(
                f"""
                CREATE POLICY {table_name}_delete_policy ON {table_name}
                FOR DELETE USING (
                    app_current_account_id() IS NULL OR account_id = app_current_account_id()
                );
                """
            )


def downgrade() -> None:
    if _is_postgresql():
        for table_name in reversed(ACCOUNT_SCOPED_TABLES):
            op.execute(f"DROP POLICY IF EXISTS {table_name}_select_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_insert_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_update_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_delete_policy ON {table_name};")

    op.drop_index("ix_job_log_entries_account_timestamp", table_name="job_log_entries")
    op.drop_index("ix_job_log_entries_account_job_timestamp", table_name="job_log_entries")
    op.drop_table("job_log_entries")

    op.drop_index("ix_jobs_status_heartbeat", table_name="jobs")
    op.drop_index("ix_jobs_dedupe_lookup", table_name="jobs")
    op.drop_index("ix_jobs_account_status_created_at", table_name="jobs")
    op.drop_index("ix_jobs_account_created_at", table_name="jobs")
    op.drop_table("jobs")

    op.drop_index("ix_content_items_story", table_name="content_items")
    op.drop_index("ix_content_items_account_status_created_at", table_name="content_items")
    op.drop_index("ix_content_items_account_created_at", table_name="content_items")
    op.drop_table("content_items")

    op.drop_index("ix_stories_account_relevance", table_name="stories")
    op.drop_index("ix_stories_account_created_at", table_name="stories")
    op.drop_table("stories")
