"""prompt templates, immutable versions and generation logs

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None

ACCOUNT_SCOPED_TABLES = ["prompt_templates", "prompt_template_versions", "legacy_prompts", "generation_logs"]


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "prompt_templates",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=48), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("current_version_id", sa.String(length=36), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "name", name="uq_prompt_templates_account_name"),
    )
    op.create_index(
        "ix_prompt_templates_account_created_at",
        "prompt_templates",
        ["account_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_prompt_templates_account_category",
        "prompt_templates",
        ["account_id", "category"],
        unique=False,
    )

    op.create_table(
        "prompt_template_versions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("template_id", sa.String(length=36), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("prompt_content", sa.Text(), nullable=False),
        sa.Column("system_message", sa.Text(), nullable=True),
        sa.Column("notes", sa.String(length=255), nullable=True),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_id"], ["prompt_templates.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "version_number", name="uq_prompt_template_versions_template_number"),
    )
    # At most one current version per template.
    op.create_index(
        "ux_prompt_template_versions_current",
        "prompt_template_versions",
        ["template_id"],
        unique=True,
        postgresql_where=sa.text("is_current"),
        sqlite_where=sa.text("is_current = 1"),
    )
    op.create_index(
        "ix_prompt_template_versions_account_created_at",
        "prompt_template_versions",
        ["account_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "legacy_prompts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("category", sa.String(length=48), nullable=False),
        sa.Column("prompt_content", sa.Text(), nullable=False),
        sa.Column("system_message", sa.Text(), nullable=True),
        sa.Column("template_id", sa.String(length=36), nullable=True),
        sa.Column("version_id", sa.String(length=36), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "category", name="uq_legacy_prompts_account_category"),
    )

    op.create_table(
        "generation_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("template_id", sa.String(length=36), nullable=True),
        sa.Column("version_id", sa.String(length=36), nullable=True),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("content_id", sa.String(length=36), nullable=True),
        sa.Column("ai_service", sa.String(length=32), nullable=False),
        sa.Column("model_used", sa.String(length=80), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("generation_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_estimate_usd", sa.Float(), nullable=True),
        sa.Column("prompt_text", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["version_id"], ["prompt_template_versions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_logs_account_created_at",
        "generation_logs",
        ["account_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_generation_logs_template_version",
        "generation_logs",
        ["template_id", "version_id"],
        unique=False,
    )
    op.create_index("ix_generation_logs_job", "generation_logs", ["job_id"], unique=False)

    if _is_postgresql():
        for table_name in ACCOUNT_SCOPED_TABLES:
            op.execute(f"ALTER TABLE {table_name} ENABLE ROW LEVEL SECURITY;")
            op.execute(f"ALTER TABLE {table_name} FORCE ROW LEVEL SECURITY;")
            op.execute(
                f"""
                CREATE POLICY {table_name}_select_policy ON {table_name}
                FOR SELECT USING (account_id = app_current_account_id());
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
                FOR UPDATE USING (account_id = app_current_account_id())
                WITH CHECK (account_id = app_current_account_id());
                """
            )
            op.execute(
                f"""
                CREATE POLICY {table_name}_delete_policy ON {table_name}
                FOR DELETE USING (account_id = app_current_account_id());
                """
            )


def downgrade() -> None:
    if _is_postgresql():
        for table_name in reversed(ACCOUNT_SCOPED_TABLES):
            op.execute(f"DROP POLICY IF EXISTS {table_name}_select_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_insert_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_update_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_delete_policy ON {table_name};")

    op.drop_index("ix_generation_logs_job", table_name="generation_logs")
    op.drop_index("ix_generation_logs_template_version", table_name="generation_logs")
    op.drop_index("ix_generation_logs_account_created_at", table_name="generation_logs")
    op.drop_table("generation_logs")

    op.drop_table("legacy_prompts")

    op.drop_index("ix_prompt_template_versions_account_created_at", table_name="prompt_template_versions")
    op.drop_index("ux_prompt_template_versions_current", table_name="prompt_template_versions")
    op.drop_table("prompt_template_versions")

    op.drop_index("ix_prompt_templates_account_category", table_name="prompt_templates")
    op.drop_index("ix_prompt_templates_account_created_at", table_name="prompt_templates")
    op.drop_table("prompt_templates")
