"""workflows, image generation records and image settings

Revision ID: 20261019_0004
Revises: 20261019_0003
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0004"
down_revision = "20261019_0003"
branch_labels = None
depends_on = None

ACCOUNT_SCOPED_TABLES = ["workflows", "workflow_steps", "image_generation_records", "image_settings"]


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.add_column("content_items", sa.Column("workflow_step_id", sa.String(length=36), nullable=True))

    op.create_table(
        "workflows",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "name", name="uq_workflows_account_name"),
    )
    op.create_index("ix_workflows_account_created_at", "workflows", ["account_id", "created_at"], unique=False)

    op.create_table(
        "workflow_steps",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.String(length=36), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=False),
        sa.Column("conditions_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("continue_on_error", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_id"], ["prompt_templates.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_steps_workflow_order",
        "workflow_steps",
        ["workflow_id", "step_order"],
        unique=False,
    )

    op.create_table(
        "image_generation_records",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("content_id", sa.String(length=36), nullable=True),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("model_version", sa.String(length=8), nullable=False),
        sa.Column("prompt_user", sa.Text(), nullable=False),
        sa.Column("prompt_final", sa.Text(), nullable=False),
        sa.Column("parameters_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("result_url", sa.String(length=1000), nullable=False),
        sa.Column("provider_url", sa.String(length=1000), nullable=True),
        sa.Column("alt_text", sa.String(length=500), nullable=True),
        sa.Column("seed", sa.Integer(), nullable=True),
        sa.Column("resolution", sa.String(length=24), nullable=True),
        sa.Column("cost_estimate", sa.Float(), nullable=True),
        sa.Column("generation_time_s", sa.Float(), nullable=True),
        sa.Column("is_safe", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="pending_review"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["content_id"], ["content_items.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_image_generation_records_account_created_at",
        "image_generation_records",
        ["account_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_image_generation_records_account_status_created_at",
        "image_generation_records",
        ["account_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_image_generation_records_content",
        "image_generation_records",
        ["content_id"],
        unique=False,
    )

    op.create_table(
        "image_settings",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("prompt_prefix", sa.Text(), nullable=True),
        sa.Column("prompt_suffix", sa.Text(), nullable=True),
        sa.Column("brand_colors_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("preferred_style_codes_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("defaults_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", name="uq_image_settings_account"),
    )

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

    op.drop_table("image_settings")

    op.drop_index("ix_image_generation_records_content", table_name="image_generation_records")
    op.drop_index("ix_image_generation_records_account_status_created_at", table_name="image_generation_records")
    op.drop_index("ix_image_generation_records_account_created_at", table_name="image_generation_records")
    op.drop_table("image_generation_records")

    op.drop_index("ix_workflow_steps_workflow_order", table_name="workflow_steps")
    op.drop_table("workflow_steps")

    op.drop_index("ix_workflows_account_created_at", table_name="workflows")
    op.drop_table("workflows")

    op.drop_column("content_items", "workflow_step_id")
