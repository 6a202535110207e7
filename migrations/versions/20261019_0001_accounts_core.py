"""accounts core and account-scoped RLS helper

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_accounts_organization_created_at",
        "accounts",
        ["organization_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "account_members",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=24), nullable=False, server_default="viewer"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "user_id", name="uq_account_members_account_user"),
    )
    op.create_index("ix_account_members_user", "account_members", ["user_id"], unique=False)

    op.create_table(
        "organization_members",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=24), nullable=False, server_default="member"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_organization_members_org_user"),
    )

    if _is_postgresql():
        op.execute(
            """
            CREATE OR REPLACE FUNCTION app_current_account_id()
            RETURNS text
            LANGUAGE sql
            STABLE
            AS $$
                SELECT NULLIF(current_setting('app.current_account_id', true), '')
            $$;
            """
        )

        op.execute("ALTER TABLE accounts ENABLE ROW LEVEL SECURITY;")
        op.execute("ALTER TABLE accounts FORCE ROW LEVEL SECURITY;")
        op.execute(
            """
            CREATE POLICY accounts_select_policy ON accounts
            FOR SELECT USING (app_current_account_id() IS NULL OR id = app_current_account_id());
            """
        )

        op.execute("ALTER TABLE account_members ENABLE ROW LEVEL SECURITY;")
        op.execute("ALTER TABLE account_members FORCE ROW LEVEL SECURITY;")
        op.execute(
            """
            CREATE POLICY account_members_select_policy ON account_members
            FOR SELECT USING (app_current_account_id() IS NULL OR account_id = app_current_account_id());
            """
        )
        op.execute(
            """
            CREATE POLICY account_members_write_policy ON account_members
            FOR ALL USING (account_id = app_current_account_id())
            WITH CHECK (account_id = app_current_account_id());
            """
        )


def downgrade() -> None:
    if _is_postgresql():
        op.execute("DROP POLICY IF EXISTS account_members_write_policy ON account_members;")
        op.execute("DROP POLICY IF EXISTS account_members_select_policy ON account_members;")
        op.execute("DROP POLICY IF EXISTS accounts_select_policy ON accounts;")
        op.execute("DROP FUNCTION IF EXISTS app_current_account_id;")

    op.drop_table("organization_members")
    op.drop_index("ix_account_members_user", table_name="account_members")
    op.drop_table("account_members")
    op.drop_index("ix_accounts_organization_created_at", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("organizations")
