from pathlib import Path

import pytest


VERSIONS = Path(__file__).resolve().parents[1] / "migrations" / "versions"


def _read(name: str) -> str:
    return (VERSIONS / name).read_text(encoding="utf-8")


def test_revisions_form_a_single_chain() -> None:
    assert 'down_revision = None' in _read("20261019_0001_accounts_core.py")
    assert 'down_revision = "20261019_0001"' in _read("20261019_0002_prompt_templates.py")
    assert 'down_revision = "20261019_0002"' in _read("20261019_0003_content_jobs_logs.py")
    assert 'down_revision = "20261019_0003"' in _read("20261019_0004_workflows_images.py")


def test_accounts_migration_contains_membership_tables() -> None:
    content = _read("20261019_0001_accounts_core.py")

    assert "organizations" in content
    assert "accounts" in content
    assert "uq_account_members_account_user" in content
    assert "uq_organization_members_org_user" in content
    assert "app.current_account_id" in content


def test_prompt_migration_enforces_single_current_version() -> None:
    content = _read("20261019_0002_prompt_templates.py")

    assert "prompt_templates" in content
    assert "prompt_template_versions" in content
    assert "legacy_prompts" in content
    assert "generation_logs" in content
    assert "ux_prompt_template_versions_current" in content
    assert "uq_prompt_template_versions_template_number" in content
    assert "uq_legacy_prompts_account_category" in content


def test_job_migration_contains_queue_indexes() -> None:
    content = _read("20261019_0003_content_jobs_logs.py")

    assert "ix_jobs_dedupe_lookup" in content
    assert "ix_jobs_status_heartbeat" in content
    assert "ix_job_log_entries_account_job_timestamp" in content
    assert "content_items" in content
    assert "stories" in content


def test_workflow_migration_contains_image_tables() -> None:
    content = _read("20261019_0004_workflows_images.py")

    assert "workflow_steps" in content
    assert "image_generation_records" in content
    assert "uq_workflows_account_name" in content
    assert "uq_image_settings_account" in content
    assert 'op.add_column("content_items", sa.Column("workflow_step_id"' in content
    assert 'op.drop_column("content_items", "workflow_step_id")' in content


@pytest.mark.parametrize(
    "name",
    [
        "20261019_0001_accounts_core.py",
        "20261019_0002_prompt_templates.py",
        "20261019_0003_content_jobs_logs.py",
        "20261019_0004_workflows_images.py",
    ],
)
def test_every_migration_enables_row_level_security(name: str) -> None:
    content = _read(name)

    assert "ENABLE ROW LEVEL SECURITY" in content
    assert "CREATE POLICY" in content
    assert "app_current_account_id()" in content
