from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import src.api.main as api_main
from src.ai.providers.mock_provider import MockTextProvider
from src.content.generator import generate_content
from src.prompts.store import create_template
from src.storage.db import get_session
from tests.support import add_member, headers_for


@pytest.fixture
def client(session_factory):
    def override_session():
        db_session = session_factory()
        try:
            yield db_session
        finally:
            db_session.close()

    api_main.app.dependency_overrides[get_session] = override_session
    yield TestClient(api_main.app)
    api_main.app.dependency_overrides.clear()


@pytest.fixture
def owner_headers(owner):
    return headers_for(owner)


@pytest.fixture
def member_headers(session_factory, owner):
    add_member(session_factory, owner.account_id, user_id="user-editor", role="editor")
    add_member(session_factory, owner.account_id, user_id="user-viewer", role="viewer")
    return {
        "editor": headers_for(owner, user_id="user-editor"),
        "viewer": headers_for(owner, user_id="user-viewer"),
    }


@pytest.fixture
def draft(session, owner_ctx):
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="About {{title}}")
    provider = MockTextProvider(responder=lambda request: "# Shelter Stories\n\nFamilies found beds and meals.")
    return generate_content(session, owner_ctx, category="blog_post", variables={"title": "Hope"}, provider=provider).content


def test_account_headers_are_required(client, owner) -> None:
    missing = client.get("/jobs")
    stranger = client.get("/jobs", headers=headers_for(owner, user_id="user-stranger"))

    assert missing.status_code == 400
    assert missing.json()["detail"]["kind"] == "no_account"
    assert stranger.status_code == 403
    assert stranger.json()["detail"]["kind"] == "forbidden"


def test_job_lifecycle_routes(client, owner_headers, member_headers) -> None:
    created = client.post("/jobs", json={"type": "full_cycle", "payload": {"tag": "a"}}, headers=owner_headers)
    duplicate = client.post("/jobs", json={"type": "full_cycle", "payload": {"tag": "a"}}, headers=owner_headers)

    assert created.status_code == 202
    job_id = created.json()["job_id"]
    assert created.json()["status"] == "queued"
    assert duplicate.json() == {"job_id": job_id, "status": "queued", "deduplicated": True}

    listed = client.get("/jobs", params={"status": "queued"}, headers=member_headers["viewer"])
    assert [item["id"] for item in listed.json()["items"]] == [job_id]
    assert client.get(f"/jobs/{job_id}", headers=owner_headers).json()["payload"] == {"tag": "a"}
    assert client.get("/jobs/stats", headers=owner_headers).json()["queued_now"] == 1

    cancelled = client.post(f"/jobs/{job_id}/cancel", headers=member_headers["editor"])
    assert cancelled.status_code == 200
    assert cancelled.json()["immediate"] is True
    assert cancelled.json()["job"]["status"] == "cancelled"
    assert client.post(f"/jobs/{job_id}/cancel", headers=owner_headers).status_code == 409

    retried = client.post(f"/jobs/{job_id}/retry", headers=owner_headers)
    assert retried.status_code == 202
    assert retried.json()["job_id"] != job_id


def test_job_route_errors(client, owner_headers, member_headers) -> None:
    unknown_type = client.post("/jobs", json={"type": "publish_everything"}, headers=owner_headers)
    viewer_create = client.post("/jobs", json={"type": "full_cycle"}, headers=member_headers["viewer"])
    missing = client.get("/jobs/does-not-exist", headers=owner_headers)
    bad_status = client.get("/jobs", params={"status": "sleeping"}, headers=owner_headers)

    assert unknown_type.status_code == 422
    assert unknown_type.json()["detail"]["kind"] == "invalid_request"
    assert viewer_create.status_code == 403
    assert missing.status_code == 404
    assert bad_status.status_code == 422


def test_log_routes(client, owner_headers, member_headers) -> None:
    job_id = client.post("/jobs", json={"type": "full_cycle"}, headers=owner_headers).json()["job_id"]

    tail = client.get("/logs", headers=member_headers["viewer"])
    assert tail.status_code == 200
    assert tail.json()["entries"] == []
    assert tail.json()["poll_interval_seconds"] == 2

    assert client.get("/logs", params={"since": "yesterday"}, headers=owner_headers).status_code == 422
    assert client.get(f"/jobs/{job_id}/logs", headers=owner_headers).status_code == 200
    assert client.get("/jobs/missing/logs", headers=owner_headers).status_code == 404
    assert client.get("/logs/stats", headers=owner_headers).json()["total"] == 0
    assert client.delete("/logs", headers=member_headers["editor"]).status_code == 403
    assert client.delete("/logs", headers=owner_headers).json()["deleted"] == 0


def test_prompt_routes(client, owner_headers, member_headers, monkeypatch) -> None:
    created = client.post(
        "/prompts/templates",
        json={"name": "Blog", "category": "blog", "prompt_content": "Write about {{title}}"},
        headers=member_headers["editor"],
    )
    assert created.status_code == 201
    template = created.json()
    assert template["category"] == "blog_post"
    assert template["current_version"]["version_number"] == 1
    first_version_id = template["current_version"]["id"]

    version = client.post(
        f"/prompts/templates/{template['id']}/versions",
        json={"prompt_content": "Write warmly about {{title}}", "notes": "Warmer tone"},
        headers=owner_headers,
    )
    assert version.status_code == 201
    assert version.json()["version_number"] == 2
    assert version.json()["created_by"] == "user-owner"

    rolled_back = client.put(
        f"/prompts/templates/{template['id']}/versions/{first_version_id}/current",
        headers=owner_headers,
    )
    assert rolled_back.json()["is_current"] is True
    versions = client.get(f"/prompts/templates/{template['id']}/versions", headers=owner_headers).json()["items"]
    assert [(item["version_number"], item["is_current"]) for item in versions] == [(2, False), (1, True)]

    monkeypatch.setenv("AI_DEMO_MODE", "true")
    from src.core.config import get_settings

    get_settings.cache_clear()
    tested = client.post(
        f"/prompts/templates/{template['id']}/versions/{first_version_id}/test",
        json={"variables": {"title": "Hope"}},
        headers=owner_headers,
    )
    assert tested.status_code == 200
    assert tested.json()["rendered_prompt"] == "Write about Hope"
    assert tested.json()["provider"] == "mock"

    history = client.get("/prompts/history", params={"template_id": template["id"]}, headers=owner_headers).json()
    assert [item["version_number"] for item in history["items"]] == [1]
    summaries = client.get("/prompts/templates", headers=member_headers["viewer"]).json()["items"]
    assert summaries[0]["usage_count"] == 1


def test_prompt_route_errors(client, owner_headers, member_headers) -> None:
    bad_category = client.post(
        "/prompts/templates",
        json={"name": "Odd", "category": "poetry", "prompt_content": "x"},
        headers=owner_headers,
    )
    viewer_create = client.post(
        "/prompts/templates",
        json={"name": "Blog", "category": "blog_post", "prompt_content": "x"},
        headers=member_headers["viewer"],
    )
    missing = client.get("/prompts/templates/nope", headers=owner_headers)
    empty_body = client.post("/prompts/templates", json={"name": "Blog"}, headers=owner_headers)

    assert bad_category.status_code == 422
    assert viewer_create.status_code == 403
    assert missing.status_code == 404
    assert empty_body.status_code == 422


def test_seed_route(client, owner_headers, monkeypatch) -> None:
    from src.core.config import get_settings

    monkeypatch.setenv("TEMPLATES_SEED_PATH", str(Path(__file__).resolve().parents[1] / "config" / "templates"))
    get_settings.cache_clear()

    first = client.post("/prompts/seed", headers=owner_headers).json()
    second = client.post("/prompts/seed", headers=owner_headers).json()

    assert len(first["created"]) == 6
    assert second["created"] == []
    assert len(second["skipped_categories"]) == 6


def test_content_routes(client, owner_headers, member_headers, draft) -> None:
    listed = client.get("/content", params={"status": "draft"}, headers=member_headers["viewer"]).json()
    assert [item["id"] for item in listed["items"]] == [draft.id]
    assert listed["items"][0]["content_data"]["title"] == "Shelter Stories"

    viewer_review = client.post(
        f"/content/{draft.id}/status", json={"status": "review_pending"}, headers=member_headers["viewer"]
    )
    assert viewer_review.status_code == 403

    regenerate = client.post(f"/content/{draft.id}/regenerate", json={"temperature": 0.4}, headers=owner_headers)
    assert regenerate.status_code == 202
    job = client.get(f"/jobs/{regenerate.json()['job_id']}", headers=owner_headers).json()
    assert job["job_type"] == "regenerate"
    assert job["payload"] == {"content_id": draft.id, "config": {"temperature": 0.4}}

    review = client.post(
        f"/content/{draft.id}/status", json={"status": "review_pending"}, headers=member_headers["editor"]
    )
    assert review.json()["status"] == "review_pending"
    approved = client.post(f"/content/{draft.id}/status", json={"status": "approved"}, headers=owner_headers)
    assert approved.json()["status"] == "approved"

    back_to_draft = client.post(f"/content/{draft.id}/status", json={"status": "draft"}, headers=owner_headers)
    assert back_to_draft.status_code == 409
    assert back_to_draft.json()["detail"]["kind"] == "invalid_transition"
    assert client.post(f"/content/{draft.id}/regenerate", headers=owner_headers).status_code == 409
    assert client.get("/content/missing", headers=owner_headers).status_code == 404


def test_workflow_routes(client, owner_headers, member_headers, session, owner_ctx) -> None:
    blog = create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="Blog {{title}}")
    prayer = create_template(session, owner_ctx, name="Prayer", category="prayer", prompt_content="Pray {{title}}")
    body = {
        "name": "Daily bundle",
        "steps": [
            {"template_id": blog.id, "display_name": "Blog"},
            {
                "template_id": prayer.id,
                "display_name": "Prayer",
                "conditions": [{"field": "steps.blog.status", "operator": "equals", "value": "completed"}],
            },
        ],
    }

    created = client.post("/workflows", json=body, headers=member_headers["editor"])
    assert created.status_code == 201
    workflow = created.json()
    assert [step["display_name"] for step in workflow["steps"]] == ["Blog", "Prayer"]
    assert workflow["steps"][1]["conditions"] == [
        {"field": "steps.blog.status", "operator": "equals", "value": "completed"}
    ]

    assert client.post("/workflows", json=body, headers=owner_headers).status_code == 422
    assert client.post("/workflows", json={"name": "Nope"}, headers=member_headers["viewer"]).status_code == 403

    step_ids = [step["id"] for step in workflow["steps"]]
    reordered = client.put(
        f"/workflows/{workflow['id']}/steps/order",
        json={"step_ids": list(reversed(step_ids))},
        headers=owner_headers,
    )
    assert [step["display_name"] for step in reordered.json()["steps"]] == ["Prayer", "Blog"]

    disabled = client.patch(
        f"/workflows/{workflow['id']}/steps/{step_ids[1]}",
        json={"enabled": False},
        headers=owner_headers,
    )
    assert disabled.json()["enabled"] is False

    run = client.post(
        f"/workflows/{workflow['id']}/run",
        json={"variables": {"title": "Hope"}, "model": "gpt-4o-mini"},
        headers=owner_headers,
    )
    assert run.status_code == 202
    job = client.get(f"/jobs/{run.json()['job_id']}", headers=owner_headers).json()
    assert job["payload"] == {
        "workflow_id": workflow["id"],
        "variables": {"title": "Hope"},
        "config": {"model": "gpt-4o-mini"},
    }

    assert client.post("/workflows/missing/run", json={}, headers=owner_headers).status_code == 404
    assert client.delete(f"/workflows/{workflow['id']}", headers=owner_headers).status_code == 204
    assert client.get(f"/workflows/{workflow['id']}", headers=owner_headers).status_code == 404


def test_image_routes(client, owner_headers, member_headers, draft) -> None:
    options = client.get("/images/ideogram/options", params={"modelVersion": "v3"}, headers=owner_headers).json()
    assert options["supports_reference_images"] is True
    assert options["cost_per_image_usd"]["QUALITY"] == 0.09
    assert client.get("/images/ideogram/options", params={"modelVersion": "v9"}, headers=owner_headers).status_code == 422

    queued = client.post(
        f"/images/generate-for-content/{draft.id}",
        json={"modelVersion": "v3", "numImages": 2, "customPrompt": "Candlelit vigil"},
        headers=member_headers["editor"],
    )
    assert queued.status_code == 202
    job = client.get(f"/jobs/{queued.json()['job_id']}", headers=owner_headers).json()
    assert job["job_type"] == "generate_image"
    assert job["payload"]["params"] == {"prompt": "Candlelit vigil", "model_version": "v3", "num_images": 2}

    assert client.post("/images/generate-for-content/missing", headers=owner_headers).status_code == 404
    assert client.post(f"/images/generate-for-content/{draft.id}", headers=member_headers["viewer"]).status_code == 403
    assert client.post(
        f"/images/generate-for-content/{draft.id}", json={"numImages": 9}, headers=owner_headers
    ).status_code == 422
    assert client.get("/images", headers=owner_headers).json()["items"] == []
    assert client.put("/images/missing/status", json={"status": "approved"}, headers=owner_headers).status_code == 404


def test_image_settings_routes(client, owner_headers, member_headers) -> None:
    initial = client.get("/settings/image-generation", headers=member_headers["editor"])
    assert initial.status_code == 200
    assert initial.json()["defaults"]["model_version"] == "v2"

    assert client.put(
        "/settings/image-generation", json={"prompt_prefix": "x"}, headers=member_headers["editor"]
    ).status_code == 403

    updated = client.put(
        "/settings/image-generation",
        json={"prompt_prefix": "Eden style:", "defaults": {"aspect_ratio": "1:1"}},
        headers=owner_headers,
    )
    assert updated.json()["prompt_prefix"] == "Eden style:"
    assert updated.json()["defaults"]["aspect_ratio"] == "1:1"
    assert client.put(
        "/settings/image-generation", json={"defaults": {"aspect_ratio": "5:4"}}, headers=owner_headers
    ).status_code == 422

    colors = client.post("/settings/brand-colors", json={"name": "Primary", "colors": ["#aabbcc"]}, headers=owner_headers)
    assert colors.status_code == 201
    assert colors.json()["items"] == [{"name": "Primary", "colors": ["#AABBCC"]}]
    assert client.post(
        "/settings/brand-colors", json={"name": "Bad", "colors": ["red"]}, headers=owner_headers
    ).status_code == 422
    assert client.delete("/settings/brand-colors/3", headers=owner_headers).status_code == 404

    codes = client.post("/settings/style-codes", json={"value": "aabbccdd"}, headers=owner_headers)
    assert codes.status_code == 201
    assert codes.json()["items"] == [{"type": "style_code", "value": "AABBCCDD"}]
    assert client.get("/settings/style-codes", headers=member_headers["viewer"]).json()["items"] == codes.json()["items"]
    assert client.delete("/settings/style-codes/0", headers=owner_headers).json()["items"] == []
