import pytest

from src.ai.providers.mock_provider import MockTextProvider
from src.core.errors import Forbidden, InvalidRequest, NotFound, UndefinedVariable
from src.prompts.store import create_template
from src.storage.models import Story
from src.workflows.engine import evaluate_condition, resolve_path, run_workflow
from src.workflows.service import (
    Condition,
    add_step,
    create_workflow,
    delete_workflow,
    get_workflow,
    list_workflows,
    normalize_conditions,
    remove_step,
    reorder_steps,
    step_key,
    update_step,
)
from tests.support import add_member, context_for, seed_story


ANALYSIS_JSON = '{"key_points": ["shelter"], "summary": "Flood response"}'
BLOG_TEXT = "# Shelter stories\n\nVolunteers kept the doors open all night."


def _scripted_response(request) -> str:
    if request.prompt.startswith("Analyse"):
        return ANALYSIS_JSON
    if request.prompt.startswith("Blog on"):
        return BLOG_TEXT
    return "1. Pray for peace in every shelter tonight."


class RecordingHooks:
    def __init__(self) -> None:
        self.entries = []
        self.progress_updates = []
        self.checkpoints = 0

    def checkpoint(self) -> None:
        self.checkpoints += 1

    def log(self, level, message, *, source, metadata=None) -> None:
        self.entries.append((level, message, source))

    def progress(self, percentage, details) -> None:
        self.progress_updates.append((percentage, details))


@pytest.fixture
def templates(session, owner_ctx):
    analysis = create_template(
        session,
        owner_ctx,
        name="Analysis",
        category="analysis",
        prompt_content='Analyse {{title}} and answer with "key_points".',
    )
    blog = create_template(
        session,
        owner_ctx,
        name="Blog",
        category="blog_post",
        prompt_content="Blog on {{title}} using {{steps_analysis_output}}",
    )
    prayer = create_template(
        session,
        owner_ctx,
        name="Prayer",
        category="prayer",
        prompt_content="Prayer points after: {{previous_output}}",
    )
    return {"analysis": analysis, "blog": blog, "prayer": prayer}


def _steps(*items):
    return [{"template_id": template.id, "display_name": name, **extra} for template, name, extra in items]


def test_step_key_and_condition_normalization() -> None:
    assert step_key("  Blog Draft (EN) ") == "blog_draft_en"
    assert normalize_conditions([{"field": "story.title", "operator": "EXISTS", "value": "ignored"}]) == [
        Condition(field="story.title", operator="exists")
    ]
    with pytest.raises(InvalidRequest, match="condition_operator_invalid"):
        normalize_conditions([{"field": "story.title", "operator": "matches", "value": "x"}])
    with pytest.raises(InvalidRequest, match="condition_value_required"):
        normalize_conditions([{"field": "story.title", "operator": "equals"}])


def test_resolve_path_and_conditions() -> None:
    context = {"story": {"title": "Flood relief"}, "steps": {"analysis": {"status": "completed", "output": ""}}}

    assert resolve_path(context, "steps.analysis.status") == "completed"
    assert resolve_path(context, "steps.blog.status") is None
    assert evaluate_condition(Condition("story.title", "contains", "Flood"), context) is True
    assert evaluate_condition(Condition("steps.analysis.output", "exists"), context) is False
    assert evaluate_condition(Condition("steps.analysis.output", "not_exists"), context) is True
    assert evaluate_condition(Condition("steps.analysis.status", "not_equals", "failed"), context) is True
    assert evaluate_condition(Condition("steps.missing", "equals", ""), context) is False


def test_create_workflow_with_ordered_steps(session, owner_ctx, templates) -> None:
    workflow = create_workflow(
        session,
        owner_ctx,
        name="Daily bundle",
        description="Analysis then blog",
        steps=_steps((templates["analysis"], "Analysis", {}), (templates["blog"], "Blog", {"continue_on_error": True})),
    )

    assert [(step.step_order, step.display_name) for step in workflow.steps] == [(1, "Analysis"), (2, "Blog")]
    assert workflow.steps[1].continue_on_error is True
    assert [item.name for item in list_workflows(session, owner_ctx)] == ["Daily bundle"]

    with pytest.raises(InvalidRequest, match="workflow_name_taken"):
        create_workflow(session, owner_ctx, name="Daily bundle")


def test_create_workflow_rejects_unknown_template_and_duplicate_step_names(session, owner_ctx, templates) -> None:
    with pytest.raises(NotFound, match="template_not_found"):
        create_workflow(session, owner_ctx, name="Broken", steps=[{"template_id": "nope", "display_name": "Blog"}])
    with pytest.raises(InvalidRequest, match="step_display_name_taken"):
        create_workflow(
            session,
            owner_ctx,
            name="Twice",
            steps=_steps((templates["blog"], "Blog", {}), (templates["blog"], "blog", {})),
        )
    assert list_workflows(session, owner_ctx) == []


def test_step_management_keeps_order_dense(session, owner_ctx, templates) -> None:
    workflow = create_workflow(
        session,
        owner_ctx,
        name="Bundle",
        steps=_steps((templates["analysis"], "Analysis", {}), (templates["blog"], "Blog", {})),
    )

    inserted = add_step(session, owner_ctx, workflow.id, template_id=templates["prayer"].id, display_name="Prayer", position=1)
    names = [step.display_name for step in get_workflow(session, owner_ctx, workflow.id).steps]
    assert names == ["Prayer", "Analysis", "Blog"]
    assert inserted.step_order == 1

    ids = {step.display_name: step.id for step in workflow.steps}
    reorder_steps(session, owner_ctx, workflow.id, [ids["Blog"], ids["Analysis"], ids["Prayer"]])
    refreshed = get_workflow(session, owner_ctx, workflow.id)
    assert [(step.step_order, step.display_name) for step in refreshed.steps] == [
        (1, "Blog"),
        (2, "Analysis"),
        (3, "Prayer"),
    ]

    with pytest.raises(InvalidRequest, match="reorder_must_list_every_step_once"):
        reorder_steps(session, owner_ctx, workflow.id, [ids["Blog"], ids["Blog"], ids["Prayer"]])

    remove_step(session, owner_ctx, workflow.id, ids["Analysis"])
    refreshed = get_workflow(session, owner_ctx, workflow.id)
    assert [(step.step_order, step.display_name) for step in refreshed.steps] == [(1, "Blog"), (2, "Prayer")]

    updated = update_step(
        session,
        owner_ctx,
        workflow.id,
        ids["Prayer"],
        enabled=False,
        conditions=[{"field": "story.title", "operator": "exists"}],
    )
    assert updated.enabled is False
    assert '"operator":"exists"' in updated.conditions_json


def test_viewer_cannot_change_workflows(session_factory, session, owner, owner_ctx, templates) -> None:
    add_member(session_factory, owner.account_id, user_id="user-viewer", role="viewer")
    viewer_ctx = context_for(session_factory, owner, user_id="user-viewer")

    with pytest.raises(Forbidden):
        create_workflow(session, viewer_ctx, name="Nope")


def test_delete_workflow(session, owner_ctx, templates) -> None:
    workflow = create_workflow(session, owner_ctx, name="Bundle", steps=_steps((templates["blog"], "Blog", {})))

    delete_workflow(session, owner_ctx, workflow.id)

    with pytest.raises(NotFound, match="workflow_not_found"):
        get_workflow(session, owner_ctx, workflow.id)


def test_run_workflow_passes_outputs_between_steps(session_factory, session, owner, owner_ctx, templates) -> None:
    story = session.get(Story, seed_story(session_factory, owner.account_id))
    workflow = create_workflow(
        session,
        owner_ctx,
        name="Bundle",
        steps=_steps(
            (templates["analysis"], "Analysis", {}),
            (
                templates["blog"],
                "Blog",
                {"conditions": [{"field": "steps.analysis.status", "operator": "equals", "value": "completed"}]},
            ),
            (templates["prayer"], "Prayer", {}),
        ),
    )
    provider = MockTextProvider(responder=_scripted_response)
    hooks = RecordingHooks()

    run = run_workflow(session, owner_ctx, workflow.id, story=story, hooks=hooks, provider=provider)

    assert run.count("completed") == 3
    assert len(run.content_ids) == 3
    assert story.title in provider.calls[0].prompt
    assert provider.calls[1].prompt == f"Blog on {story.title} using {ANALYSIS_JSON}"
    assert provider.calls[2].prompt == f"Prayer points after: {BLOG_TEXT}"
    assert hooks.checkpoints >= 3
    assert hooks.progress_updates[-1][0] == 100
    assert ("info", "Step 3/3 Prayer completed", "workflow_engine") in hooks.entries


def test_conditions_skip_steps(session, owner_ctx, templates) -> None:
    workflow = create_workflow(
        session,
        owner_ctx,
        name="Bundle",
        steps=_steps(
            (templates["analysis"], "Analysis", {"enabled": False}),
            (
                templates["blog"],
                "Blog",
                {"conditions": [{"field": "steps.analysis.output", "operator": "exists"}]},
            ),
        ),
    )
    hooks = RecordingHooks()

    run = run_workflow(session, owner_ctx, workflow.id, variables={"title": "Hope"}, hooks=hooks, provider=MockTextProvider())

    assert [outcome.reason for outcome in run.outcomes] == ["disabled", "conditions_not_met"]
    assert run.content_ids == []
    assert ("info", "Step 2/2 Blog skipped (conditions not met)", "workflow_engine") in hooks.entries


def test_failing_step_aborts_unless_continue_on_error(session, owner_ctx, templates) -> None:
    broken = create_template(
        session,
        owner_ctx,
        name="Needs summary",
        category="newsletter",
        prompt_content="Summarise {{summary}}",
    )
    aborting = create_workflow(
        session,
        owner_ctx,
        name="Aborting",
        steps=_steps((broken, "Summary", {}), (templates["prayer"], "Prayer", {})),
    )
    tolerant = create_workflow(
        session,
        owner_ctx,
        name="Tolerant",
        steps=_steps((broken, "Summary", {"continue_on_error": True}), (templates["prayer"], "Prayer", {})),
    )

    hooks = RecordingHooks()
    with pytest.raises(UndefinedVariable):
        run_workflow(session, owner_ctx, aborting.id, hooks=hooks, provider=MockTextProvider())
    assert ("error", "Step 1/2 Summary failed: undefined_variable", "workflow_engine") in hooks.entries

    run = run_workflow(session, owner_ctx, tolerant.id, hooks=RecordingHooks(), provider=MockTextProvider())
    assert [outcome.status for outcome in run.outcomes] == ["failed", "completed"]
    assert run.count("failed") == 1
