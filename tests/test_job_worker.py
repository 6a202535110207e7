import pytest
from sqlalchemy import select

from src.ai.providers.mock_provider import MockImageProvider, MockTextProvider
from src.content.generator import generate_content
from src.core.errors import RateLimited
from src.jobs.locks import AccountSlotLockManager
from src.jobs.queue import cancel_job, enqueue_job, job_results
from src.jobs.runtime import JobServices
from src.jobs.worker import JobWorker
from src.logs.stream import tail
from src.prompts.store import create_template
from src.storage.models import ContentItem, ImageGenerationRecord, Job, Story
from src.workflows.service import create_workflow
from tests.support import seed_story


BLOG_PROMPT = "Write about {{title}} from {{source_name}}.\n\n{{summary}}"


class RecordingIngestion:
    def __init__(self) -> None:
        self.submitted = []

    def aggregate(self, session, ctx):
        return 3

    def analyze(self, session, ctx):
        return 2

    def refresh_source(self, session, ctx, source_id):
        return 1

    def submit_urls(self, session, ctx, urls):
        self.submitted.extend(urls)
        return len(urls)


@pytest.fixture
def lock_manager(fake_redis):
    return AccountSlotLockManager(fake_redis, ttl_seconds=60)


@pytest.fixture
def services():
    return JobServices(
        ingestion=RecordingIngestion(),
        text_provider=MockTextProvider(),
        image_provider=MockImageProvider(),
    )


def _worker(session_factory, lock_manager, services, handlers=None) -> JobWorker:
    return JobWorker(
        session_factory=session_factory,
        lock_manager=lock_manager,
        services=services,
        handlers=handlers,
        worker_id="worker-test",
        max_parallel_accounts=1,
    )


def _job(session, job_id: str) -> Job:
    return session.get(Job, job_id, populate_existing=True)


def _messages(session, ctx, job_id):
    return [entry.message for entry in tail(session, ctx, job_id=job_id).entries]


def test_generate_for_story_job_completes_with_results(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content=BLOG_PROMPT)
    story_id = seed_story(session_factory, owner.account_id)
    job = enqueue_job(
        session,
        owner_ctx,
        job_type="generate_for_story",
        payload={"story_id": story_id, "categories": ["blog_post", "prayer"]},
    ).job

    result = _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert result.executed == 1
    assert result.runs[0].status == "completed"
    refreshed = _job(session, job.id)
    assert refreshed.status == "completed"
    results = job_results(refreshed)
    assert results["contentGenerated"] == 1
    assert results["blogIds"] == results["contentIds"]
    assert results["blogId"] == results["contentIds"][0]
    assert results["specificStoryId"] == story_id
    assert "completedAt" in results

    messages = _messages(session, owner_ctx, job.id)
    assert messages[0] == "Job generate_for_story started"
    assert messages[-1] == "Job generate_for_story completed"
    assert "No template configured for prayer; skipped" in messages
    assert lock_manager.acquire(owner.account_id) is not None


def test_ineligible_story_fails_the_job(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content=BLOG_PROMPT)
    story_id = seed_story(session_factory, owner.account_id, title="Headline", full_text="Headline only")
    job = enqueue_job(session, owner_ctx, job_type="generate_for_story", payload={"story_id": story_id}).job

    result = _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert result.failed == 1
    refreshed = _job(session, job.id)
    assert refreshed.status == "failed"
    assert refreshed.error_message == "invalid_request: story_not_eligible_for_generation"


def test_retryable_errors_requeue_the_job(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    def flaky(runtime, payload):
        raise RateLimited("openai_rate_limited")

    job = enqueue_job(session, owner_ctx, job_type="full_cycle").job

    result = _worker(session_factory, lock_manager, services, handlers={"full_cycle": flaky}).run_once(
        account_ids=[owner.account_id]
    )

    assert result.runs[0].status == "requeued"
    refreshed = _job(session, job.id)
    assert refreshed.status == "queued"
    assert refreshed.retry_count == 1
    assert refreshed.error_message == "rate_limited: openai_rate_limited"
    assert "Job will retry after rate_limited" in _messages(session, owner_ctx, job.id)


def test_cancel_flag_is_honoured_at_next_checkpoint(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    def cancelling(runtime, payload):
        runtime.set_result("contentGenerated", 1)
        cancel_job(runtime.session, owner_ctx, runtime.job_id)
        runtime.checkpoint()
        runtime.set_result("contentGenerated", 2)
        return runtime.results

    job = enqueue_job(session, owner_ctx, job_type="full_cycle").job

    result = _worker(session_factory, lock_manager, services, handlers={"full_cycle": cancelling}).run_once(
        account_ids=[owner.account_id]
    )

    assert result.runs[0].status == "cancelled"
    refreshed = _job(session, job.id)
    assert refreshed.status == "cancelled"
    assert job_results(refreshed) == {"contentGenerated": 1}


def test_unexpected_exceptions_fail_the_job(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    def broken(runtime, payload):
        raise RuntimeError("boom")

    job = enqueue_job(session, owner_ctx, job_type="full_cycle").job

    result = _worker(session_factory, lock_manager, services, handlers={"full_cycle": broken}).run_once(
        account_ids=[owner.account_id]
    )

    assert result.runs[0].status == "failed"
    assert _job(session, job.id).error_message == "boom"
    assert _messages(session, owner_ctx, job.id)[-1] == "Job failed: boom"


def test_locked_account_is_skipped(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    job = enqueue_job(session, owner_ctx, job_type="full_cycle").job
    held = lock_manager.acquire(owner.account_id)

    result = _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert result.skipped_locked == 1
    assert result.executed == 0
    assert _job(session, job.id).status == "queued"
    assert held.release() is True


def test_idle_when_nothing_is_queued(session_factory, owner, lock_manager, services) -> None:
    worker = _worker(session_factory, lock_manager, services)

    assert worker.run_once(account_ids=[owner.account_id]).runs[0].status == "idle"
    assert worker.run_once().accounts_considered == 0


def test_full_cycle_runs_ingestion_and_generation(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content=BLOG_PROMPT)
    seed_story(session_factory, owner.account_id, title="Strong story")
    seed_story(session_factory, owner.account_id, title="Thin", full_text="Thin", relevance_score=0.5)
    job = enqueue_job(session, owner_ctx, job_type="full_cycle", payload={"categories": ["blog"]}).job

    result = _worker(session_factory, lock_manager, services).run_once()

    assert result.runs[0].status == "completed"
    results = job_results(_job(session, job.id))
    assert results["articlesAggregated"] == 3
    assert results["articlesAnalyzed"] == 2
    assert results["contentGenerated"] == 1
    assert len(results["skippedStoryIds"]) == 1


def test_submit_urls_job_hands_urls_to_ingestion(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    job = enqueue_job(
        session,
        owner_ctx,
        job_type="submit_urls",
        payload={"urls": [" https://news.example.org/a ", "https://news.example.org/b"]},
    ).job

    _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert services.ingestion.submitted == ["https://news.example.org/a", "https://news.example.org/b"]
    results = job_results(_job(session, job.id))
    assert results["urlsSubmitted"] == 2
    assert results["articlesAggregated"] == 2


def test_regenerate_creates_new_draft_from_rejected_item(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="About {{title}}")
    story = session.get(Story, seed_story(session_factory, owner.account_id))
    original = generate_content(
        session, owner_ctx, story=story, category="blog_post", provider=MockTextProvider()
    ).content
    original.status = "rejected"
    session.commit()
    job = enqueue_job(session, owner_ctx, job_type="regenerate", payload={"content_id": original.id}).job

    result = _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert result.runs[0].status == "completed"
    results = job_results(_job(session, job.id))
    assert results["regeneratedFromId"] == original.id
    new_item = session.get(ContentItem, results["contentIds"][0], populate_existing=True)
    assert new_item.id != original.id
    assert new_item.status == "draft"
    assert new_item.regenerated_from_id == original.id
    assert new_item.story_id == story.id


def test_regenerate_rejects_approved_content(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="About {{title}}")
    original = generate_content(
        session, owner_ctx, category="blog_post", variables={"title": "Hope"}, provider=MockTextProvider()
    ).content
    original.status = "approved"
    session.commit()
    job = enqueue_job(session, owner_ctx, job_type="regenerate", payload={"content_id": original.id}).job

    _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    refreshed = _job(session, job.id)
    assert refreshed.status == "failed"
    assert refreshed.error_message.startswith("invalid_transition")


def test_workflow_job_reports_step_counts(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    blog = create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="About {{title}}")
    prayer = create_template(
        session,
        owner_ctx,
        name="Prayer",
        category="prayer",
        prompt_content="Prayer points for {{title}}: {{steps_blog_draft_output}}",
    )
    workflow = create_workflow(
        session,
        owner_ctx,
        name="Daily bundle",
        steps=[
            {"template_id": blog.id, "display_name": "Blog Draft"},
            {"template_id": prayer.id, "display_name": "Prayer", "enabled": False},
        ],
    )
    job = enqueue_job(
        session,
        owner_ctx,
        job_type="workflow",
        payload={"workflow_id": workflow.id, "variables": {"title": "Hope"}},
    ).job

    result = _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert result.runs[0].status == "completed"
    results = job_results(_job(session, job.id))
    assert results["steps"] == {"completed": 1, "skipped": 1, "failed": 0}
    assert results["contentGenerated"] == 1
    messages = _messages(session, owner_ctx, job.id)
    assert "Step 1/2 Blog Draft completed" in messages
    assert "Step 2/2 Prayer skipped (disabled)" in messages


def test_generate_image_job_records_images(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="About {{title}}")
    content = generate_content(
        session, owner_ctx, category="blog_post", variables={"title": "Hope"}, provider=MockTextProvider()
    ).content
    job = enqueue_job(
        session,
        owner_ctx,
        job_type="generate_image",
        payload={"content_id": content.id, "params": {"numImages": 2, "styleType": "ANIME", "modelVersion": "v3"}},
    ).job

    result = _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert result.runs[0].status == "completed"
    results = job_results(_job(session, job.id))
    assert results["imagesGenerated"] == 2
    assert results["styleType"] == "GENERAL"
    assert results["modelVersion"] == "v3"
    records = session.scalars(select(ImageGenerationRecord).where(ImageGenerationRecord.content_id == content.id)).all()
    assert {record.status for record in records} == {"pending_review"}
    assert any("not supported by v3" in message for message in _messages(session, owner_ctx, job.id))


class RateLimitedUntil:
    """Raises RateLimited for prompts starting with ``prefix`` until ``failures`` calls have failed."""

    def __init__(self, prefix: str, failures: int) -> None:
        self.prefix = prefix
        self.remaining = failures
        self.prompts = []

    def __call__(self, request):
        self.prompts.append(request.prompt)
        if request.prompt.startswith(self.prefix) and self.remaining > 0:
            self.remaining -= 1
            raise RateLimited("openai_rate_limited")
        return f"Draft for: {request.prompt}"


def _job_items(session, job_id):
    return session.scalars(
        select(ContentItem).where(ContentItem.job_id == job_id).order_by(ContentItem.created_at, ContentItem.id)
    ).all()


def test_requeued_story_job_does_not_duplicate_content(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="Blog about {{title}}")
    create_template(session, owner_ctx, name="Social", category="social_media", prompt_content="Social posts about {{title}}")
    story_id = seed_story(session_factory, owner.account_id)
    responder = RateLimitedUntil("Social", failures=3)
    services.text_provider = MockTextProvider(responder=responder)
    job = enqueue_job(
        session,
        owner_ctx,
        job_type="generate_for_story",
        payload={"story_id": story_id, "categories": ["blog_post", "social_media"]},
    ).job
    worker = _worker(session_factory, lock_manager, services)

    assert worker.run_once(account_ids=[owner.account_id]).runs[0].status == "requeued"
    assert worker.run_once(account_ids=[owner.account_id]).runs[0].status == "completed"

    items = _job_items(session, job.id)
    assert sorted(item.prompt_category for item in items) == ["blog_post", "social_media"]
    assert sum(1 for prompt in responder.prompts if prompt.startswith("Blog")) == 1
    results = job_results(_job(session, job.id))
    assert results["contentGenerated"] == 2
    assert sorted(results["contentIds"]) == sorted(item.id for item in items)
    assert results["blogIds"] == [item.id for item in items if item.prompt_category == "blog_post"]
    assert any("already generated by an earlier attempt" in message for message in _messages(session, owner_ctx, job.id))


def test_requeued_workflow_resumes_after_persisted_steps(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    blog = create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="Blog about {{title}}")
    prayer = create_template(
        session,
        owner_ctx,
        name="Prayer",
        category="prayer",
        prompt_content="Prayer after {{steps_blog_draft_output}}",
    )
    workflow = create_workflow(
        session,
        owner_ctx,
        name="Daily bundle",
        steps=[
            {"template_id": blog.id, "display_name": "Blog Draft"},
            {"template_id": prayer.id, "display_name": "Prayer"},
        ],
    )
    responder = RateLimitedUntil("Prayer", failures=3)
    services.text_provider = MockTextProvider(responder=responder)
    job = enqueue_job(
        session,
        owner_ctx,
        job_type="workflow",
        payload={"workflow_id": workflow.id, "variables": {"title": "Hope"}},
    ).job
    worker = _worker(session_factory, lock_manager, services)

    assert worker.run_once(account_ids=[owner.account_id]).runs[0].status == "requeued"
    assert worker.run_once(account_ids=[owner.account_id]).runs[0].status == "completed"

    items = _job_items(session, job.id)
    assert [item.prompt_category for item in items] == ["blog_post", "prayer"]
    assert {item.workflow_step_id for item in items} == {step.id for step in workflow.steps}
    assert [prompt for prompt in responder.prompts if prompt.startswith("Blog")] == ["Blog about Hope"]
    assert responder.prompts[-1] == "Prayer after Draft for: Blog about Hope"
    results = job_results(_job(session, job.id))
    assert results["contentGenerated"] == 2
    assert results["steps"] == {"completed": 2, "skipped": 0, "failed": 0}
    assert "Step 1/2 Blog Draft completed on an earlier attempt" in _messages(session, owner_ctx, job.id)


def test_step_retries_stay_inside_one_job_attempt(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    blog = create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="Blog about {{title}}")
    prayer = create_template(session, owner_ctx, name="Prayer", category="prayer", prompt_content="Prayer for {{title}}")
    workflow = create_workflow(
        session,
        owner_ctx,
        name="Daily bundle",
        steps=[
            {"template_id": blog.id, "display_name": "Blog Draft"},
            {"template_id": prayer.id, "display_name": "Prayer"},
        ],
    )
    services.text_provider = MockTextProvider(responder=RateLimitedUntil("Blog", failures=2))
    job = enqueue_job(
        session,
        owner_ctx,
        job_type="workflow",
        payload={"workflow_id": workflow.id, "variables": {"title": "Hope"}},
    ).job

    result = _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert result.runs[0].status == "completed"
    refreshed = _job(session, job.id)
    assert refreshed.retry_count == 0
    entries = tail(session, owner_ctx, job_id=job.id).entries
    assert len([entry for entry in entries if entry.level == "warn"]) == 2
    step_infos = [entry.message for entry in entries if entry.level == "info" and entry.source == "workflow_engine"]
    assert step_infos == ["Step 1/2 Blog Draft completed", "Step 2/2 Prayer completed"]


def test_cancel_during_full_cycle_keeps_partial_results(session_factory, session, owner, owner_ctx, lock_manager, services) -> None:
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="Blog about {{title}}")
    first = seed_story(session_factory, owner.account_id, title="First story", relevance_score=0.9)
    second = seed_story(session_factory, owner.account_id, title="Second story", relevance_score=0.8)
    job = enqueue_job(session, owner_ctx, job_type="full_cycle", payload={"categories": ["blog"]}).job
    worker_sessions = []

    class CancellingIngestion(RecordingIngestion):
        def analyze(self, session, ctx):
            worker_sessions.append(session)
            return 2

    def cancel_after_first_call(request):
        cancel_job(worker_sessions[0], owner_ctx, job.id)
        return f"Draft for: {request.prompt}"

    services.ingestion = CancellingIngestion()
    services.text_provider = MockTextProvider(responder=cancel_after_first_call)

    result = _worker(session_factory, lock_manager, services).run_once(account_ids=[owner.account_id])

    assert result.runs[0].status == "cancelled"
    refreshed = _job(session, job.id)
    assert refreshed.status == "cancelled"
    items = _job_items(session, job.id)
    assert len(items) == 1
    assert items[0].story_id in {first, second}
    results = job_results(refreshed)
    assert results["articlesAggregated"] == 3
    assert results["articlesAnalyzed"] == 2
    assert results["contentGenerated"] == 1
    assert results["contentIds"] == [items[0].id]
    assert len(services.text_provider.calls) == 1
    assert _messages(session, owner_ctx, job.id)[-1] == "Job cancelled at step boundary"
