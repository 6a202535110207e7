"""Job handlers: one function per job type, run inside a JobRuntime."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from sqlalchemy import select

from src.accounts.context import scoped
from src.ai.orchestrator import GenerationConfig
from src.content.generator import generate_content
from src.content.lifecycle import REGENERATABLE_STATUSES
from src.content.stories import assess_story_quality, get_story, list_generation_candidates
from src.core.errors import InvalidRequest, InvalidTransition, JobCancelled, JobTimeout, NoTemplate, NotFound, UnsafeContent
from src.core.logger import get_logger
from src.images.service import ImageRequestParams, generate_images_for_content
from src.jobs.runtime import JobRuntime
from src.jobs.states import (
    JOB_FULL_CYCLE,
    JOB_GENERATE_FOR_STORY,
    JOB_GENERATE_IMAGE,
    JOB_REGENERATE,
    JOB_SOURCE_REFRESH,
    JOB_SUBMIT_URLS,
    JOB_WORKFLOW,
)
from src.prompts.categories import (
    CATEGORY_BLOG_POST,
    CATEGORY_PRAYER,
    CATEGORY_SOCIAL_MEDIA,
    CATEGORY_VIDEO_SCRIPT,
    canonicalize_category,
    is_text_category,
)
from src.storage.models import ContentItem, Story
from src.workflows.engine import STEP_COMPLETED, STEP_FAILED, STEP_SKIPPED, run_workflow


logger = get_logger("eden.jobs.handlers")

LOG_SOURCE = "job_handler"

DEFAULT_CATEGORIES = (CATEGORY_BLOG_POST, CATEGORY_SOCIAL_MEDIA, CATEGORY_VIDEO_SCRIPT, CATEGORY_PRAYER)
DEFAULT_STORY_LIMIT = 5

JobHandler = Callable[[JobRuntime, Dict[str, Any]], Dict[str, Any]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _categories(payload: Mapping[str, Any]) -> List[str]:
    raw = payload.get("categories")
    if not raw:
        return list(DEFAULT_CATEGORIES)
    if not isinstance(raw, (list, tuple)):
        raise InvalidRequest("job_payload_categories_must_be_list")
    categories: List[str] = []
    for item in raw:
        category = canonicalize_category(str(item))
        if not is_text_category(category):
            raise InvalidRequest(f"unsupported_generation_category {category or '<empty>'}")
        if category not in categories:
            categories.append(category)
    return categories


def _generation_config(payload: Mapping[str, Any]) -> GenerationConfig:
    config = payload.get("config")
    return GenerationConfig.from_payload(config if isinstance(config, Mapping) else payload)


def _record_job_content(runtime: JobRuntime) -> None:
    """Rebuild content counters from what this job actually persisted."""

    rows = runtime.session.execute(
        select(ContentItem.id, ContentItem.prompt_category)
        .where(ContentItem.account_id == runtime.account_id, ContentItem.job_id == runtime.job_id)
        .order_by(ContentItem.created_at.asc(), ContentItem.id.asc())
    ).all()
    runtime.set_result("contentGenerated", len(rows))
    runtime.set_result("contentIds", [row[0] for row in rows])
    runtime.set_result("blogIds", [row[0] for row in rows if row[1] == CATEGORY_BLOG_POST])


def _generated_pairs(runtime: JobRuntime) -> Set[Tuple[str, str]]:
    """(story, category) pairs this job already stored, e.g. on an attempt before a retry."""

    rows = runtime.session.execute(
        select(ContentItem.story_id, ContentItem.prompt_category).where(
            ContentItem.account_id == runtime.account_id,
            ContentItem.job_id == runtime.job_id,
            ContentItem.story_id.is_not(None),
        )
    ).all()
    return {(str(row[0]), str(row[1])) for row in rows}


def _generate_story_bundle(
    runtime: JobRuntime,
    story: Story,
    categories: Sequence[str],
    config: GenerationConfig,
    done: Set[Tuple[str, str]],
) -> List[str]:
    created: List[str] = []
    for category in categories:
        runtime.checkpoint()
        if (story.id, category) in done:
            runtime.log(
                "info",
                f"{category} for \"{story.title[:80]}\" already generated by an earlier attempt",
                source=LOG_SOURCE,
                metadata={"story_id": story.id, "category": category},
            )
            continue
        try:
            generated = generate_content(
                runtime.session,
                runtime.ctx,
                story=story,
                category=category,
                config=config,
                job_id=runtime.job_id,
                hooks=runtime,
                provider=runtime.services.text_provider,
            )
        except NoTemplate:
            runtime.log(
                "warn",
                f"No template configured for {category}; skipped",
                source=LOG_SOURCE,
                metadata={"story_id": story.id, "category": category},
            )
            continue
        except UnsafeContent as exc:
            runtime.log(
                "warn",
                f"{category} generation blocked as unsafe",
                source=LOG_SOURCE,
                metadata={"story_id": story.id, "category": category, "error": exc.message},
            )
            continue

        content_id = generated.content.id
        created.append(content_id)
        runtime.add_result("contentGenerated")
        runtime.append_result("contentIds", content_id)
        if category == CATEGORY_BLOG_POST:
            runtime.append_result("blogIds", content_id)
        if generated.parse_error:
            runtime.log(
                "warn",
                f"{category} output could not be parsed; saved as draft for review",
                source=LOG_SOURCE,
                metadata={"content_id": content_id, "parse_error": generated.parse_error},
            )
        else:
            runtime.log(
                "info",
                f"Generated {category} for \"{story.title[:80]}\"",
                source=LOG_SOURCE,
                metadata={"content_id": content_id, "story_id": story.id},
            )
    return created


def handle_full_cycle(runtime: JobRuntime, payload: Dict[str, Any]) -> Dict[str, Any]:
    ingestion = runtime.services.ingestion
    categories = _categories(payload)
    config = _generation_config(payload)
    limit = int(payload.get("limit") or DEFAULT_STORY_LIMIT)

    _record_job_content(runtime)
    done = _generated_pairs(runtime)
    runtime.progress(5, "Starting full automation cycle")

    runtime.checkpoint()
    runtime.progress(10, "Aggregating news from sources")
    aggregated = ingestion.aggregate(runtime.session, runtime.ctx)
    runtime.set_result("articlesAggregated", aggregated)
    runtime.progress(35, f"Aggregated {aggregated} articles")
    runtime.log("info", f"Aggregated {aggregated} articles", source=LOG_SOURCE)

    runtime.checkpoint()
    runtime.progress(40, "Running AI analysis on articles")
    analyzed = ingestion.analyze(runtime.session, runtime.ctx)
    runtime.set_result("articlesAnalyzed", analyzed)
    runtime.progress(65, f"Analyzed {analyzed} articles")
    runtime.log("info", f"Analyzed {analyzed} articles", source=LOG_SOURCE)

    runtime.checkpoint()
    runtime.progress(70, "Generating content from top stories")
    stories = list_generation_candidates(
        runtime.session,
        runtime.ctx,
        limit=limit,
        min_relevance=payload.get("min_relevance"),
    )
    total = len(stories)
    for index, story in enumerate(stories, start=1):
        runtime.checkpoint()
        quality = assess_story_quality(story)
        if not quality.eligible:
            runtime.append_result("skippedStoryIds", story.id)
            runtime.log(
                "warn",
                f"Skipped story \"{story.title[:80]}\": {', '.join(quality.issues)}",
                source=LOG_SOURCE,
                metadata={"story_id": story.id, "score": quality.score, "content_length": quality.content_length},
            )
            continue
        _generate_story_bundle(runtime, story, categories, config, done)
        runtime.progress(70 + int(25 * index / total), f"Processed story {index}/{total}")

    generated = runtime.results.get("contentGenerated", 0)
    runtime.progress(95, f"Generated {generated} content pieces")
    runtime.set_result("completedAt", _now_iso())
    return runtime.results


def handle_generate_for_story(runtime: JobRuntime, payload: Dict[str, Any]) -> Dict[str, Any]:
    story_id = str(payload["story_id"])
    categories = _categories(payload)
    config = _generation_config(payload)

    runtime.set_result("specificStoryId", story_id)
    _record_job_content(runtime)
    runtime.progress(10, "Starting content generation")
    runtime.progress(20, "Finding story")
    story = get_story(runtime.session, runtime.ctx, story_id)
    runtime.set_result("storyTitle", story.title)

    quality = assess_story_quality(story)
    if not quality.eligible and not payload.get("force"):
        raise InvalidRequest(
            "story_not_eligible_for_generation",
            details={"story_id": story_id, "issues": list(quality.issues), "score": quality.score},
        )

    runtime.progress(30, "Generating content for story")
    created = _generate_story_bundle(runtime, story, categories, config, _generated_pairs(runtime))
    blog_ids = runtime.results.get("blogIds") or []
    if blog_ids:
        runtime.set_result("blogId", blog_ids[0])
    runtime.progress(90, f"Content generation complete ({len(created)} new items)")
    runtime.set_result("completedAt", _now_iso())
    return runtime.results


def handle_regenerate(runtime: JobRuntime, payload: Dict[str, Any]) -> Dict[str, Any]:
    content_id = str(payload["content_id"])
    runtime.progress(10, "Loading content")
    original = runtime.session.scalar(scoped(runtime.ctx, ContentItem, ContentItem.id == content_id))
    if original is None:
        raise NotFound("content_not_found", details={"content_id": content_id})
    if original.status not in REGENERATABLE_STATUSES:
        raise InvalidTransition(entity="content", current=original.status, target="regenerate")

    story = runtime.session.get(Story, original.story_id) if original.story_id else None
    runtime.checkpoint()
    runtime.progress(30, f"Regenerating {original.prompt_category}")
    generated = generate_content(
        runtime.session,
        runtime.ctx,
        story=story,
        category=original.prompt_category,
        template_id=payload.get("template_id"),
        config=_generation_config(payload),
        job_id=runtime.job_id,
        hooks=runtime,
        provider=runtime.services.text_provider,
        regenerated_from_id=original.id,
    )
    runtime.set_result("contentGenerated", 1)
    runtime.set_result("contentIds", [generated.content.id])
    runtime.set_result("regeneratedFromId", original.id)
    if generated.content.prompt_category == CATEGORY_BLOG_POST:
        runtime.set_result("blogId", generated.content.id)
    runtime.log(
        "info",
        f"Regenerated {original.prompt_category} as a new draft",
        source=LOG_SOURCE,
        metadata={"content_id": generated.content.id, "regenerated_from_id": original.id},
    )
    runtime.progress(90, "Regeneration complete")
    runtime.set_result("completedAt", _now_iso())
    return runtime.results


def handle_source_refresh(runtime: JobRuntime, payload: Dict[str, Any]) -> Dict[str, Any]:
    source_id = str(payload["source_id"])
    runtime.progress(10, "Refreshing source")
    runtime.checkpoint()
    aggregated = runtime.services.ingestion.refresh_source(runtime.session, runtime.ctx, source_id)
    runtime.set_result("sourceId", source_id)
    runtime.set_result("articlesAggregated", aggregated)
    runtime.log("info", f"Source refresh found {aggregated} articles", source=LOG_SOURCE, metadata={"source_id": source_id})
    runtime.progress(90, "Source refresh complete")
    runtime.set_result("completedAt", _now_iso())
    return runtime.results


def handle_submit_urls(runtime: JobRuntime, payload: Dict[str, Any]) -> Dict[str, Any]:
    urls = [url.strip() for url in payload["urls"]]
    runtime.progress(10, f"Submitting {len(urls)} URLs")
    runtime.checkpoint()
    aggregated = runtime.services.ingestion.submit_urls(runtime.session, runtime.ctx, urls)
    runtime.set_result("urlsSubmitted", len(urls))
    runtime.set_result("articlesAggregated", aggregated)
    runtime.log("info", f"Submitted {len(urls)} URLs, stored {aggregated} articles", source=LOG_SOURCE)
    runtime.progress(90, "URL submission complete")
    runtime.set_result("completedAt", _now_iso())
    return runtime.results


def handle_generate_image(runtime: JobRuntime, payload: Dict[str, Any]) -> Dict[str, Any]:
    content_id = str(payload["content_id"])
    params = ImageRequestParams.from_payload(payload.get("params") if isinstance(payload.get("params"), Mapping) else payload)
    runtime.set_result("contentId", content_id)
    runtime.progress(10, "Preparing image request")
    try:
        outcome = generate_images_for_content(
            runtime.session,
            runtime.ctx,
            content_id,
            params=params,
            job_id=runtime.job_id,
            hooks=runtime,
            provider=runtime.services.image_provider,
            uploader=runtime.services.image_uploader,
        )
    except UnsafeContent as exc:
        runtime.set_result("imagesGenerated", 0)
        runtime.log("error", "All generated images were flagged unsafe", source=LOG_SOURCE, metadata={"error": exc.message})
        runtime.progress(90, "No safe images generated")
        runtime.set_result("completedAt", _now_iso())
        return runtime.results

    runtime.set_result("imagesGenerated", len(outcome.image_ids))
    runtime.set_result("imageIds", outcome.image_ids)
    runtime.set_result("styleType", outcome.prepared.request.style_type)
    runtime.set_result("modelVersion", outcome.prepared.request.model_version)
    if outcome.unsafe_count:
        runtime.set_result("unsafeImages", outcome.unsafe_count)
    runtime.log(
        "info",
        f"Generated {len(outcome.image_ids)} images for review",
        source=LOG_SOURCE,
        metadata={"content_id": content_id, "image_ids": outcome.image_ids},
    )
    runtime.progress(90, "Image generation complete")
    runtime.set_result("completedAt", _now_iso())
    return runtime.results


def handle_workflow(runtime: JobRuntime, payload: Dict[str, Any]) -> Dict[str, Any]:
    workflow_id = str(payload["workflow_id"])
    story = get_story(runtime.session, runtime.ctx, payload["story_id"]) if payload.get("story_id") else None
    variables = payload.get("variables") if isinstance(payload.get("variables"), Mapping) else None

    runtime.set_result("workflowId", workflow_id)
    runtime.progress(0, "Starting workflow")
    try:
        run = run_workflow(
            runtime.session,
            runtime.ctx,
            workflow_id,
            story=story,
            variables=variables,
            config=_generation_config(payload),
            job_id=runtime.job_id,
            hooks=runtime,
            provider=runtime.services.text_provider,
        )
    except (JobCancelled, JobTimeout):
        _record_job_content(runtime)
        raise

    _record_job_content(runtime)
    runtime.set_result(
        "steps",
        {
            STEP_COMPLETED: run.count(STEP_COMPLETED),
            STEP_SKIPPED: run.count(STEP_SKIPPED),
            STEP_FAILED: run.count(STEP_FAILED),
        },
    )
    runtime.set_result("completedAt", _now_iso())
    return runtime.results


HANDLERS: Dict[str, JobHandler] = {
    JOB_FULL_CYCLE: handle_full_cycle,
    JOB_GENERATE_FOR_STORY: handle_generate_for_story,
    JOB_REGENERATE: handle_regenerate,
    JOB_SOURCE_REFRESH: handle_source_refresh,
    JOB_SUBMIT_URLS: handle_submit_urls,
    JOB_GENERATE_IMAGE: handle_generate_image,
    JOB_WORKFLOW: handle_workflow,
}


def handler_for(job_type: str) -> Optional[JobHandler]:
    return HANDLERS.get(job_type)
