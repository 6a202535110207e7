"""Read access to source stories, the generation quality gate and the ingestion seam."""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.accounts.context import AccountContext, require_account, scoped
from src.core.errors import NotFound
from src.core.logger import get_logger
from src.storage.models import ContentItem, Story


logger = get_logger("eden.content.stories")

MIN_CONTENT_LENGTH = 500
TITLE_ONLY_MARGIN = 50


@dataclass(frozen=True)
class StoryQuality:
    eligible: bool
    score: float
    content_length: int
    meets_min_length: bool
    is_title_only: bool
    issues: tuple[str, ...]


def assess_story_quality(story: Story) -> StoryQuality:
    """Score a story's text; eligibility needs 500+ characters that are more than the title."""

    text = (story.full_text or "").strip()
    title = (story.title or "").strip()
    length = len(text)
    is_title_only = length <= len(title) + TITLE_ONLY_MARGIN
    meets_min_length = length >= MIN_CONTENT_LENGTH

    if is_title_only:
        score = 0.0
    elif length < MIN_CONTENT_LENGTH:
        score = round(length / MIN_CONTENT_LENGTH * 0.3, 2)
    elif length < 1000:
        score = round(0.3 + (length / 1000) * 0.4, 2)
    else:
        score = round(0.7 + min((length / 2000) * 0.3, 0.3), 2)

    issues: List[str] = []
    if is_title_only:
        issues.append("title_only")
    if not meets_min_length:
        issues.append("content_too_short")
    return StoryQuality(
        eligible=meets_min_length and not is_title_only,
        score=score,
        content_length=length,
        meets_min_length=meets_min_length,
        is_title_only=is_title_only,
        issues=tuple(issues),
    )


def story_keywords(story: Story) -> List[str]:
    try:
        parsed = json.loads(story.keywords_json or "[]")
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed if str(item).strip()]


def story_variables(story: Story) -> Dict[str, Any]:
    text = story.full_text or ""
    summary = story.summary or text[:300]
    publication_date = story.publication_date.date().isoformat() if story.publication_date else ""
    return {
        "story_id": story.id,
        "title": story.title,
        "content": text,
        "full_text": text,
        "summary": summary,
        "url": story.url or "",
        "source_name": story.source_name or "Unknown",
        "publication_date": publication_date,
        "relevance_score": story.relevance_score if story.relevance_score is not None else "",
        "keywords": story_keywords(story),
        "article_content": f"Title: {story.title}\n\nContent: {text}\n\nSource: {story.source_name or 'Unknown'}",
    }


def get_story(session: Session, ctx: AccountContext, story_id: Any) -> Story:
    bound = require_account(ctx)
    story = session.scalar(scoped(bound, Story, Story.id == str(story_id)))
    if story is None:
        raise NotFound("story_not_found", details={"story_id": str(story_id)})
    return story


def list_generation_candidates(
    session: Session,
    ctx: AccountContext,
    *,
    limit: int = 5,
    min_relevance: Optional[float] = None,
) -> List[Story]:
    """Highest-relevance stories with no content yet, newest first on ties."""

    bound = require_account(ctx)
    generated = select(ContentItem.story_id).where(
        ContentItem.account_id == bound.account_id,
        ContentItem.story_id.is_not(None),
    )
    statement = scoped(bound, Story, Story.id.not_in(generated))
    if min_relevance is not None:
        statement = statement.where(Story.relevance_score >= min_relevance)
    statement = statement.order_by(
        Story.relevance_score.desc().nulls_last(),
        Story.created_at.desc(),
    ).limit(max(1, limit))
    return list(session.scalars(statement).all())


class NewsIngestion(Protocol):
    """Collaborator that aggregates sources and scores stories."""

    def aggregate(self, session: Session, ctx: AccountContext) -> int:
        raise NotImplementedError

    def analyze(self, session: Session, ctx: AccountContext) -> int:
        raise NotImplementedError

    def refresh_source(self, session: Session, ctx: AccountContext, source_id: str) -> int:
        raise NotImplementedError

    def submit_urls(self, session: Session, ctx: AccountContext, urls: Sequence[str]) -> int:
        raise NotImplementedError


class NullNewsIngestion:
    """Default collaborator: stories arrive through another service, so nothing is fetched here."""

    def aggregate(self, session: Session, ctx: AccountContext) -> int:
        del session
        logger.info("ingestion_aggregate_skipped", account_id=ctx.account_id)
        return 0

    def analyze(self, session: Session, ctx: AccountContext) -> int:
        del session
        logger.info("ingestion_analyze_skipped", account_id=ctx.account_id)
        return 0

    def refresh_source(self, session: Session, ctx: AccountContext, source_id: str) -> int:
        del session
        logger.info("ingestion_source_refresh_skipped", account_id=ctx.account_id, source_id=source_id)
        return 0

    def submit_urls(self, session: Session, ctx: AccountContext, urls: Sequence[str]) -> int:
        del session
        logger.info("ingestion_submit_urls_skipped", account_id=ctx.account_id, urls=len(urls))
        return 0
