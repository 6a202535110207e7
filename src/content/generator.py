"""Produce one content item for a category from a story and the account's current template."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from src.accounts.context import PERM_CONTENT_READ, AccountContext, require_account, require_permission, scoped
from src.ai.orchestrator import GenerationConfig, StepHooks, run_text_generation
from src.ai.providers.base import TextProvider
from src.content.lifecycle import CONTENT_STATUSES, STATUS_DRAFT
from src.content.parsers import parse_content
from src.content.stories import story_variables
from src.core.errors import InvalidRequest, NotFound, ParseError
from src.core.logger import get_logger
from src.core.metrics import record_content_generated
from src.prompts.categories import canonicalize_category, is_text_category
from src.prompts.store import resolve_current_version
from src.storage.models import Account, ContentItem, GenerationLog, Story


logger = get_logger("eden.content.generator")


@dataclass(frozen=True)
class GeneratedContent:
    content: ContentItem
    data: Dict[str, Any]
    raw_text: str
    parse_error: Optional[str]
    log_id: str
    template_id: str
    version_id: str
    attempts: int


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def content_data(item: ContentItem) -> Dict[str, Any]:
    try:
        parsed = json.loads(item.content_data_json or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def build_variables(
    session: Session,
    ctx: AccountContext,
    *,
    story: Optional[Story],
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Variable bag: story fields, then account defaults, then caller values (last wins)."""

    bound = require_account(ctx)
    variables: Dict[str, Any] = {}
    if story is not None:
        variables.update(story_variables(story))

    account = session.get(Account, bound.account_id)
    variables.setdefault("account_name", account.name if account is not None else "")
    variables.setdefault("current_date", _now_utc().date().isoformat())
    if extra:
        variables.update(dict(extra))
    return variables


def generate_content(
    session: Session,
    ctx: AccountContext,
    *,
    story: Optional[Story] = None,
    category: Optional[str] = None,
    template_id: Optional[str] = None,
    config: Optional[GenerationConfig] = None,
    variables: Optional[Mapping[str, Any]] = None,
    job_id: Optional[str] = None,
    hooks: Optional[StepHooks] = None,
    provider: Optional[TextProvider] = None,
    regenerated_from_id: Optional[str] = None,
    workflow_step_id: Optional[str] = None,
) -> GeneratedContent:
    """Resolve, render, call and persist.

    Parse failures never raise: the item is stored as a draft with ``parse_error``
    and the raw provider text so a reviewer can still act on it.
    """

    bound = require_account(ctx)
    if not template_id and not category:
        raise InvalidRequest("category_or_template_required")
    template, version = resolve_current_version(session, bound, template_id=template_id, category=category)
    if not is_text_category(template.category):
        raise InvalidRequest(
            f"template_category_not_text {template.category}",
            details={"template_id": template.id, "category": template.category},
        )

    bag = build_variables(session, bound, story=story, extra=variables)
    result = run_text_generation(
        session,
        bound,
        template=template,
        version=version,
        variables=bag,
        config=config,
        job_id=job_id,
        hooks=hooks,
        provider=provider,
    )

    raw_text = result.output.text
    parse_error: Optional[str] = None
    try:
        data = parse_content(template.category, raw_text)
    except ParseError as exc:
        data = {}
        parse_error = exc.message
        logger.warning(
            "content_parse_failed",
            account_id=bound.account_id,
            category=template.category,
            template_id=template.id,
            error=exc.message,
        )

    now = _now_utc()
    item = ContentItem(
        account_id=bound.account_id,
        story_id=story.id if story is not None else None,
        prompt_category=template.category,
        template_id=template.id,
        version_id=version.id,
        job_id=job_id,
        regenerated_from_id=regenerated_from_id,
        workflow_step_id=workflow_step_id,
        content_data_json=_json_dumps(data),
        raw_text=raw_text,
        parse_error=parse_error,
        status=STATUS_DRAFT,
        created_at=now,
        updated_at=now,
    )
    session.add(item)
    session.flush()

    log_row = session.get(GenerationLog, result.log_id)
    if log_row is not None:
        log_row.content_id = item.id
    session.commit()

    record_content_generated(category=template.category)
    logger.info(
        "content_generated",
        account_id=bound.account_id,
        content_id=item.id,
        story_id=item.story_id,
        category=template.category,
        version_id=version.id,
        parse_error=parse_error is not None,
    )
    return GeneratedContent(
        content=item,
        data=data,
        raw_text=raw_text,
        parse_error=parse_error,
        log_id=result.log_id,
        template_id=template.id,
        version_id=version.id,
        attempts=result.attempts,
    )


def get_content(session: Session, ctx: AccountContext, content_id: str) -> ContentItem:
    bound = require_permission(ctx, PERM_CONTENT_READ)
    item = session.scalar(scoped(bound, ContentItem, ContentItem.id == content_id))
    if item is None:
        raise NotFound("content_not_found", details={"content_id": content_id})
    return item


def list_content(
    session: Session,
    ctx: AccountContext,
    *,
    status: Optional[str] = None,
    category: Optional[str] = None,
    story_id: Optional[str] = None,
    limit: int = 50,
) -> List[ContentItem]:
    """Review listing; parse-error drafts are included and flagged by their ``parse_error``."""

    bound = require_permission(ctx, PERM_CONTENT_READ)
    statement = scoped(bound, ContentItem)
    if status:
        normalized = status.strip().lower()
        if normalized not in CONTENT_STATUSES:
            raise InvalidRequest(f"unknown_content_status {normalized}", details={"allowed": list(CONTENT_STATUSES)})
        statement = statement.where(ContentItem.status == normalized)
    if category:
        statement = statement.where(ContentItem.prompt_category == canonicalize_category(category))
    if story_id:
        statement = statement.where(ContentItem.story_id == str(story_id))
    statement = statement.order_by(ContentItem.created_at.desc(), ContentItem.id.desc()).limit(max(1, min(limit, 200)))
    return list(session.scalars(statement).all())
