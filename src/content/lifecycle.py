"""Content item lifecycle graph."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from src.accounts.context import PERM_CONTENT_REVIEW, AccountContext, require_permission, scoped
from src.core.errors import InvalidRequest, InvalidTransition, NotFound
from src.core.logger import get_logger
from src.storage.models import ContentItem


logger = get_logger("eden.content.lifecycle")

STATUS_DRAFT = "draft"
STATUS_REVIEW_PENDING = "review_pending"
STATUS_APPROVED = "approved"
STATUS_PUBLISHED = "published"
STATUS_REJECTED = "rejected"
STATUS_ARCHIVED = "archived"

CONTENT_STATUSES = (
    STATUS_DRAFT,
    STATUS_REVIEW_PENDING,
    STATUS_APPROVED,
    STATUS_PUBLISHED,
    STATUS_REJECTED,
    STATUS_ARCHIVED,
)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    STATUS_DRAFT: frozenset({STATUS_REVIEW_PENDING, STATUS_REJECTED}),
    STATUS_REVIEW_PENDING: frozenset({STATUS_APPROVED, STATUS_REJECTED}),
    STATUS_REJECTED: frozenset({STATUS_REVIEW_PENDING}),
    STATUS_APPROVED: frozenset({STATUS_PUBLISHED, STATUS_ARCHIVED}),
    STATUS_ARCHIVED: frozenset({STATUS_APPROVED}),
    STATUS_PUBLISHED: frozenset(),
}

# Sources a regenerate job may start from; the result is always a new draft.
REGENERATABLE_STATUSES = frozenset({STATUS_REJECTED, STATUS_DRAFT})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if target not in CONTENT_STATUSES:
        raise InvalidRequest(f"unknown_content_status {target}", details={"allowed": list(CONTENT_STATUSES)})
    if not can_transition(current, target):
        raise InvalidTransition(entity="content", current=current, target=target)


def transition_content_status(
    session: Session,
    ctx: AccountContext,
    content_id: str,
    *,
    target: str,
    reason: Optional[str] = None,
) -> ContentItem:
    bound = require_permission(ctx, PERM_CONTENT_REVIEW)
    normalized = (target or "").strip().lower()
    item = session.scalar(scoped(bound, ContentItem, ContentItem.id == content_id))
    if item is None:
        raise NotFound("content_not_found", details={"content_id": content_id})

    previous = item.status
    ensure_transition(previous, normalized)
    item.status = normalized
    item.updated_at = _now_utc()
    session.commit()
    logger.info(
        "content_status_changed",
        account_id=bound.account_id,
        content_id=item.id,
        from_status=previous,
        to_status=normalized,
        reason=reason,
    )
    return item
