"""Template store: templates, immutable versions, current pointer and legacy mirror."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, TypeVar

from sqlalchemy import case, desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.accounts.context import (
    PERM_TEMPLATES_READ,
    PERM_TEMPLATES_WRITE,
    AccountContext,
    require_permission,
    scoped,
)
from src.core.errors import (
    ConflictingCurrent,
    DuplicateVersionNumber,
    InvalidRequest,
    NoTemplate,
    NotFound,
    PipelineError,
)
from src.core.logger import get_logger
from src.prompts.categories import canonicalize_category, validate_category
from src.storage.models import GenerationLog, LegacyPrompt, Template, TemplateVersion


T = TypeVar("T")
TRANSACTION_ATTEMPTS = 3

logger = get_logger("eden.prompts.store")


@dataclass(frozen=True)
class TemplateSummary:
    template_id: str
    name: str
    category: str
    description: Optional[str]
    current_version_id: Optional[str]
    current_version_number: Optional[int]
    version_count: int
    usage_count: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class TemplateDetail:
    template: Template
    current_version: Optional[TemplateVersion]


@dataclass(frozen=True)
class VersionSummary:
    version: TemplateVersion
    usage_count: int


@dataclass(frozen=True)
class GenerationHistoryItem:
    log: GenerationLog
    version_number: Optional[int]


@dataclass(frozen=True)
class VersionStats:
    version_id: str
    version_number: int
    is_current: bool
    uses: int
    successes: int
    failures: int
    avg_tokens: float
    avg_generation_time_ms: float
    last_used_at: Optional[datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _classify_integrity_error(exc: IntegrityError) -> PipelineError:
    detail = str(getattr(exc, "orig", exc)).lower()
    if "version_number" in detail:
        return DuplicateVersionNumber("template_version_number_taken")
    if "name" in detail and "prompt_templates" in detail:
        return InvalidRequest("template_name_taken")
    return ConflictingCurrent("template_current_version_conflict")


def _run_in_transaction(session: Session, operation: Callable[[], T], *, event: str) -> T:
    """Commit one structural change, retrying transient uniqueness races."""

    for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
        try:
            result = operation()
            session.commit()
            return result
        except IntegrityError as exc:
            session.rollback()
            error = _classify_integrity_error(exc)
            if not error.retryable or attempt >= TRANSACTION_ATTEMPTS:
                raise error from exc
            logger.warning(f"{event}_retry", attempt=attempt, kind=error.kind)
        except Exception:
            session.rollback()
            raise
    raise ConflictingCurrent("template_transaction_exhausted")  # pragma: no cover


def load_template(session: Session, ctx: AccountContext, template_id: str) -> Template:
    template = session.scalar(scoped(ctx, Template, Template.id == template_id))
    if template is None:
        raise NotFound("template_not_found", details={"template_id": template_id})
    return template


def load_version(session: Session, ctx: AccountContext, template_id: str, version_id: str) -> TemplateVersion:
    version = session.scalar(
        scoped(
            ctx,
            TemplateVersion,
            TemplateVersion.id == version_id,
            TemplateVersion.template_id == template_id,
        )
    )
    if version is None:
        raise NotFound("template_version_not_found", details={"template_id": template_id, "version_id": version_id})
    return version


def _current_version(session: Session, template: Template) -> Optional[TemplateVersion]:
    if not template.current_version_id:
        return None
    return session.scalar(
        select(TemplateVersion).where(
            TemplateVersion.id == template.current_version_id,
            TemplateVersion.template_id == template.id,
        )
    )


def _mark_current(session: Session, template: Template, version: TemplateVersion) -> None:
    now = _now_utc()
    previous = session.scalars(
        select(TemplateVersion).where(
            TemplateVersion.template_id == template.id,
            TemplateVersion.is_current.is_(True),
            TemplateVersion.id != version.id,
        )
    ).all()
    for item in previous:
        item.is_current = False
    # Clear before set so the one-current unique index never sees two rows.
    session.flush()
    version.is_current = True
    template.current_version_id = version.id
    template.updated_at = now
    _dual_write_legacy(session, template=template, version=version, now=now)
    session.flush()


def _dual_write_legacy(session: Session, *, template: Template, version: TemplateVersion, now: datetime) -> None:
    legacy = session.scalar(
        select(LegacyPrompt).where(
            LegacyPrompt.account_id == template.account_id,
            LegacyPrompt.category == template.category,
        )
    )
    if legacy is None:
        legacy = LegacyPrompt(account_id=template.account_id, category=template.category)
        session.add(legacy)
    legacy.prompt_content = version.prompt_content
    legacy.system_message = version.system_message
    legacy.template_id = template.id
    legacy.version_id = version.id
    legacy.updated_at = now


def create_template(
    session: Session,
    ctx: AccountContext,
    *,
    name: str,
    category: str,
    prompt_content: str,
    description: Optional[str] = None,
    system_message: Optional[str] = None,
) -> Template:
    """Create a template with version 1 as current and mirror it to the legacy row."""

    bound = require_permission(ctx, PERM_TEMPLATES_WRITE)
    normalized_name = name.strip()
    if not normalized_name:
        raise InvalidRequest("template_name_required")
    if not prompt_content.strip():
        raise InvalidRequest("prompt_content_required")
    normalized_category = validate_category(category)

    def operation() -> Template:
        template = Template(
            account_id=bound.account_id,
            name=normalized_name,
            category=normalized_category,
            description=description,
        )
        session.add(template)
        session.flush()
        version = TemplateVersion(
            account_id=bound.account_id,
            template_id=template.id,
            version_number=1,
            prompt_content=prompt_content,
            system_message=system_message,
            notes="Initial version",
            created_by=bound.user_id,
            is_current=False,
        )
        session.add(version)
        session.flush()
        _mark_current(session, template, version)
        return template

    template = _run_in_transaction(session, operation, event="template_create")
    logger.info(
        "template_created",
        account_id=bound.account_id,
        template_id=template.id,
        category=template.category,
    )
    return template


def list_templates(session: Session, ctx: AccountContext, *, category: Optional[str] = None) -> List[TemplateSummary]:
    bound = require_permission(ctx, PERM_TEMPLATES_READ)
    statement = scoped(bound, Template).order_by(Template.category.asc(), Template.name.asc())
    if category:
        statement = statement.where(Template.category == canonicalize_category(category))
    templates = list(session.scalars(statement).all())
    if not templates:
        return []

    template_ids = [template.id for template in templates]
    version_rows = session.execute(
        select(
            TemplateVersion.template_id,
            func.count(TemplateVersion.id),
        )
        .where(TemplateVersion.template_id.in_(template_ids))
        .group_by(TemplateVersion.template_id)
    ).all()
    version_counts: Dict[str, int] = {str(row[0]): int(row[1]) for row in version_rows}

    current_rows = session.execute(
        select(TemplateVersion.template_id, TemplateVersion.version_number).where(
            TemplateVersion.template_id.in_(template_ids),
            TemplateVersion.is_current.is_(True),
        )
    ).all()
    current_numbers: Dict[str, int] = {str(row[0]): int(row[1]) for row in current_rows}

    usage_rows = session.execute(
        select(GenerationLog.template_id, func.count(GenerationLog.id))
        .where(
            GenerationLog.account_id == bound.account_id,
            GenerationLog.template_id.in_(template_ids),
        )
        .group_by(GenerationLog.template_id)
    ).all()
    usage_counts: Dict[str, int] = {str(row[0]): int(row[1]) for row in usage_rows}

    return [
        TemplateSummary(
            template_id=template.id,
            name=template.name,
            category=template.category,
            description=template.description,
            current_version_id=template.current_version_id,
            current_version_number=current_numbers.get(template.id),
            version_count=version_counts.get(template.id, 0),
            usage_count=usage_counts.get(template.id, 0),
            created_at=template.created_at,
            updated_at=template.updated_at,
        )
        for template in templates
    ]


def get_template(session: Session, ctx: AccountContext, template_id: str) -> TemplateDetail:
    bound = require_permission(ctx, PERM_TEMPLATES_READ)
    template = load_template(session, bound, template_id)
    return TemplateDetail(template=template, current_version=_current_version(session, template))


def create_version(
    session: Session,
    ctx: AccountContext,
    template_id: str,
    *,
    prompt_content: str,
    system_message: Optional[str] = None,
    notes: Optional[str] = None,
    created_by: Optional[str] = None,
) -> TemplateVersion:
    """Append an immutable version with number max+1 and make it current.

    A ``system_message`` of ``None`` carries the current version's message forward;
    pass an empty string to clear it.
    """

    bound = require_permission(ctx, PERM_TEMPLATES_WRITE)
    if not prompt_content.strip():
        raise InvalidRequest("prompt_content_required")

    def operation() -> TemplateVersion:
        template = load_template(session, bound, template_id)
        current = _current_version(session, template)
        inherited_system = system_message
        if inherited_system is None and current is not None:
            inherited_system = current.system_message

        max_number = session.scalar(
            select(func.max(TemplateVersion.version_number)).where(TemplateVersion.template_id == template.id)
        )
        version = TemplateVersion(
            account_id=bound.account_id,
            template_id=template.id,
            version_number=int(max_number or 0) + 1,
            prompt_content=prompt_content,
            system_message=inherited_system,
            notes=notes,
            created_by=created_by or bound.user_id,
            is_current=False,
        )
        session.add(version)
        session.flush()
        _mark_current(session, template, version)
        return version

    version = _run_in_transaction(session, operation, event="template_version_create")
    logger.info(
        "template_version_created",
        account_id=bound.account_id,
        template_id=template_id,
        version_id=version.id,
        version_number=version.version_number,
    )
    return version


def set_current_version(session: Session, ctx: AccountContext, template_id: str, version_id: str) -> TemplateVersion:
    bound = require_permission(ctx, PERM_TEMPLATES_WRITE)

    def operation() -> TemplateVersion:
        template = load_template(session, bound, template_id)
        version = load_version(session, bound, template_id, version_id)
        _mark_current(session, template, version)
        return version

    version = _run_in_transaction(session, operation, event="template_set_current")
    session.refresh(version)
    logger.info(
        "template_current_version_set",
        account_id=bound.account_id,
        template_id=template_id,
        version_id=version.id,
        version_number=version.version_number,
    )
    return version


def _usage_counts(session: Session, *, account_id: str, template_id: str) -> Dict[str, int]:
    rows = session.execute(
        select(GenerationLog.version_id, func.count(GenerationLog.id))
        .where(GenerationLog.account_id == account_id, GenerationLog.template_id == template_id)
        .group_by(GenerationLog.version_id)
    ).all()
    return {str(row[0]): int(row[1]) for row in rows}


def list_versions(session: Session, ctx: AccountContext, template_id: str) -> List[VersionSummary]:
    bound = require_permission(ctx, PERM_TEMPLATES_READ)
    template = load_template(session, bound, template_id)
    versions = list(
        session.scalars(
            scoped(bound, TemplateVersion, TemplateVersion.template_id == template.id).order_by(
                TemplateVersion.version_number.desc()
            )
        ).all()
    )
    usage = _usage_counts(session, account_id=bound.account_id, template_id=template.id)
    return [VersionSummary(version=version, usage_count=usage.get(version.id, 0)) for version in versions]


def get_history(
    session: Session,
    ctx: AccountContext,
    *,
    template_id: Optional[str] = None,
    limit: int = 50,
) -> List[GenerationHistoryItem]:
    bound = require_permission(ctx, PERM_TEMPLATES_READ)
    safe_limit = max(1, min(limit, 500))
    statement = (
        select(GenerationLog, TemplateVersion.version_number)
        .outerjoin(TemplateVersion, TemplateVersion.id == GenerationLog.version_id)
        .where(GenerationLog.account_id == bound.account_id)
        .order_by(desc(GenerationLog.created_at))
        .limit(safe_limit)
    )
    if template_id:
        load_template(session, bound, template_id)
        statement = statement.where(GenerationLog.template_id == template_id)
    return [
        GenerationHistoryItem(log=row[0], version_number=int(row[1]) if row[1] is not None else None)
        for row in session.execute(statement).all()
    ]


def get_stats(session: Session, ctx: AccountContext, template_id: str) -> List[VersionStats]:
    bound = require_permission(ctx, PERM_TEMPLATES_READ)
    template = load_template(session, bound, template_id)
    success_case = case((GenerationLog.success.is_(True), 1), else_=0)
    rows = session.execute(
        select(
            TemplateVersion.id,
            TemplateVersion.version_number,
            TemplateVersion.is_current,
            func.count(GenerationLog.id),
            func.coalesce(func.sum(success_case), 0),
            func.coalesce(func.avg(GenerationLog.tokens_used), 0),
            func.coalesce(func.avg(GenerationLog.generation_time_ms), 0),
            func.max(GenerationLog.created_at),
        )
        .outerjoin(
            GenerationLog,
            (GenerationLog.version_id == TemplateVersion.id) & (GenerationLog.account_id == bound.account_id),
        )
        .where(TemplateVersion.template_id == template.id)
        .group_by(TemplateVersion.id, TemplateVersion.version_number, TemplateVersion.is_current)
        .order_by(TemplateVersion.version_number.desc())
    ).all()

    stats: List[VersionStats] = []
    for row in rows:
        uses = int(row[3] or 0)
        successes = int(row[4] or 0)
        stats.append(
            VersionStats(
                version_id=str(row[0]),
                version_number=int(row[1]),
                is_current=bool(row[2]),
                uses=uses,
                successes=successes,
                failures=uses - successes,
                avg_tokens=round(float(row[5] or 0), 2),
                avg_generation_time_ms=round(float(row[6] or 0), 2),
                last_used_at=row[7],
            )
        )
    return stats


def resolve_current_version(
    session: Session,
    ctx: AccountContext,
    *,
    template_id: Optional[str] = None,
    category: Optional[str] = None,
) -> tuple[Template, TemplateVersion]:
    """Template plus its current version, by id or by the account's category template."""

    bound = require_permission(ctx, PERM_TEMPLATES_READ)
    if template_id:
        template = session.scalar(scoped(bound, Template, Template.id == template_id))
    else:
        normalized = canonicalize_category(category)
        template = session.scalar(
            scoped(
                bound,
                Template,
                Template.category == normalized,
                Template.is_active.is_(True),
            )
            .order_by(Template.updated_at.desc(), Template.created_at.desc())
            .limit(1)
        )
    if template is None:
        raise NoTemplate(
            "template_not_configured",
            details={"template_id": template_id, "category": canonicalize_category(category) or None},
        )

    version = _current_version(session, template)
    if version is None:
        raise NoTemplate("template_has_no_current_version", details={"template_id": template.id})
    return template, version
