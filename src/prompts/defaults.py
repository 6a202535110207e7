"""Seed default templates from YAML definitions."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.accounts.context import PERM_TEMPLATES_WRITE, AccountContext, require_permission
from src.core.config import get_settings
from src.core.errors import InvalidRequest
from src.core.logger import get_logger
from src.prompts.categories import validate_category
from src.prompts.store import create_template
from src.storage.models import Template


logger = get_logger("eden.prompts.defaults")


class TemplateDefinition(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    category: str
    description: Optional[str] = None
    system_message: Optional[str] = None
    prompt: str = Field(min_length=1)


@dataclass(frozen=True)
class SeedResult:
    created: List[str]
    skipped_categories: List[str]


def _resolve_seed_path(path: Optional[Path]) -> Path:
    if path is not None:
        return path
    configured = Path(get_settings().templates_seed_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


def load_template_definitions(path: Optional[Path] = None) -> List[TemplateDefinition]:
    directory = _resolve_seed_path(path)
    if not directory.exists():
        return []

    definitions: List[TemplateDefinition] = []
    for file_path in sorted(directory.glob("*.yaml")):
        parsed = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
        if not isinstance(parsed, dict):
            raise InvalidRequest(f"template_definition_not_object {file_path.name}")
        data: Dict[str, Any] = dict(parsed)
        try:
            definition = TemplateDefinition.model_validate(data)
        except ValidationError as exc:
            raise InvalidRequest(f"template_definition_invalid {file_path.name}") from exc
        definitions.append(definition.model_copy(update={"category": validate_category(definition.category)}))
    return definitions


def seed_default_templates(session: Session, ctx: AccountContext, *, path: Optional[Path] = None) -> SeedResult:
    """Create one template per category the account does not have yet."""

    bound = require_permission(ctx, PERM_TEMPLATES_WRITE)
    existing = set(
        session.scalars(select(Template.category).where(Template.account_id == bound.account_id)).all()
    )

    created: List[str] = []
    skipped: List[str] = []
    for definition in load_template_definitions(path):
        if definition.category in existing:
            skipped.append(definition.category)
            continue
        template = create_template(
            session,
            bound,
            name=definition.name,
            category=definition.category,
            description=definition.description,
            prompt_content=definition.prompt,
            system_message=definition.system_message or None,
        )
        existing.add(definition.category)
        created.append(template.id)

    logger.info(
        "default_templates_seeded",
        account_id=bound.account_id,
        created=len(created),
        skipped=len(skipped),
    )
    return SeedResult(created=created, skipped_categories=skipped)
