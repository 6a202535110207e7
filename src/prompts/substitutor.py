"""Placeholder rendering for template versions."""

from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Any, List, Mapping, Optional

from src.core.errors import UndefinedVariable


TOKEN_PATTERN = re.compile(r"\{\{\{\{|\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@dataclass(frozen=True)
class RenderedPrompt:
    prompt: str
    system_message: Optional[str]
    variables_used: tuple[str, ...]


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, sort_keys=True)
    return str(value)


def find_variables(content: Optional[str]) -> List[str]:
    """Placeholder names in first-seen order, escapes excluded."""

    names: List[str] = []
    for match in TOKEN_PATTERN.finditer(content or ""):
        name = match.group(1)
        if name is not None and name not in names:
            names.append(name)
    return names


def _render(content: str, variables: Mapping[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name is None:
            return "{{"
        return _stringify(variables[name])

    return TOKEN_PATTERN.sub(replace, content)


def render_text(content: str, variables: Mapping[str, Any]) -> str:
    missing = [name for name in find_variables(content) if name not in variables]
    if missing:
        raise UndefinedVariable(missing)
    return _render(content, variables)


def render_prompt(
    prompt_content: str,
    variables: Mapping[str, Any],
    *,
    system_message: Optional[str] = None,
) -> RenderedPrompt:
    """Render prompt and system message with one bag; all missing names are reported together."""

    used = find_variables(prompt_content)
    for name in find_variables(system_message):
        if name not in used:
            used.append(name)

    missing = [name for name in used if name not in variables]
    if missing:
        raise UndefinedVariable(missing)

    rendered_system = _render(system_message, variables) if system_message else system_message
    return RenderedPrompt(
        prompt=_render(prompt_content, variables),
        system_message=rendered_system,
        variables_used=tuple(used),
    )
