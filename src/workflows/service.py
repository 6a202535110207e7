"""Workflow and step management keeping step order dense."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.accounts.context import (
    PERM_TEMPLATES_READ,
    PERM_WORKFLOWS_WRITE,
    AccountContext,
    require_permission,
    scoped,
)
from src.core.errors import InvalidRequest, NotFound
from src.core.logger import get_logger
from src.storage.models import Template, Workflow, WorkflowStep


logger = get_logger("eden.workflows.service")

CONDITION_OPERATORS = ("exists", "not_exists", "equals", "not_equals", "contains", "not_contains")
VALUELESS_OPERATORS = ("exists", "not_exists")


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"field": self.field, "operator": self.operator}
        if self.value is not None:
            payload["value"] = self.value
        return payload


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def step_key(display_name: str) -> str:
    """Key under which a step's output is exposed to later steps."""

    return re.sub(r"[^a-z0-9]+", "_", display_name.strip().lower()).strip("_")


def normalize_conditions(conditions: Optional[Sequence[Mapping[str, Any]]]) -> List[Condition]:
    normalized: List[Condition] = []
    for index, raw in enumerate(conditions or []):
        if not isinstance(raw, Mapping):
            raise InvalidRequest(f"condition_not_object index={index}")
        field = str(raw.get("field") or "").strip()
        operator = str(raw.get("operator") or "").strip().lower()
        if not field:
            raise InvalidRequest(f"condition_field_required index={index}")
        if operator not in CONDITION_OPERATORS:
            raise InvalidRequest(
                f"condition_operator_invalid index={index}",
                details={"allowed": list(CONDITION_OPERATORS)},
            )
        value = raw.get("value")
        if operator not in VALUELESS_OPERATORS and value is None:
            raise InvalidRequest(f"condition_value_required index={index}")
        normalized.append(
            Condition(
                field=field,
                operator=operator,
                value=None if operator in VALUELESS_OPERATORS else str(value),
            )
        )
    return normalized


def step_conditions(step: WorkflowStep) -> List[Condition]:
    try:
        parsed = json.loads(step.conditions_json or "[]")
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []
    return normalize_conditions(parsed)


def _renumber(workflow: Workflow) -> None:
    ordered = sorted(workflow.steps, key=lambda step: (step.step_order, step.created_at or _now_utc()))
    for position, step in enumerate(ordered, start=1):
        step.step_order = position
    workflow.steps.sort(key=lambda step: step.step_order)


def _load_workflow(session: Session, ctx: AccountContext, workflow_id: str) -> Workflow:
    workflow = session.scalar(scoped(ctx, Workflow, Workflow.id == workflow_id))
    if workflow is None:
        raise NotFound("workflow_not_found", details={"workflow_id": workflow_id})
    return workflow


def _require_template(session: Session, ctx: AccountContext, template_id: str) -> Template:
    template = session.scalar(scoped(ctx, Template, Template.id == template_id))
    if template is None:
        raise NotFound("template_not_found", details={"template_id": template_id})
    return template


def _build_step(
    session: Session,
    ctx: AccountContext,
    workflow: Workflow,
    *,
    template_id: str,
    display_name: str,
    conditions: Optional[Sequence[Mapping[str, Any]]],
    continue_on_error: bool,
    enabled: bool,
    order: int,
) -> WorkflowStep:
    _require_template(session, ctx, template_id)
    name = display_name.strip()
    key = step_key(name)
    if not key:
        raise InvalidRequest("step_display_name_required")
    if any(step_key(step.display_name) == key for step in workflow.steps):
        raise InvalidRequest("step_display_name_taken", details={"display_name": name})
    return WorkflowStep(
        account_id=ctx.account_id,
        workflow_id=workflow.id,
        step_order=order,
        template_id=template_id,
        display_name=name,
        conditions_json=_json_dumps([condition.to_dict() for condition in normalize_conditions(conditions)]),
        continue_on_error=bool(continue_on_error),
        enabled=bool(enabled),
        created_at=_now_utc(),
    )


def create_workflow(
    session: Session,
    ctx: AccountContext,
    *,
    name: str,
    description: Optional[str] = None,
    steps: Optional[Sequence[Mapping[str, Any]]] = None,
) -> Workflow:
    bound = require_permission(ctx, PERM_WORKFLOWS_WRITE)
    normalized_name = name.strip()
    if not normalized_name:
        raise InvalidRequest("workflow_name_required")

    now = _now_utc()
    workflow = Workflow(
        account_id=bound.account_id,
        name=normalized_name,
        description=description,
        created_at=now,
        updated_at=now,
    )
    session.add(workflow)
    try:
        session.flush()
        for position, raw in enumerate(steps or [], start=1):
            step = _build_step(
                session,
                bound,
                workflow,
                template_id=str(raw.get("template_id") or ""),
                display_name=str(raw.get("display_name") or ""),
                conditions=raw.get("conditions"),
                continue_on_error=bool(raw.get("continue_on_error", False)),
                enabled=bool(raw.get("enabled", True)),
                order=position,
            )
            workflow.steps.append(step)
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise InvalidRequest("workflow_name_taken", details={"name": normalized_name}) from exc
    except Exception:
        session.rollback()
        raise

    logger.info("workflow_created", account_id=bound.account_id, workflow_id=workflow.id, steps=len(workflow.steps))
    return workflow


def list_workflows(session: Session, ctx: AccountContext) -> List[Workflow]:
    bound = require_permission(ctx, PERM_TEMPLATES_READ)
    return list(session.scalars(scoped(bound, Workflow).order_by(Workflow.name.asc())).all())


def get_workflow(session: Session, ctx: AccountContext, workflow_id: str) -> Workflow:
    bound = require_permission(ctx, PERM_TEMPLATES_READ)
    return _load_workflow(session, bound, workflow_id)


def add_step(
    session: Session,
    ctx: AccountContext,
    workflow_id: str,
    *,
    template_id: str,
    display_name: str,
    conditions: Optional[Sequence[Mapping[str, Any]]] = None,
    continue_on_error: bool = False,
    enabled: bool = True,
    position: Optional[int] = None,
) -> WorkflowStep:
    """Insert a step at ``position`` (1-based, default last) and renumber."""

    bound = require_permission(ctx, PERM_WORKFLOWS_WRITE)
    workflow = _load_workflow(session, bound, workflow_id)
    count = len(workflow.steps)
    target = count + 1 if position is None else max(1, min(int(position), count + 1))
    for step in workflow.steps:
        if step.step_order >= target:
            step.step_order += 1

    step = _build_step(
        session,
        bound,
        workflow,
        template_id=template_id,
        display_name=display_name,
        conditions=conditions,
        continue_on_error=continue_on_error,
        enabled=enabled,
        order=target,
    )
    workflow.steps.append(step)
    _renumber(workflow)
    workflow.updated_at = _now_utc()
    session.commit()
    logger.info("workflow_step_added", account_id=bound.account_id, workflow_id=workflow.id, step_id=step.id)
    return step


def update_step(
    session: Session,
    ctx: AccountContext,
    workflow_id: str,
    step_id: str,
    *,
    display_name: Optional[str] = None,
    conditions: Optional[Sequence[Mapping[str, Any]]] = None,
    continue_on_error: Optional[bool] = None,
    enabled: Optional[bool] = None,
) -> WorkflowStep:
    bound = require_permission(ctx, PERM_WORKFLOWS_WRITE)
    workflow = _load_workflow(session, bound, workflow_id)
    step = next((item for item in workflow.steps if item.id == step_id), None)
    if step is None:
        raise NotFound("workflow_step_not_found", details={"step_id": step_id})

    if display_name is not None:
        key = step_key(display_name)
        if not key:
            raise InvalidRequest("step_display_name_required")
        if any(step_key(other.display_name) == key for other in workflow.steps if other.id != step.id):
            raise InvalidRequest("step_display_name_taken", details={"display_name": display_name})
        step.display_name = display_name.strip()
    if conditions is not None:
        step.conditions_json = _json_dumps([condition.to_dict() for condition in normalize_conditions(conditions)])
    if continue_on_error is not None:
        step.continue_on_error = bool(continue_on_error)
    if enabled is not None:
        step.enabled = bool(enabled)
    workflow.updated_at = _now_utc()
    session.commit()
    return step


def remove_step(session: Session, ctx: AccountContext, workflow_id: str, step_id: str) -> Workflow:
    bound = require_permission(ctx, PERM_WORKFLOWS_WRITE)
    workflow = _load_workflow(session, bound, workflow_id)
    step = next((item for item in workflow.steps if item.id == step_id), None)
    if step is None:
        raise NotFound("workflow_step_not_found", details={"step_id": step_id})

    workflow.steps.remove(step)
    _renumber(workflow)
    workflow.updated_at = _now_utc()
    session.commit()
    logger.info("workflow_step_removed", account_id=bound.account_id, workflow_id=workflow.id, step_id=step_id)
    return workflow


def reorder_steps(session: Session, ctx: AccountContext, workflow_id: str, step_ids: Sequence[str]) -> Workflow:
    bound = require_permission(ctx, PERM_WORKFLOWS_WRITE)
    workflow = _load_workflow(session, bound, workflow_id)
    current_ids = {step.id for step in workflow.steps}
    if len(step_ids) != len(current_ids) or set(step_ids) != current_ids:
        raise InvalidRequest("reorder_must_list_every_step_once")

    positions = {step_id: index for index, step_id in enumerate(step_ids, start=1)}
    for step in workflow.steps:
        step.step_order = positions[step.id]
    _renumber(workflow)
    workflow.updated_at = _now_utc()
    session.commit()
    return workflow


def delete_workflow(session: Session, ctx: AccountContext, workflow_id: str) -> None:
    bound = require_permission(ctx, PERM_WORKFLOWS_WRITE)
    workflow = _load_workflow(session, bound, workflow_id)
    session.delete(workflow)
    session.commit()
    logger.info("workflow_deleted", account_id=bound.account_id, workflow_id=workflow_id)
