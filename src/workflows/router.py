"""Workflow API routes: definitions, ordered steps and queued runs."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from src.accounts.context import PERM_JOBS_WRITE, PERM_TEMPLATES_READ, PERM_WORKFLOWS_WRITE, AccountContext, require_permission
from src.accounts.dependencies import http_error, require_account_permission
from src.core.errors import PipelineError
from src.jobs.queue import enqueue_job
from src.jobs.states import JOB_WORKFLOW
from src.schemas.workflows import (
    StepCreateRequest,
    StepItem,
    StepReorderRequest,
    StepUpdateRequest,
    WorkflowCreateRequest,
    WorkflowItem,
    WorkflowListResponse,
    WorkflowRunRequest,
    WorkflowRunResponse,
)
from src.storage.db import get_session
from src.storage.models import Workflow, WorkflowStep
from src.workflows import service


router = APIRouter(prefix="/workflows", tags=["workflows"])


def _step_item(step: WorkflowStep) -> StepItem:
    return StepItem(
        id=step.id,
        step_order=step.step_order,
        template_id=step.template_id,
        display_name=step.display_name,
        conditions=[condition.to_dict() for condition in service.step_conditions(step)],
        continue_on_error=step.continue_on_error,
        enabled=step.enabled,
    )


def to_workflow_item(workflow: Workflow) -> WorkflowItem:
    return WorkflowItem(
        id=workflow.id,
        name=workflow.name,
        description=workflow.description,
        is_active=workflow.is_active,
        steps=[_step_item(step) for step in sorted(workflow.steps, key=lambda item: item.step_order)],
        created_at=workflow.created_at,
        updated_at=workflow.updated_at,
    )


@router.get("", response_model=WorkflowListResponse)
def list_workflows(
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_READ)),
    session: Session = Depends(get_session),
) -> WorkflowListResponse:
    try:
        workflows = service.list_workflows(session, ctx)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return WorkflowListResponse(account_id=ctx.account_id, items=[to_workflow_item(item) for item in workflows])


@router.post("", response_model=WorkflowItem, status_code=201)
def create_workflow(
    payload: WorkflowCreateRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_WORKFLOWS_WRITE)),
    session: Session = Depends(get_session),
) -> WorkflowItem:
    try:
        workflow = service.create_workflow(
            session,
            ctx,
            name=payload.name,
            description=payload.description,
            steps=[step.model_dump(exclude={"position"}) for step in payload.steps],
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return to_workflow_item(workflow)


@router.get("/{workflow_id}", response_model=WorkflowItem)
def get_workflow(
    workflow_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_READ)),
    session: Session = Depends(get_session),
) -> WorkflowItem:
    try:
        return to_workflow_item(service.get_workflow(session, ctx, workflow_id))
    except PipelineError as exc:
        raise http_error(exc) from exc


@router.delete("/{workflow_id}", status_code=204)
def delete_workflow(
    workflow_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_WORKFLOWS_WRITE)),
    session: Session = Depends(get_session),
) -> Response:
    try:
        service.delete_workflow(session, ctx, workflow_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@router.post("/{workflow_id}/steps", response_model=WorkflowItem, status_code=201)
def add_step(
    workflow_id: str,
    payload: StepCreateRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_WORKFLOWS_WRITE)),
    session: Session = Depends(get_session),
) -> WorkflowItem:
    try:
        service.add_step(
            session,
            ctx,
            workflow_id,
            template_id=payload.template_id,
            display_name=payload.display_name,
            conditions=[condition.model_dump(exclude_none=True) for condition in payload.conditions],
            continue_on_error=payload.continue_on_error,
            enabled=payload.enabled,
            position=payload.position,
        )
        workflow = service.get_workflow(session, ctx, workflow_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return to_workflow_item(workflow)


@router.patch("/{workflow_id}/steps/{step_id}", response_model=StepItem)
def update_step(
    workflow_id: str,
    step_id: str,
    payload: StepUpdateRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_WORKFLOWS_WRITE)),
    session: Session = Depends(get_session),
) -> StepItem:
    conditions = None
    if payload.conditions is not None:
        conditions = [condition.model_dump(exclude_none=True) for condition in payload.conditions]
    try:
        step = service.update_step(
            session,
            ctx,
            workflow_id,
            step_id,
            display_name=payload.display_name,
            conditions=conditions,
            continue_on_error=payload.continue_on_error,
            enabled=payload.enabled,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _step_item(step)


@router.delete("/{workflow_id}/steps/{step_id}", response_model=WorkflowItem)
def remove_step(
    workflow_id: str,
    step_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_WORKFLOWS_WRITE)),
    session: Session = Depends(get_session),
) -> WorkflowItem:
    try:
        workflow = service.remove_step(session, ctx, workflow_id, step_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return to_workflow_item(workflow)


@router.put("/{workflow_id}/steps/order", response_model=WorkflowItem)
def reorder_steps(
    workflow_id: str,
    payload: StepReorderRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_WORKFLOWS_WRITE)),
    session: Session = Depends(get_session),
) -> WorkflowItem:
    try:
        workflow = service.reorder_steps(session, ctx, workflow_id, payload.step_ids)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return to_workflow_item(workflow)


@router.post("/{workflow_id}/run", response_model=WorkflowRunResponse, status_code=202)
def run_workflow(
    workflow_id: str,
    payload: WorkflowRunRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_JOBS_WRITE)),
    session: Session = Depends(get_session),
) -> WorkflowRunResponse:
    job_payload: Dict[str, Any] = {"workflow_id": workflow_id}
    if payload.story_id:
        job_payload["story_id"] = payload.story_id
    if payload.variables:
        job_payload["variables"] = payload.variables
    config = {key: value for key, value in (("model", payload.model), ("provider", payload.provider)) if value}
    if config:
        job_payload["config"] = config
    try:
        service.get_workflow(session, require_permission(ctx, PERM_TEMPLATES_READ), workflow_id)
        result = enqueue_job(session, ctx, job_type=JOB_WORKFLOW, payload=job_payload)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return WorkflowRunResponse(job_id=result.job.id, workflow_id=workflow_id, deduplicated=result.deduplicated)
