"""Run a workflow's steps in order with conditions, error policy and data flow between steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.accounts.context import AccountContext, require_account
from src.ai.orchestrator import GenerationConfig, StepHooks
from src.ai.providers.base import TextProvider
from src.content.generator import content_data, generate_content
from src.content.stories import story_variables
from src.core.errors import JobCancelled, JobTimeout, PipelineError
from src.core.logger import get_logger
from src.storage.models import ContentItem, Story, WorkflowStep
from src.workflows.service import Condition, get_workflow, step_conditions, step_key


logger = get_logger("eden.workflows.engine")

LOG_SOURCE = "workflow_engine"

STEP_COMPLETED = "completed"
STEP_SKIPPED = "skipped"
STEP_FAILED = "failed"


class RunHooks(StepHooks, Protocol):
    def progress(self, percentage: int, details: str) -> None:
        raise NotImplementedError


class NullRunHooks:
    def checkpoint(self) -> None:
        return None

    def log(self, level: str, message: str, *, source: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        del level, message, source, metadata

    def progress(self, percentage: int, details: str) -> None:
        del percentage, details


@dataclass(frozen=True)
class StepOutcome:
    step_id: str
    display_name: str
    status: str
    content_id: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class WorkflowRun:
    workflow_id: str
    outcomes: List[StepOutcome] = field(default_factory=list)

    @property
    def content_ids(self) -> List[str]:
        return [outcome.content_id for outcome in self.outcomes if outcome.content_id]

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """Dotted lookup (``steps.analysis.output``); missing segments resolve to None."""

    current: Any = context
    for segment in path.split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        else:
            return None
    return current


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return bool(value)
    return True


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    value = resolve_path(context, condition.field)
    operator = condition.operator
    negated = operator.startswith("not_")
    base = operator[4:] if negated else operator

    if base == "exists":
        result = _is_present(value)
    elif base == "equals":
        result = value is not None and str(value).strip() == str(condition.value or "").strip()
    elif base == "contains":
        result = value is not None and str(condition.value or "") in str(value)
    else:
        result = False
    return not result if negated else result


def conditions_pass(conditions: List[Condition], context: Mapping[str, Any]) -> bool:
    return all(evaluate_condition(condition, context) for condition in conditions)


def _step_variables(base: Mapping[str, Any], steps_context: Mapping[str, Dict[str, Any]], previous_output: str) -> Dict[str, Any]:
    bag = dict(base)
    for key, state in steps_context.items():
        bag[f"steps_{key}_output"] = state.get("output") or ""
        bag[f"steps_{key}_content_id"] = state.get("content_id") or ""
    bag["previous_output"] = previous_output
    return bag


def _persisted_steps(session: Session, account_id: str, job_id: Optional[str]) -> Dict[str, ContentItem]:
    """Items an earlier attempt of the same job already stored, keyed by workflow step."""

    if not job_id:
        return {}
    items = session.scalars(
        select(ContentItem)
        .where(
            ContentItem.account_id == account_id,
            ContentItem.job_id == job_id,
            ContentItem.workflow_step_id.is_not(None),
        )
        .order_by(ContentItem.created_at)
    ).all()
    return {item.workflow_step_id: item for item in items}


def run_workflow(
    session: Session,
    ctx: AccountContext,
    workflow_id: str,
    *,
    story: Optional[Story] = None,
    variables: Optional[Mapping[str, Any]] = None,
    config: Optional[GenerationConfig] = None,
    job_id: Optional[str] = None,
    hooks: Optional[RunHooks] = None,
    provider: Optional[TextProvider] = None,
) -> WorkflowRun:
    """Execute enabled steps in order; a failing step aborts unless it continues on error.

    Cancellation and job timeouts always propagate.
    """

    bound = require_account(ctx)
    run_hooks = hooks or NullRunHooks()
    workflow = get_workflow(session, bound, workflow_id)
    steps: List[WorkflowStep] = sorted(workflow.steps, key=lambda item: item.step_order)
    total = len(steps)

    base_variables: Dict[str, Any] = dict(variables or {})
    context: Dict[str, Any] = {"story": story_variables(story) if story is not None else {}, "steps": {}}
    context.update({key: value for key, value in base_variables.items() if key not in {"story", "steps"}})
    steps_context: Dict[str, Dict[str, Any]] = context["steps"]
    previous_output = ""
    run = WorkflowRun(workflow_id=workflow.id)
    persisted = _persisted_steps(session, bound.account_id, job_id)

    logger.info("workflow_started", account_id=bound.account_id, workflow_id=workflow.id, job_id=job_id, steps=total)
    for index, step in enumerate(steps, start=1):
        run_hooks.checkpoint()
        key = step_key(step.display_name)
        label = f"Step {index}/{total} {step.display_name}"

        if not step.enabled:
            outcome = StepOutcome(step.id, step.display_name, STEP_SKIPPED, reason="disabled")
            run_hooks.log("info", f"{label} skipped (disabled)", source=LOG_SOURCE, metadata={"step_id": step.id})
        elif not conditions_pass(step_conditions(step), context):
            outcome = StepOutcome(step.id, step.display_name, STEP_SKIPPED, reason="conditions_not_met")
            steps_context[key] = {"status": STEP_SKIPPED, "output": "", "content_id": None}
            run_hooks.log(
                "info",
                f"{label} skipped (conditions not met)",
                source=LOG_SOURCE,
                metadata={"step_id": step.id},
            )
        elif step.id in persisted:
            item = persisted[step.id]
            previous_output = item.raw_text or ""
            steps_context[key] = {
                "status": STEP_COMPLETED,
                "output": previous_output,
                "content_id": item.id,
                "data": content_data(item),
                "category": item.prompt_category,
            }
            outcome = StepOutcome(step.id, step.display_name, STEP_COMPLETED, content_id=item.id)
            run_hooks.log(
                "info",
                f"{label} completed on an earlier attempt",
                source=LOG_SOURCE,
                metadata={"step_id": step.id, "content_id": item.id},
            )
        else:
            try:
                generated = generate_content(
                    session,
                    bound,
                    story=story,
                    template_id=step.template_id,
                    config=config,
                    variables=_step_variables(base_variables, steps_context, previous_output),
                    job_id=job_id,
                    hooks=run_hooks,
                    provider=provider,
                    workflow_step_id=step.id,
                )
            except (JobCancelled, JobTimeout):
                raise
            except PipelineError as exc:
                steps_context[key] = {"status": STEP_FAILED, "output": "", "content_id": None, "error": exc.kind}
                run.outcomes.append(StepOutcome(step.id, step.display_name, STEP_FAILED, error=exc.message))
                run_hooks.log(
                    "error",
                    f"{label} failed: {exc.kind}",
                    source=LOG_SOURCE,
                    metadata={"step_id": step.id, "kind": exc.kind, "continue_on_error": step.continue_on_error},
                )
                run_hooks.progress(int(index / total * 100), f"{label} failed")
                if not step.continue_on_error:
                    logger.warning(
                        "workflow_aborted",
                        account_id=bound.account_id,
                        workflow_id=workflow.id,
                        step_id=step.id,
                        kind=exc.kind,
                    )
                    raise
                continue

            previous_output = generated.raw_text
            steps_context[key] = {
                "status": STEP_COMPLETED,
                "output": generated.raw_text,
                "content_id": generated.content.id,
                "data": generated.data,
                "category": generated.content.prompt_category,
            }
            outcome = StepOutcome(step.id, step.display_name, STEP_COMPLETED, content_id=generated.content.id)
            run_hooks.log(
                "info",
                f"{label} completed",
                source=LOG_SOURCE,
                metadata={
                    "step_id": step.id,
                    "content_id": generated.content.id,
                    "attempts": generated.attempts,
                    "parse_error": generated.parse_error,
                },
            )

        run.outcomes.append(outcome)
        run_hooks.progress(int(index / total * 100), f"{label} {outcome.status}")

    logger.info(
        "workflow_finished",
        account_id=bound.account_id,
        workflow_id=workflow.id,
        job_id=job_id,
        completed=run.count(STEP_COMPLETED),
        skipped=run.count(STEP_SKIPPED),
        failed=run.count(STEP_FAILED),
    )
    return run
