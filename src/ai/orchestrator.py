"""Bind template versions to text providers with step-local retry and generation logging."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
import random
import time
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple, TypeVar

from sqlalchemy.orm import Session

from src.accounts.context import PERM_TEMPLATES_WRITE, AccountContext, require_account, require_permission
from src.ai.providers.base import TextGenerationOutput, TextGenerationRequest, TextProvider
from src.ai.providers.factory import TextBindingChoice, get_text_provider, select_text_binding
from src.core.config import get_settings
from src.core.errors import PipelineError, ProviderTimeout
from src.core.logger import get_logger
from src.core.metrics import record_provider_call
from src.prompts.store import load_template, load_version
from src.prompts.substitutor import RenderedPrompt, render_prompt
from src.storage.models import GenerationLog, Template, TemplateVersion


logger = get_logger("eden.ai.orchestrator")

R = TypeVar("R")

# USD per 1k tokens, matched by model prefix.
TEXT_COST_PER_1K_TOKENS: Dict[str, float] = {
    "gpt-4o-mini": 0.0006,
    "gpt-4o": 0.01,
    "gpt-4": 0.03,
    "gpt-3.5": 0.0015,
    "o1": 0.06,
    "o3": 0.04,
    "gemini-2.5-pro": 0.01,
    "gemini": 0.0004,
    "mock": 0.0,
}


class StepHooks(Protocol):
    """Callbacks the owning job supplies so long provider steps stay cooperative."""

    def checkpoint(self) -> None:
        raise NotImplementedError

    def log(self, level: str, message: str, *, source: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class NullStepHooks:
    def checkpoint(self) -> None:
        return None

    def log(self, level: str, message: str, *, source: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        del level, message, source, metadata


@dataclass(frozen=True)
class GenerationConfig:
    model: Optional[str] = None
    provider: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra_variables: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> GenerationConfig:
        data = dict(payload or {})
        extra = data.get("variables")
        return cls(
            model=data.get("model") or None,
            provider=data.get("provider") or None,
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens") or data.get("maxTokens"),
            extra_variables=dict(extra) if isinstance(extra, dict) else {},
        )

    def overrides(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


@dataclass(frozen=True)
class TextGenerationResult:
    output: TextGenerationOutput
    rendered: RenderedPrompt
    binding: TextBindingChoice
    log_id: str
    attempts: int


def estimate_text_cost(model: str, tokens_used: int) -> float:
    normalized = model.strip().lower()
    best_prefix = ""
    for prefix in TEXT_COST_PER_1K_TOKENS:
        if normalized.startswith(prefix) and len(prefix) > len(best_prefix):
            best_prefix = prefix
    rate = TEXT_COST_PER_1K_TOKENS.get(best_prefix, 0.0)
    return round(rate * max(tokens_used, 0) / 1000.0, 6)


def call_with_timeout(operation: Callable[[], R], *, timeout_seconds: float, provider_name: str) -> R:
    """Abandon the provider call once the step's soft timeout elapses."""

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="provider-step")
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout as exc:
        raise ProviderTimeout(f"{provider_name}_step_timeout after={timeout_seconds}s") from exc
    finally:
        executor.shutdown(wait=False)


def _backoff_seconds(attempt: int, base: float) -> float:
    if base <= 0:
        return 0.0
    delay = base * (2 ** (attempt - 1))
    return delay + random.uniform(0, delay * 0.25)


def call_provider_step(
    operation: Callable[[], R],
    *,
    provider_name: str,
    timeout_seconds: float,
    hooks: StepHooks,
    metadata: Optional[Dict[str, Any]] = None,
    on_failure: Optional[Callable[[PipelineError, int], None]] = None,
    sleeper: Callable[[float], None] = time.sleep,
) -> Tuple[R, int]:
    """Run one provider step, retrying retryable errors with backoff.

    Returns the result and the number of attempts used. ``on_failure`` sees
    every failed attempt with its elapsed milliseconds before the retry
    decision is made.
    """

    settings = get_settings()
    max_attempts = max(1, settings.provider_step_max_attempts)
    attempt = 0
    while True:
        attempt += 1
        hooks.checkpoint()
        started = time.perf_counter()
        try:
            result = call_with_timeout(operation, timeout_seconds=timeout_seconds, provider_name=provider_name)
            return result, attempt
        except PipelineError as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            record_provider_call(provider=provider_name, outcome=exc.kind)
            if on_failure is not None:
                on_failure(exc, elapsed_ms)
            if not exc.retryable or attempt >= max_attempts:
                raise
            delay = _backoff_seconds(attempt, settings.provider_retry_backoff_seconds)
            hooks.log(
                "warn",
                f"{provider_name} {exc.kind}; retrying attempt {attempt + 1}/{max_attempts}",
                source="ai_orchestrator",
                metadata={
                    **(metadata or {}),
                    "attempt": attempt,
                    "kind": exc.kind,
                    "delay_seconds": round(delay, 3),
                },
            )
            if delay > 0:
                sleeper(delay)


def _write_log(
    session: Session,
    *,
    account_id: str,
    template: Template,
    version: TemplateVersion,
    binding: TextBindingChoice,
    job_id: Optional[str],
    prompt_text: str,
    output: Optional[TextGenerationOutput] = None,
    error: Optional[PipelineError] = None,
    elapsed_ms: int = 0,
) -> GenerationLog:
    tokens = output.tokens_used if output is not None else 0
    model_used = output.model_used if output is not None else binding.model
    row = GenerationLog(
        account_id=account_id,
        template_id=template.id,
        version_id=version.id,
        job_id=job_id,
        ai_service=output.provider if output is not None else binding.provider,
        model_used=model_used,
        tokens_used=max(0, tokens),
        generation_time_ms=output.latency_ms if output is not None else max(0, elapsed_ms),
        cost_estimate_usd=estimate_text_cost(model_used, tokens) if output is not None else None,
        prompt_text=prompt_text,
        success=error is None,
        error=f"{error.kind}: {error.message}" if error is not None else None,
    )
    session.add(row)
    session.commit()
    return row


def run_text_generation(
    session: Session,
    ctx: AccountContext,
    *,
    template: Template,
    version: TemplateVersion,
    variables: Mapping[str, Any],
    config: Optional[GenerationConfig] = None,
    job_id: Optional[str] = None,
    hooks: Optional[StepHooks] = None,
    provider: Optional[TextProvider] = None,
    sleeper: Callable[[float], None] = time.sleep,
) -> TextGenerationResult:
    """Render a version and call its provider, writing one log row per attempt.

    Rendering failures raise before any provider call or log row. Retryable
    provider errors are retried inside the step; each retry emits a warn entry
    through ``hooks``.
    """

    bound = require_account(ctx)
    settings = get_settings()
    step_hooks = hooks or NullStepHooks()
    generation_config = config or GenerationConfig()

    rendered = render_prompt(
        version.prompt_content,
        {**generation_config.extra_variables, **dict(variables)},
        system_message=version.system_message,
    )
    binding = select_text_binding(template.category, generation_config.overrides())
    text_provider = provider or get_text_provider(binding.provider)
    request = TextGenerationRequest(
        prompt=rendered.prompt,
        model=binding.model,
        temperature=binding.temperature,
        max_tokens=binding.max_tokens,
        system=rendered.system_message,
    )

    def record_failure(exc: PipelineError, elapsed_ms: int) -> None:
        _write_log(
            session,
            account_id=bound.account_id,
            template=template,
            version=version,
            binding=binding,
            job_id=job_id,
            prompt_text=rendered.prompt,
            error=exc,
            elapsed_ms=elapsed_ms,
        )

    try:
        output, attempts = call_provider_step(
            lambda: text_provider.generate_text(request),
            provider_name=binding.provider,
            timeout_seconds=settings.text_step_timeout_seconds,
            hooks=step_hooks,
            metadata={"template_id": template.id, "category": template.category},
            on_failure=record_failure,
            sleeper=sleeper,
        )
    except PipelineError as exc:
        logger.warning(
            "text_generation_failed",
            account_id=bound.account_id,
            template_id=template.id,
            version_id=version.id,
            kind=exc.kind,
        )
        raise

    log_row = _write_log(
        session,
        account_id=bound.account_id,
        template=template,
        version=version,
        binding=binding,
        job_id=job_id,
        prompt_text=rendered.prompt,
        output=output,
    )
    record_provider_call(provider=output.provider, outcome="success", tokens=output.tokens_used)
    logger.info(
        "text_generation_completed",
        account_id=bound.account_id,
        template_id=template.id,
        version_id=version.id,
        provider=output.provider,
        model=output.model_used,
        tokens_used=output.tokens_used,
        attempts=attempts,
    )
    return TextGenerationResult(
        output=output,
        rendered=rendered,
        binding=binding,
        log_id=log_row.id,
        attempts=attempts,
    )


def test_version(
    session: Session,
    ctx: AccountContext,
    template_id: str,
    version_id: str,
    *,
    variables: Mapping[str, Any],
    config: Optional[GenerationConfig] = None,
    provider: Optional[TextProvider] = None,
) -> TextGenerationResult:
    """Try any version, current or not, without persisting a content item."""

    bound = require_permission(ctx, PERM_TEMPLATES_WRITE)
    template = load_template(session, bound, template_id)
    version = load_version(session, bound, template_id, version_id)
    return run_text_generation(
        session,
        bound,
        template=template,
        version=version,
        variables=variables,
        config=config,
        provider=provider,
    )


test_version.__test__ = False  # type: ignore[attr-defined]
