"""structlog configuration shared by the API process and the job worker."""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Any, Iterator

import structlog

from src.core.config import get_settings


_CONFIGURED = False

REDACTED = "[redacted]"
_SECRET_SUFFIXES = ("api_key", "secret", "token", "authorization", "password")


def _context_defaults(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    del logger, method_name
    for key in ("request_id", "account_id", "job_id"):
        event_dict.setdefault(key, None)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask provider credentials that end up in log fields."""

    del logger, method_name
    for key, value in event_dict.items():
        if value and key.lower().endswith(_SECRET_SUFFIXES):
            event_dict[key] = REDACTED
    return event_dict


def _service_fields(app_name: str, env: str):
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        del logger, method_name
        event_dict.setdefault("service", app_name)
        event_dict.setdefault("env", env)
        return event_dict

    return processor


def configure_logging() -> None:
    """Set up JSON logs on stdout once per process."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _context_defaults,
            _service_fields(settings.app_name, settings.env),
            redact_secrets,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def bind_request_context(request_id: str, account_id: str | None = None, user_id: str | None = None) -> None:
    structlog.contextvars.bind_contextvars(request_id=request_id, account_id=account_id, user_id=user_id)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def job_log_context(*, job_id: str, account_id: str, worker_id: str, job_type: str | None = None) -> Iterator[None]:
    """Tag every log line emitted while a worker runs one job."""

    with structlog.contextvars.bound_contextvars(
        job_id=job_id,
        account_id=account_id,
        worker_id=worker_id,
        job_type=job_type,
    ):
        yield
