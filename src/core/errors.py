"""Error taxonomy shared by the content pipeline."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class PipelineError(RuntimeError):
    """Base error carrying a stable kind and a retry classification."""

    kind = "pipeline_error"
    retryable = False

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details: Dict[str, Any] = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NoAccount(PipelineError):
    kind = "no_account"


class Forbidden(PipelineError):
    kind = "forbidden"


class NotFound(PipelineError):
    kind = "not_found"


class InvalidRequest(PipelineError):
    kind = "invalid_request"


class InvalidTransition(PipelineError):
    kind = "invalid_transition"

    def __init__(self, *, entity: str, current: str, target: str) -> None:
        super().__init__(
            f"{entity}_transition_not_allowed from={current} to={target}",
            details={"entity": entity, "from": current, "to": target},
        )
        self.current = current
        self.target = target


class UndefinedVariable(PipelineError):
    kind = "undefined_variable"

    def __init__(self, missing: Iterable[str]) -> None:
        names = list(missing)
        super().__init__(
            "undefined_variables " + ",".join(names),
            details={"missing": names},
        )
        self.missing = names


class NoTemplate(PipelineError):
    kind = "no_template"


class ParseError(PipelineError):
    kind = "parse_error"


class ProviderUnavailable(PipelineError):
    kind = "provider_unavailable"
    retryable = True


class RateLimited(PipelineError):
    kind = "rate_limited"
    retryable = True


class ProviderTimeout(PipelineError):
    kind = "timeout"
    retryable = True


class QuotaExceeded(PipelineError):
    kind = "quota_exceeded"


class UnsafeContent(PipelineError):
    kind = "unsafe_content"


class ConflictingCurrent(PipelineError):
    kind = "conflicting_current"
    retryable = True


class DuplicateVersionNumber(PipelineError):
    kind = "duplicate_version_number"
    retryable = True


class StallReclaim(PipelineError):
    kind = "stall_reclaim"
    retryable = True


class JobCancelled(PipelineError):
    kind = "cancelled"


class JobTimeout(PipelineError):
    kind = "job_timeout"


HTTP_STATUS_BY_KIND: Dict[str, int] = {
    NoAccount.kind: 400,
    Forbidden.kind: 403,
    NotFound.kind: 404,
    NoTemplate.kind: 404,
    InvalidTransition.kind: 409,
    ConflictingCurrent.kind: 409,
    DuplicateVersionNumber.kind: 409,
    UndefinedVariable.kind: 422,
    InvalidRequest.kind: 422,
    UnsafeContent.kind: 422,
    ParseError.kind: 422,
    QuotaExceeded.kind: 402,
    RateLimited.kind: 429,
    ProviderUnavailable.kind: 503,
    ProviderTimeout.kind: 504,
}


def http_status_for(error: PipelineError) -> int:
    return HTTP_STATUS_BY_KIND.get(error.kind, 500)
