"""Job statuses, types and payload requirements."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Tuple

from src.core.errors import InvalidRequest


STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

JOB_STATUSES: Tuple[str, ...] = (
    STATUS_QUEUED,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES: Tuple[str, ...] = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)
ACTIVE_STATUSES: Tuple[str, ...] = (STATUS_QUEUED, STATUS_PROCESSING)

JOB_FULL_CYCLE = "full_cycle"
JOB_GENERATE_FOR_STORY = "generate_for_story"
JOB_REGENERATE = "regenerate"
JOB_SOURCE_REFRESH = "source_refresh"
JOB_SUBMIT_URLS = "submit_urls"
JOB_GENERATE_IMAGE = "generate_image"
JOB_WORKFLOW = "workflow"

JOB_TYPES: Tuple[str, ...] = (
    JOB_FULL_CYCLE,
    JOB_GENERATE_FOR_STORY,
    JOB_REGENERATE,
    JOB_SOURCE_REFRESH,
    JOB_SUBMIT_URLS,
    JOB_GENERATE_IMAGE,
    JOB_WORKFLOW,
)

REQUIRED_PAYLOAD_KEYS: Dict[str, Tuple[str, ...]] = {
    JOB_FULL_CYCLE: (),
    JOB_GENERATE_FOR_STORY: ("story_id",),
    JOB_REGENERATE: ("content_id",),
    JOB_SOURCE_REFRESH: ("source_id",),
    JOB_SUBMIT_URLS: ("urls",),
    JOB_GENERATE_IMAGE: ("content_id",),
    JOB_WORKFLOW: ("workflow_id",),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def validate_job_request(job_type: str, payload: Mapping[str, Any] | None) -> Tuple[str, Dict[str, Any]]:
    normalized_type = (job_type or "").strip().lower()
    if normalized_type not in JOB_TYPES:
        raise InvalidRequest(f"unknown_job_type {normalized_type or '<empty>'}", details={"allowed": list(JOB_TYPES)})
    data = dict(payload or {})
    missing = [key for key in REQUIRED_PAYLOAD_KEYS[normalized_type] if data.get(key) in (None, "", [])]
    if missing:
        raise InvalidRequest(f"job_payload_missing {','.join(missing)}", details={"missing": missing})
    if normalized_type == JOB_SUBMIT_URLS:
        urls = data.get("urls")
        if not isinstance(urls, list) or not all(isinstance(url, str) and url.strip() for url in urls):
            raise InvalidRequest("job_payload_urls_must_be_list_of_strings")
    return normalized_type, data
