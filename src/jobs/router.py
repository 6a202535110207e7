"""Job queue API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.accounts.context import PERM_JOBS_READ, PERM_JOBS_WRITE, PERM_LOGS_READ, AccountContext
from src.accounts.dependencies import http_error, require_account_permission
from src.core.errors import PipelineError
from src.jobs import queue
from src.logs import stream
from src.logs.router import to_entry_item
from src.schemas.jobs import (
    JobCancelResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobItem,
    JobListResponse,
    JobStatsResponse,
)
from src.schemas.logs import LogTailResponse
from src.storage.db import get_session
from src.storage.models import Job


router = APIRouter(prefix="/jobs", tags=["jobs"])


def to_job_item(job: Job) -> JobItem:
    return JobItem(
        id=job.id,
        account_id=job.account_id,
        job_type=job.job_type,
        status=job.status,
        payload=queue.job_payload(job),
        progress_percentage=job.progress_percentage,
        progress_details=job.progress_details,
        results=queue.job_results(job),
        error_message=job.error_message,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        cancel_requested=job.cancel_requested,
        retry_of_job_id=job.retry_of_job_id,
        worker_id=job.worker_id,
        created_at=job.created_at,
        started_at=job.started_at,
        heartbeat_at=job.heartbeat_at,
        completed_at=job.completed_at,
    )


@router.post("", response_model=JobCreateResponse, status_code=202)
def create_job(
    payload: JobCreateRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_JOBS_WRITE)),
    session: Session = Depends(get_session),
) -> JobCreateResponse:
    try:
        result = queue.enqueue_job(
            session,
            ctx,
            job_type=payload.type,
            payload=payload.payload,
            max_retries=payload.max_retries,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return JobCreateResponse(job_id=result.job.id, status=result.job.status, deduplicated=result.deduplicated)


@router.get("", response_model=JobListResponse)
def list_jobs(
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    ctx: AccountContext = Depends(require_account_permission(PERM_JOBS_READ)),
    session: Session = Depends(get_session),
) -> JobListResponse:
    try:
        jobs = queue.list_jobs(session, ctx, status=status, job_type=job_type, limit=limit)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return JobListResponse(account_id=ctx.account_id, items=[to_job_item(job) for job in jobs])


@router.get("/stats", response_model=JobStatsResponse)
def job_stats(
    window_hours: int = Query(default=24, ge=1, le=24 * 30),
    ctx: AccountContext = Depends(require_account_permission(PERM_JOBS_READ)),
    session: Session = Depends(get_session),
) -> JobStatsResponse:
    try:
        stats = queue.queue_stats(session, ctx, window_hours=window_hours)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return JobStatsResponse(account_id=ctx.account_id, **stats)


@router.get("/{job_id}", response_model=JobItem)
def get_job(
    job_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_JOBS_READ)),
    session: Session = Depends(get_session),
) -> JobItem:
    try:
        return to_job_item(queue.get_job(session, ctx, job_id))
    except PipelineError as exc:
        raise http_error(exc) from exc


@router.post("/{job_id}/cancel", response_model=JobCancelResponse)
def cancel_job(
    job_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_JOBS_WRITE)),
    session: Session = Depends(get_session),
) -> JobCancelResponse:
    try:
        result = queue.cancel_job(session, ctx, job_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return JobCancelResponse(job=to_job_item(result.job), immediate=result.immediate)


@router.post("/{job_id}/retry", response_model=JobCreateResponse, status_code=202)
def retry_job(
    job_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_JOBS_WRITE)),
    session: Session = Depends(get_session),
) -> JobCreateResponse:
    try:
        job = queue.retry_job(session, ctx, job_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return JobCreateResponse(job_id=job.id, status=job.status)


@router.get("/{job_id}/logs", response_model=LogTailResponse)
def job_logs(
    job_id: str,
    since: Optional[str] = None,
    after_id: Optional[int] = Query(default=None, ge=0),
    level: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    ctx: AccountContext = Depends(require_account_permission(PERM_LOGS_READ)),
    session: Session = Depends(get_session),
) -> LogTailResponse:
    try:
        queue.get_job(session, ctx, job_id)
        result = stream.tail(
            session,
            ctx,
            since=stream.parse_cursor(since),
            after_id=after_id,
            level=level,
            job_id=job_id,
            limit=limit,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return LogTailResponse(
        account_id=ctx.account_id,
        entries=[to_entry_item(entry) for entry in result.entries],
        cursor=result.cursor,
        cursor_id=result.cursor_id,
        poll_interval_seconds=result.poll_interval_seconds,
    )
