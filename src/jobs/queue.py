"""Persistent job queue: enqueue with dedupe, conditional claim, retry, cancel and reclaim."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import json
import random
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from src.accounts.context import PERM_JOBS_READ, PERM_JOBS_WRITE, AccountContext, require_permission, scoped
from src.core.config import get_settings
from src.core.errors import InvalidRequest, InvalidTransition, NotFound
from src.core.logger import get_logger
from src.core.metrics import record_job_finished
from src.jobs.states import (
    JOB_STATUSES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    TERMINAL_STATUSES,
    validate_job_request,
)
from src.storage.models import Job


logger = get_logger("eden.jobs.queue")


@dataclass(frozen=True)
class EnqueueResult:
    job: Job
    deduplicated: bool


@dataclass(frozen=True)
class CancelResult:
    job: Job
    immediate: bool


@dataclass(frozen=True)
class ReclaimResult:
    requeued: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    candidates: List[str] = field(default_factory=list)
    dry_run: bool = False


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def payload_hash(payload: Mapping[str, Any]) -> str:
    return hashlib.sha256(_json_dumps(dict(payload)).encode("utf-8")).hexdigest()


def job_payload(job: Job) -> Dict[str, Any]:
    try:
        parsed = json.loads(job.payload_json or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def job_results(job: Job) -> Optional[Dict[str, Any]]:
    if not job.results_json:
        return None
    try:
        parsed = json.loads(job.results_json)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def retry_delay_seconds(retry_count: int) -> float:
    """Exponential backoff with jitter for the ``retry_count``-th retry."""

    settings = get_settings()
    base = settings.job_retry_backoff_base_seconds
    if base <= 0:
        return 0.0
    delay = min(base * (2 ** max(retry_count - 1, 0)), settings.job_retry_backoff_max_seconds)
    return delay + random.uniform(0, delay * 0.2)


def enqueue_job(
    session: Session,
    ctx: AccountContext,
    *,
    job_type: str,
    payload: Optional[Mapping[str, Any]] = None,
    max_retries: Optional[int] = None,
    now: Optional[datetime] = None,
) -> EnqueueResult:
    """Queue a job; an identical queued job from the dedupe window is returned instead."""

    settings = get_settings()
    bound = require_permission(ctx, PERM_JOBS_WRITE)
    normalized_type, data = validate_job_request(job_type, payload)
    digest = payload_hash(data)
    current = _normalize_dt(now) or _now_utc()

    window = settings.job_dedupe_window_seconds
    if window > 0:
        existing = session.scalar(
            scoped(
                bound,
                Job,
                Job.job_type == normalized_type,
                Job.payload_hash == digest,
                Job.status == STATUS_QUEUED,
                Job.created_at >= current - timedelta(seconds=window),
            )
            .order_by(Job.created_at.desc())
            .limit(1)
        )
        if existing is not None:
            logger.info(
                "job_enqueue_deduplicated",
                account_id=bound.account_id,
                job_id=existing.id,
                job_type=normalized_type,
            )
            return EnqueueResult(job=existing, deduplicated=True)

    retries = settings.job_max_retries if max_retries is None else max(0, int(max_retries))
    job = Job(
        account_id=bound.account_id,
        job_type=normalized_type,
        status=STATUS_QUEUED,
        payload_json=_json_dumps(data),
        payload_hash=digest,
        progress_percentage=0,
        retry_count=0,
        max_retries=retries,
        created_by=bound.user_id,
        created_at=current,
        updated_at=current,
    )
    session.add(job)
    session.commit()
    logger.info("job_enqueued", account_id=bound.account_id, job_id=job.id, job_type=normalized_type)
    return EnqueueResult(job=job, deduplicated=False)


def get_job(session: Session, ctx: AccountContext, job_id: str) -> Job:
    bound = require_permission(ctx, PERM_JOBS_READ)
    job = session.scalar(scoped(bound, Job, Job.id == job_id).execution_options(populate_existing=True))
    if job is None:
        raise NotFound("job_not_found", details={"job_id": job_id})
    return job


def list_jobs(
    session: Session,
    ctx: AccountContext,
    *,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    limit: int = 50,
) -> List[Job]:
    bound = require_permission(ctx, PERM_JOBS_READ)
    statement = scoped(bound, Job)
    if status:
        statuses = [item.strip().lower() for item in status.split(",") if item.strip()]
        unknown = [item for item in statuses if item not in JOB_STATUSES]
        if unknown:
            raise InvalidRequest(f"unknown_job_status {','.join(unknown)}", details={"allowed": list(JOB_STATUSES)})
        statement = statement.where(Job.status.in_(statuses))
    if job_type:
        statement = statement.where(Job.job_type == job_type.strip().lower())
    statement = statement.order_by(Job.created_at.desc(), Job.id.desc()).limit(max(1, min(limit, 200)))
    return list(session.scalars(statement).all())


def accounts_with_runnable_jobs(session: Session, *, now: Optional[datetime] = None, limit: int = 50) -> List[str]:
    """Accounts with a claimable job, oldest waiting account first."""

    current = _normalize_dt(now) or _now_utc()
    rows = session.execute(
        select(Job.account_id, func.min(Job.created_at))
        .where(
            Job.status == STATUS_QUEUED,
            or_(Job.available_at.is_(None), Job.available_at <= current),
        )
        .group_by(Job.account_id)
        .order_by(func.min(Job.created_at).asc())
        .limit(max(1, limit))
    ).all()
    return [str(row[0]) for row in rows]


def claim_next_job(
    session: Session,
    *,
    account_id: str,
    worker_id: str,
    max_active: int = 1,
    now: Optional[datetime] = None,
) -> Optional[Job]:
    """Move the oldest runnable queued job of an account to processing.

    The update is conditional on ``status='queued'``, so a job raced by another
    worker is simply skipped.
    """

    current = _normalize_dt(now) or _now_utc()
    active = session.scalar(
        select(func.count(Job.id)).where(Job.account_id == account_id, Job.status == STATUS_PROCESSING)
    )
    if int(active or 0) >= max(1, max_active):
        return None

    candidates = session.scalars(
        select(Job.id)
        .where(
            Job.account_id == account_id,
            Job.status == STATUS_QUEUED,
            or_(Job.available_at.is_(None), Job.available_at <= current),
        )
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(5)
    ).all()

    for candidate_id in candidates:
        result = session.execute(
            update(Job)
            .where(Job.id == candidate_id, Job.status == STATUS_QUEUED)
            .values(
                status=STATUS_PROCESSING,
                worker_id=worker_id,
                started_at=current,
                heartbeat_at=current,
                updated_at=current,
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) == 1:
            session.commit()
            job = session.get(Job, candidate_id, populate_existing=True)
            logger.info("job_claimed", account_id=account_id, job_id=candidate_id, worker_id=worker_id)
            return job
        session.rollback()
    return None


def _owned(job_id: str, worker_id: str):
    return and_(Job.id == job_id, Job.status == STATUS_PROCESSING, Job.worker_id == worker_id)


def heartbeat(session: Session, job_id: str, *, worker_id: str, now: Optional[datetime] = None) -> bool:
    """Refresh liveness; False means the job is no longer owned by this worker."""

    current = _normalize_dt(now) or _now_utc()
    result = session.execute(
        update(Job)
        .where(_owned(job_id, worker_id))
        .values(heartbeat_at=current, updated_at=current)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return int(result.rowcount or 0) == 1


def cancel_requested(session: Session, job_id: str) -> bool:
    return bool(session.scalar(select(Job.cancel_requested).where(Job.id == job_id)))


def update_progress(
    session: Session,
    job_id: str,
    *,
    worker_id: str,
    percentage: int,
    details: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    current = _normalize_dt(now) or _now_utc()
    bounded = max(0, min(100, int(percentage)))
    result = session.execute(
        update(Job)
        .where(_owned(job_id, worker_id))
        .values(
            progress_percentage=bounded,
            progress_details=details[:255] if details else None,
            heartbeat_at=current,
            updated_at=current,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return int(result.rowcount or 0) == 1


def _finish(
    session: Session,
    job_id: str,
    *,
    worker_id: str,
    status: str,
    results: Optional[Mapping[str, Any]] = None,
    error_message: Optional[str] = None,
    progress: Optional[int] = None,
) -> bool:
    current = _now_utc()
    values: Dict[str, Any] = {
        "status": status,
        "completed_at": current,
        "updated_at": current,
        "error_message": error_message,
    }
    if results is not None:
        values["results_json"] = _json_dumps(dict(results))
    if progress is not None:
        values["progress_percentage"] = progress
    job_type = session.scalar(select(Job.job_type).where(Job.id == job_id))
    result = session.execute(
        update(Job).where(_owned(job_id, worker_id)).values(**values).execution_options(synchronize_session=False)
    )
    session.commit()
    finished = int(result.rowcount or 0) == 1
    if finished:
        record_job_finished(job_type=str(job_type or "unknown"), status=status)
    return finished


def complete_job(session: Session, job_id: str, *, worker_id: str, results: Mapping[str, Any]) -> bool:
    finished = _finish(session, job_id, worker_id=worker_id, status=STATUS_COMPLETED, results=results, progress=100)
    if finished:
        logger.info("job_completed", job_id=job_id, worker_id=worker_id)
    return finished


def fail_job(
    session: Session,
    job_id: str,
    *,
    worker_id: str,
    error_message: str,
    results: Optional[Mapping[str, Any]] = None,
) -> bool:
    finished = _finish(
        session,
        job_id,
        worker_id=worker_id,
        status=STATUS_FAILED,
        results=results,
        error_message=error_message,
    )
    if finished:
        logger.warning("job_failed", job_id=job_id, worker_id=worker_id, error=error_message)
    return finished


def mark_cancelled(session: Session, job_id: str, *, worker_id: str, results: Optional[Mapping[str, Any]] = None) -> bool:
    finished = _finish(
        session,
        job_id,
        worker_id=worker_id,
        status=STATUS_CANCELLED,
        results=results,
        error_message="cancelled_by_user",
    )
    if finished:
        logger.info("job_cancelled", job_id=job_id, worker_id=worker_id)
    return finished


def requeue_for_retry(
    session: Session,
    job_id: str,
    *,
    worker_id: str,
    error_message: str,
    now: Optional[datetime] = None,
) -> str:
    """Return a transiently failed job to the queue, or fail it once retries are spent.

    Returns the resulting status, or an empty string when the job was no longer owned.
    """

    current = _normalize_dt(now) or _now_utc()
    job = session.get(Job, job_id, populate_existing=True)
    if job is None or job.status != STATUS_PROCESSING or job.worker_id != worker_id:
        return ""
    if job.retry_count >= job.max_retries:
        fail_job(
            session,
            job_id,
            worker_id=worker_id,
            error_message=f"{error_message} (retries exhausted after {job.retry_count})",
        )
        return STATUS_FAILED

    next_retry = job.retry_count + 1
    result = session.execute(
        update(Job)
        .where(_owned(job_id, worker_id))
        .values(
            status=STATUS_QUEUED,
            retry_count=next_retry,
            error_message=error_message,
            worker_id=None,
            started_at=None,
            heartbeat_at=None,
            available_at=current + timedelta(seconds=retry_delay_seconds(next_retry)),
            updated_at=current,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if int(result.rowcount or 0) != 1:
        return ""
    record_job_finished(job_type=job.job_type, status="requeued")
    logger.info("job_requeued", job_id=job_id, retry_count=next_retry, error=error_message)
    return STATUS_QUEUED


def cancel_job(session: Session, ctx: AccountContext, job_id: str) -> CancelResult:
    """Queued jobs cancel at once; processing jobs get a flag honoured at the next step boundary."""

    bound = require_permission(ctx, PERM_JOBS_WRITE)
    job = get_job(session, bound, job_id)
    current = _now_utc()

    if job.status == STATUS_QUEUED:
        result = session.execute(
            update(Job)
            .where(Job.id == job.id, Job.status == STATUS_QUEUED)
            .values(
                status=STATUS_CANCELLED,
                cancel_requested=True,
                completed_at=current,
                updated_at=current,
                error_message="cancelled_by_user",
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if int(result.rowcount or 0) == 1:
            record_job_finished(job_type=job.job_type, status=STATUS_CANCELLED)
            logger.info("job_cancelled", account_id=bound.account_id, job_id=job.id, immediate=True)
            return CancelResult(job=session.get(Job, job.id, populate_existing=True), immediate=True)
        job = session.get(Job, job.id, populate_existing=True)

    if job.status == STATUS_PROCESSING:
        result = session.execute(
            update(Job)
            .where(Job.id == job.id, Job.status == STATUS_PROCESSING)
            .values(cancel_requested=True, updated_at=current)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if int(result.rowcount or 0) != 1:
            job = session.get(Job, job.id, populate_existing=True)
            raise InvalidTransition(entity="job", current=job.status, target=STATUS_CANCELLED)
        logger.info("job_cancel_requested", account_id=bound.account_id, job_id=job.id)
        return CancelResult(job=session.get(Job, job.id, populate_existing=True), immediate=False)

    raise InvalidTransition(entity="job", current=job.status, target=STATUS_CANCELLED)


def retry_job(session: Session, ctx: AccountContext, job_id: str) -> Job:
    """Queue a fresh copy of a failed or cancelled job; the original row is left untouched."""

    bound = require_permission(ctx, PERM_JOBS_WRITE)
    original = get_job(session, bound, job_id)
    if original.status not in (STATUS_FAILED, STATUS_CANCELLED):
        raise InvalidTransition(entity="job", current=original.status, target=STATUS_QUEUED)

    current = _now_utc()
    job = Job(
        account_id=bound.account_id,
        job_type=original.job_type,
        status=STATUS_QUEUED,
        payload_json=original.payload_json,
        payload_hash=original.payload_hash,
        progress_percentage=0,
        retry_count=0,
        max_retries=original.max_retries,
        retry_of_job_id=original.id,
        created_by=bound.user_id,
        created_at=current,
        updated_at=current,
    )
    session.add(job)
    session.commit()
    logger.info("job_retry_enqueued", account_id=bound.account_id, job_id=job.id, retry_of_job_id=original.id)
    return job


def reclaim_stalled_jobs(
    session: Session,
    *,
    now: Optional[datetime] = None,
    stall_timeout_seconds: Optional[int] = None,
    dry_run: bool = False,
) -> ReclaimResult:
    """Requeue processing jobs whose heartbeat is older than the stall timeout.

    Each update is conditional on the heartbeat value that was read, so a stall
    is reclaimed exactly once even with concurrent reclaimers.
    """

    settings = get_settings()
    current = _normalize_dt(now) or _now_utc()
    timeout = stall_timeout_seconds or settings.job_stall_timeout_seconds
    cutoff = current - timedelta(seconds=timeout)

    stalled = session.execute(
        select(Job.id, Job.heartbeat_at, Job.retry_count, Job.max_retries, Job.job_type).where(
            Job.status == STATUS_PROCESSING,
            Job.heartbeat_at < cutoff,
        )
    ).all()
    candidates = [str(row[0]) for row in stalled]
    if dry_run:
        return ReclaimResult(candidates=candidates, dry_run=True)

    requeued: List[str] = []
    failed: List[str] = []
    for job_id, heartbeat_at, retry_count, max_retries, job_type in stalled:
        guard = and_(Job.id == job_id, Job.status == STATUS_PROCESSING, Job.heartbeat_at == heartbeat_at)
        next_retry = int(retry_count) + 1
        if int(retry_count) >= int(max_retries):
            values: Dict[str, Any] = {
                "status": STATUS_FAILED,
                "retry_count": next_retry,
                "completed_at": current,
                "error_message": "stall_reclaim: heartbeat lost and retries exhausted",
                "updated_at": current,
            }
            target = failed
        else:
            values = {
                "status": STATUS_QUEUED,
                "retry_count": next_retry,
                "worker_id": None,
                "started_at": None,
                "heartbeat_at": None,
                "available_at": current,
                "error_message": "stall_reclaim: heartbeat lost",
                "updated_at": current,
            }
            target = requeued
        result = session.execute(update(Job).where(guard).values(**values).execution_options(synchronize_session=False))
        if int(result.rowcount or 0) == 1:
            target.append(str(job_id))
            record_job_finished(job_type=str(job_type), status="reclaimed" if target is requeued else STATUS_FAILED)
    session.commit()

    if requeued or failed:
        logger.warning("jobs_reclaimed", requeued=len(requeued), failed=len(failed))
    return ReclaimResult(requeued=requeued, failed=failed, candidates=candidates)


def cleanup_old_jobs(session: Session, ctx: Optional[AccountContext] = None, *, days_old: int = 7) -> int:
    """Delete terminal jobs finished more than ``days_old`` days ago (one account, or all)."""

    if days_old < 0:
        raise InvalidRequest("days_old_must_be_non_negative")
    cutoff = _now_utc() - timedelta(days=days_old)
    statement = delete(Job).where(Job.status.in_(TERMINAL_STATUSES), Job.completed_at < cutoff)
    if ctx is not None:
        bound = require_permission(ctx, PERM_JOBS_WRITE)
        statement = statement.where(Job.account_id == bound.account_id)
    result = session.execute(statement.execution_options(synchronize_session=False))
    session.commit()
    deleted = int(result.rowcount or 0)
    logger.info("old_jobs_cleaned", deleted=deleted, days_old=days_old)
    return deleted


def queue_stats(session: Session, ctx: AccountContext, *, window_hours: int = 24) -> Dict[str, Any]:
    bound = require_permission(ctx, PERM_JOBS_READ)
    if window_hours <= 0:
        raise InvalidRequest("window_hours_must_be_positive")
    cutoff = _now_utc() - timedelta(hours=window_hours)
    rows = session.execute(
        select(Job.status, func.count(Job.id))
        .where(Job.account_id == bound.account_id, Job.created_at >= cutoff)
        .group_by(Job.status)
    ).all()
    by_status = {status: 0 for status in JOB_STATUSES}
    for row in rows:
        by_status[str(row[0])] = int(row[1])

    active_rows = session.execute(
        select(Job.status, func.count(Job.id))
        .where(Job.account_id == bound.account_id, Job.status.in_((STATUS_QUEUED, STATUS_PROCESSING)))
        .group_by(Job.status)
    ).all()
    active = {str(row[0]): int(row[1]) for row in active_rows}
    return {
        "window_hours": window_hours,
        "by_status": by_status,
        "total": sum(by_status.values()),
        "queued_now": active.get(STATUS_QUEUED, 0),
        "processing_now": active.get(STATUS_PROCESSING, 0),
    }
