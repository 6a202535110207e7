"""Job worker: one claimed job per account slot, parallel across accounts."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
import os
from threading import Event
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session, sessionmaker

from src.core.config import get_settings
from src.core.errors import InvalidRequest, JobCancelled, JobTimeout, PipelineError, StallReclaim
from src.core.logger import get_logger, job_log_context
from src.core.observability import capture_exception, sentry_scope
from src.jobs import queue
from src.jobs.handlers import HANDLERS, JobHandler
from src.jobs.locks import AccountSlotHandle, AccountSlotLockManager
from src.jobs.runtime import JobRuntime, JobServices
from src.jobs.states import STATUS_CANCELLED, STATUS_COMPLETED, STATUS_FAILED, STATUS_QUEUED
from src.logs.stream import JobLogStream
from src.storage.db import session_scope
from src.storage.models import Job


logger = get_logger("eden.jobs.worker")

LOG_SOURCE = "job_worker"

RUN_IDLE = "idle"
RUN_SKIPPED_LOCKED = "skipped_locked"
RUN_REQUEUED = "requeued"
RUN_LOST = "ownership_lost"


def default_worker_id() -> str:
    return f"worker-{os.getpid()}-{int(datetime.now(timezone.utc).timestamp() * 1000)}"


@dataclass(frozen=True)
class JobRunSummary:
    account_id: str
    status: str
    job_id: Optional[str] = None
    job_type: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkerRunResult:
    worker_id: str
    accounts_considered: int
    executed: int
    skipped_locked: int
    failed: int
    reclaimed: int
    runs: List[JobRunSummary]


class JobWorker:
    """Claim and run jobs with per-account slot locks and cooperative checkpoints."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        lock_manager: AccountSlotLockManager,
        log_stream: Optional[JobLogStream] = None,
        services: Optional[JobServices] = None,
        handlers: Optional[Mapping[str, JobHandler]] = None,
        worker_id: Optional[str] = None,
        max_parallel_accounts: Optional[int] = None,
        hard_timeout_seconds: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._lock_manager = lock_manager
        self._log_stream = log_stream or JobLogStream(session_factory)
        self._services = services or JobServices()
        self._handlers: Dict[str, JobHandler] = dict(handlers or HANDLERS)
        self.worker_id = worker_id or default_worker_id()
        self._max_parallel_accounts = max(1, max_parallel_accounts or settings.worker_max_parallel_accounts)
        self._hard_timeout_seconds = hard_timeout_seconds or settings.job_hard_timeout_seconds

    def reclaim_stalled(self, *, dry_run: bool = False) -> queue.ReclaimResult:
        with self._session_factory() as session:
            return queue.reclaim_stalled_jobs(session, dry_run=dry_run)

    def runnable_account_ids(self, *, limit: Optional[int] = None) -> List[str]:
        settings = get_settings()
        with self._session_factory() as session:
            return queue.accounts_with_runnable_jobs(session, limit=limit or settings.worker_max_accounts_per_run)

    def run_once(self, *, account_ids: Iterable[str] | None = None, limit: Optional[int] = None) -> WorkerRunResult:
        reclaimed = self.reclaim_stalled()
        selected = list(account_ids) if account_ids is not None else self.runnable_account_ids(limit=limit)

        if len(selected) > 1 and self._max_parallel_accounts > 1:
            with ThreadPoolExecutor(
                max_workers=min(self._max_parallel_accounts, len(selected)),
                thread_name_prefix="job-worker",
            ) as executor:
                runs = list(executor.map(self._run_account, selected))
        else:
            runs = [self._run_account(account_id) for account_id in selected]

        executed = sum(1 for run in runs if run.job_id is not None)
        return WorkerRunResult(
            worker_id=self.worker_id,
            accounts_considered=len(selected),
            executed=executed,
            skipped_locked=sum(1 for run in runs if run.status == RUN_SKIPPED_LOCKED),
            failed=sum(1 for run in runs if run.status == STATUS_FAILED),
            reclaimed=len(reclaimed.requeued) + len(reclaimed.failed),
            runs=runs,
        )

    def run_forever(self, *, stop_event: Optional[Event] = None, poll_interval_seconds: Optional[int] = None) -> None:
        settings = get_settings()
        interval = poll_interval_seconds or settings.worker_poll_interval_seconds
        stop = stop_event or Event()
        logger.info("job_worker_started", worker_id=self.worker_id, poll_interval_seconds=interval)
        while not stop.is_set():
            try:
                result = self.run_once()
            except Exception as exc:
                capture_exception(exc)
                logger.error("job_worker_cycle_failed", worker_id=self.worker_id, error=str(exc))
                stop.wait(interval)
                continue
            if result.executed == 0:
                stop.wait(interval)
        logger.info("job_worker_stopped", worker_id=self.worker_id)

    def _run_account(self, account_id: str) -> JobRunSummary:
        lock = self._lock_manager.acquire(account_id)
        if lock is None:
            logger.info("job_worker_skipped_locked", account_id=account_id, worker_id=self.worker_id)
            return JobRunSummary(account_id=account_id, status=RUN_SKIPPED_LOCKED)

        try:
            with session_scope(account_id, session_factory=self._session_factory) as session:
                job = queue.claim_next_job(
                    session,
                    account_id=account_id,
                    worker_id=self.worker_id,
                    max_active=self._lock_manager.slots,
                )
                if job is None:
                    return JobRunSummary(account_id=account_id, status=RUN_IDLE)
                return self._execute(session, job, lock)
        finally:
            lock.release()

    def _execute(self, session: Session, job: Job, lock: AccountSlotHandle) -> JobRunSummary:
        with job_log_context(job_id=job.id, account_id=job.account_id, worker_id=self.worker_id, job_type=job.job_type):
            try:
                return self._execute_job(session, job, lock)
            finally:
                self._log_stream.forget_job(job.account_id, job.id)

    def _execute_job(self, session: Session, job: Job, lock: AccountSlotHandle) -> JobRunSummary:
        runtime = JobRuntime(
            session=session,
            job=job,
            worker_id=self.worker_id,
            log_stream=self._log_stream,
            services=self._services,
            lock_handle=lock,
            hard_timeout_seconds=self._hard_timeout_seconds,
        )
        summary = dict(account_id=job.account_id, job_id=job.id, job_type=job.job_type)
        handler = self._handlers.get(job.job_type)
        try:
            with sentry_scope(account_id=job.account_id, job_id=job.id):
                runtime.log("info", f"Job {job.job_type} started", source=LOG_SOURCE, metadata={"attempt": job.retry_count + 1})
                if handler is None:
                    raise InvalidRequest(f"no_handler_for_job_type {job.job_type}")
                results = handler(runtime, queue.job_payload(job))
            queue.complete_job(session, job.id, worker_id=self.worker_id, results=results)
            runtime.log("info", f"Job {job.job_type} completed", source=LOG_SOURCE)
            return JobRunSummary(status=STATUS_COMPLETED, details=dict(results), **summary)
        except JobCancelled:
            session.rollback()
            queue.mark_cancelled(session, job.id, worker_id=self.worker_id, results=runtime.results)
            runtime.log("info", "Job cancelled at step boundary", source=LOG_SOURCE, metadata=dict(runtime.results))
            return JobRunSummary(status=STATUS_CANCELLED, details=dict(runtime.results), **summary)
        except StallReclaim as exc:
            session.rollback()
            logger.warning("job_ownership_lost", job_id=job.id, worker_id=self.worker_id, reason=exc.message)
            return JobRunSummary(status=RUN_LOST, details={"reason": exc.message}, **summary)
        except JobTimeout as exc:
            session.rollback()
            queue.fail_job(session, job.id, worker_id=self.worker_id, error_message=exc.message, results=runtime.results)
            runtime.log("error", f"Job timed out: {exc.message}", source=LOG_SOURCE)
            return JobRunSummary(status=STATUS_FAILED, details={"error": exc.message}, **summary)
        except PipelineError as exc:
            session.rollback()
            error_message = f"{exc.kind}: {exc.message}"
            if exc.retryable:
                outcome = queue.requeue_for_retry(session, job.id, worker_id=self.worker_id, error_message=error_message)
                if outcome == STATUS_QUEUED:
                    runtime.log("warn", f"Job will retry after {exc.kind}", source=LOG_SOURCE, metadata={"kind": exc.kind})
                    return JobRunSummary(status=RUN_REQUEUED, details={"error": error_message}, **summary)
                if not outcome:
                    return JobRunSummary(status=RUN_LOST, details={"error": error_message}, **summary)
                runtime.log("error", f"Job failed after retries: {error_message}", source=LOG_SOURCE)
                return JobRunSummary(status=STATUS_FAILED, details={"error": error_message}, **summary)
            queue.fail_job(session, job.id, worker_id=self.worker_id, error_message=error_message, results=runtime.results)
            runtime.log("error", f"Job failed: {error_message}", source=LOG_SOURCE, metadata={"kind": exc.kind})
            return JobRunSummary(status=STATUS_FAILED, details={"error": error_message}, **summary)
        except Exception as exc:
            session.rollback()
            capture_exception(exc)
            logger.error("job_unexpected_error", job_id=job.id, worker_id=self.worker_id, error=str(exc))
            queue.fail_job(session, job.id, worker_id=self.worker_id, error_message=str(exc)[:1000], results=runtime.results)
            runtime.log("error", f"Job failed: {exc}", source=LOG_SOURCE)
            return JobRunSummary(status=STATUS_FAILED, details={"error": str(exc)}, **summary)
