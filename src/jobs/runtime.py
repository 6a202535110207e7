"""Per-job execution context: heartbeat, cancel checks, progress, logs and partial results."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from src.accounts.context import AccountContext, system_context
from src.ai.providers.base import ImageProvider, TextProvider
from src.content.stories import NewsIngestion, NullNewsIngestion
from src.core.errors import JobCancelled, JobTimeout, StallReclaim
from src.images.cdn import ImageUploader
from src.jobs import queue
from src.jobs.locks import AccountSlotHandle
from src.logs.stream import JobLogStream
from src.storage.models import Job


@dataclass
class JobServices:
    """Collaborators handlers use; tests swap in fakes."""

    ingestion: NewsIngestion = field(default_factory=NullNewsIngestion)
    text_provider: Optional[TextProvider] = None
    image_provider: Optional[ImageProvider] = None
    image_uploader: Optional[ImageUploader] = None


class JobRuntime:
    """Handed to job handlers; every checkpoint is a cooperative yield point."""

    def __init__(
        self,
        *,
        session: Session,
        job: Job,
        worker_id: str,
        log_stream: JobLogStream,
        services: Optional[JobServices] = None,
        lock_handle: Optional[AccountSlotHandle] = None,
        hard_timeout_seconds: int = 1800,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.job_id = job.id
        self.account_id = job.account_id
        self.job_type = job.job_type
        self.worker_id = worker_id
        self.services = services or JobServices()
        self.results: Dict[str, Any] = {}
        self._log_stream = log_stream
        self._lock_handle = lock_handle
        self._hard_timeout_seconds = hard_timeout_seconds
        self._clock = clock
        self._started = clock()

    @property
    def ctx(self) -> AccountContext:
        return system_context(self.account_id)

    def checkpoint(self) -> None:
        """Heartbeat, then stop if cancelled, timed out or no longer owned."""

        if not queue.heartbeat(self.session, self.job_id, worker_id=self.worker_id):
            raise StallReclaim("job_ownership_lost")
        if self._lock_handle is not None:
            self._lock_handle.extend()
        if queue.cancel_requested(self.session, self.job_id):
            raise JobCancelled("cancelled_by_user")
        elapsed = self._clock() - self._started
        if elapsed > self._hard_timeout_seconds:
            raise JobTimeout(f"job_hard_timeout elapsed={int(elapsed)}s limit={self._hard_timeout_seconds}s")

    def log(
        self,
        level: str,
        message: str,
        *,
        source: str = "job_worker",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._log_stream.append(
            account_id=self.account_id,
            job_id=self.job_id,
            level=level,
            source=source,
            message=message,
            metadata=metadata,
        )

    def progress(self, percentage: int, details: str) -> None:
        queue.update_progress(
            self.session,
            self.job_id,
            worker_id=self.worker_id,
            percentage=percentage,
            details=details,
        )

    def set_result(self, key: str, value: Any) -> None:
        self.results[key] = value

    def add_result(self, key: str, amount: int = 1) -> None:
        self.results[key] = int(self.results.get(key, 0)) + amount

    def append_result(self, key: str, value: Any) -> None:
        self.results.setdefault(key, []).append(value)
