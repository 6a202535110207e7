"""Append-only job log stream with best-effort writes and cursor-based tail."""

from __future__ import annotations

from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.accounts.context import PERM_LOGS_CLEAR, PERM_LOGS_READ, AccountContext, require_permission, scoped
from src.core.config import get_settings
from src.core.errors import InvalidRequest
from src.core.logger import get_logger
from src.storage.db import get_session_factory
from src.storage.models import JobLogEntry


logger = get_logger("eden.logs.stream")

LOG_LEVELS = ("debug", "info", "warn", "error")
_STRUCTLOG_METHODS = {"debug": "debug", "info": "info", "warn": "warning", "error": "error"}
_TIMESTAMP_STEP = timedelta(microseconds=1)
TRACKED_STREAMS_MAX = 1024


@dataclass(frozen=True)
class PendingEntry:
    account_id: str
    job_id: Optional[str]
    level: str
    source: str
    message: str
    metadata: Optional[Dict[str, Any]]
    timestamp: datetime


@dataclass(frozen=True)
class TailResult:
    entries: List[JobLogEntry]
    cursor: Optional[datetime]
    cursor_id: Optional[int]
    poll_interval_seconds: int


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


def normalize_level(level: str) -> str:
    normalized = (level or "").strip().lower()
    if normalized == "warning":
        normalized = "warn"
    if normalized not in LOG_LEVELS:
        raise InvalidRequest(f"unknown_log_level {normalized or '<empty>'}", details={"allowed": list(LOG_LEVELS)})
    return normalized


def parse_cursor(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 cursor from a previous tail; naive values are read as UTC."""

    if value is None or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return _normalize_dt(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise InvalidRequest("invalid_log_cursor", details={"since": value}) from exc


def entry_metadata(entry: JobLogEntry) -> Optional[Dict[str, Any]]:
    if not entry.metadata_json:
        return None
    try:
        parsed = json.loads(entry.metadata_json)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class JobLogStream:
    """Writes log entries on a private session so a failing append never blocks job progress.

    Entries that cannot be written are kept in a bounded in-memory buffer and
    retried on the next append. Timestamps are strictly increasing per job; the
    last timestamp of at most ``TRACKED_STREAMS_MAX`` streams is kept in memory
    and older streams fall back to the stored maximum.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        buffer_max_entries: Optional[int] = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._clock = clock
        self._buffer: Deque[PendingEntry] = deque(maxlen=buffer_max_entries or settings.log_buffer_max_entries)
        self._last_timestamp: "OrderedDict[str, datetime]" = OrderedDict()
        self._lock = Lock()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def _factory(self) -> sessionmaker:
        return self._session_factory or get_session_factory()

    def _stream_key(self, account_id: str, job_id: Optional[str]) -> str:
        return f"{account_id}:{job_id or '-'}"

    def _next_timestamp(self, session: Session, account_id: str, job_id: Optional[str]) -> datetime:
        key = self._stream_key(account_id, job_id)
        candidate = _normalize_dt(self._clock()) or _now_utc()
        last = self._last_timestamp.get(key)
        if last is None and job_id is not None:
            try:
                stored = session.scalar(
                    select(func.max(JobLogEntry.timestamp)).where(
                        JobLogEntry.account_id == account_id,
                        JobLogEntry.job_id == job_id,
                    )
                )
            except SQLAlchemyError:
                session.rollback()
                stored = None
            last = _normalize_dt(stored)
        if last is not None and candidate <= last:
            candidate = last + _TIMESTAMP_STEP
        self._last_timestamp[key] = candidate
        self._last_timestamp.move_to_end(key)
        while len(self._last_timestamp) > TRACKED_STREAMS_MAX:
            self._last_timestamp.popitem(last=False)
        return candidate

    @property
    def tracked_streams(self) -> int:
        return len(self._last_timestamp)

    def forget_job(self, account_id: str, job_id: str) -> None:
        """Stop tracking a finished job; a later append re-reads its stored maximum."""

        with self._lock:
            self._last_timestamp.pop(self._stream_key(account_id, job_id), None)

    def _write(self, session: Session, pending: Sequence[PendingEntry]) -> None:
        for entry in pending:
            session.add(
                JobLogEntry(
                    account_id=entry.account_id,
                    job_id=entry.job_id,
                    level=entry.level,
                    source=entry.source,
                    message=entry.message,
                    metadata_json=_json_dumps(entry.metadata) if entry.metadata else None,
                    timestamp=entry.timestamp,
                )
            )
        session.commit()

    def append(
        self,
        *,
        account_id: str,
        level: str,
        message: str,
        source: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
    ) -> bool:
        """Append one entry; returns False when it was buffered instead of stored."""

        normalized_level = normalize_level(level)
        getattr(logger, _STRUCTLOG_METHODS[normalized_level])(
            "job_log",
            account_id=account_id,
            job_id=job_id,
            source=source,
            log_message=message,
        )

        with self._lock:
            session = self._factory()()
            entry = PendingEntry(
                account_id=account_id,
                job_id=job_id,
                level=normalized_level,
                source=(source or "system")[:64],
                message=message,
                metadata=dict(metadata) if metadata else None,
                timestamp=self._next_timestamp(session, account_id, job_id),
            )
            try:
                self._write(session, list(self._buffer) + [entry])
                self._buffer.clear()
                return True
            except SQLAlchemyError as exc:
                session.rollback()
                self._buffer.append(entry)
                logger.warning("job_log_append_buffered", error=str(exc), buffered=len(self._buffer))
                return False
            finally:
                session.close()

    def flush_buffer(self) -> int:
        with self._lock:
            if not self._buffer:
                return 0
            pending = list(self._buffer)
            session = self._factory()()
            try:
                self._write(session, pending)
                self._buffer.clear()
                return len(pending)
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning("job_log_flush_failed", error=str(exc), buffered=len(pending))
                return 0
            finally:
                session.close()


def tail(
    session: Session,
    ctx: AccountContext,
    *,
    since: Optional[datetime] = None,
    after_id: Optional[int] = None,
    level: Optional[str] = None,
    source: Optional[str] = None,
    job_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = None,
) -> TailResult:
    """Entries after the ``(since, after_id)`` cursor, oldest first.

    Without ``after_id`` everything at ``since`` counts as already seen. The
    returned ``cursor`` and ``cursor_id`` feed the next poll, so entries sharing
    a timestamp are not lost when ``limit`` cuts between them.
    """

    settings = get_settings()
    bound = require_permission(ctx, PERM_LOGS_READ)
    max_entries = settings.log_tail_max_entries
    safe_limit = max(1, min(limit or max_entries, max_entries))

    statement = scoped(bound, JobLogEntry)
    normalized_since = _normalize_dt(since)
    if normalized_since is not None and after_id is not None:
        statement = statement.where(
            or_(
                JobLogEntry.timestamp > normalized_since,
                and_(JobLogEntry.timestamp == normalized_since, JobLogEntry.id > after_id),
            )
        )
    elif normalized_since is not None:
        statement = statement.where(JobLogEntry.timestamp > normalized_since)
    if level:
        levels = [normalize_level(item) for item in level.split(",") if item.strip()]
        statement = statement.where(JobLogEntry.level.in_(levels))
    if source:
        statement = statement.where(JobLogEntry.source == source.strip())
    if job_id:
        statement = statement.where(JobLogEntry.job_id == job_id)
    if search:
        statement = statement.where(JobLogEntry.message.ilike(f"%{search.strip()}%"))
    statement = statement.order_by(JobLogEntry.timestamp.asc(), JobLogEntry.id.asc()).limit(safe_limit)

    entries = list(session.scalars(statement).all())
    if entries:
        cursor, cursor_id = _normalize_dt(entries[-1].timestamp), entries[-1].id
    else:
        cursor, cursor_id = normalized_since, after_id
    return TailResult(
        entries=entries,
        cursor=cursor,
        cursor_id=cursor_id,
        poll_interval_seconds=settings.log_poll_interval_seconds,
    )


def clear(session: Session, ctx: AccountContext, *, older_than_days: Optional[int] = None) -> int:
    bound = require_permission(ctx, PERM_LOGS_CLEAR)
    statement = delete(JobLogEntry).where(JobLogEntry.account_id == bound.account_id)
    if older_than_days is not None:
        if older_than_days < 0:
            raise InvalidRequest("older_than_days_must_be_non_negative")
        cutoff = _now_utc() - timedelta(days=older_than_days)
        statement = statement.where(JobLogEntry.timestamp < cutoff)
    result = session.execute(statement)
    session.commit()
    deleted = int(result.rowcount or 0)
    logger.info("job_logs_cleared", account_id=bound.account_id, deleted=deleted, older_than_days=older_than_days)
    return deleted


def stats(session: Session, ctx: AccountContext, *, window_hours: int = 24) -> Dict[str, Any]:
    bound = require_permission(ctx, PERM_LOGS_READ)
    if window_hours <= 0:
        raise InvalidRequest("window_hours_must_be_positive")
    cutoff = _now_utc() - timedelta(hours=window_hours)
    rows = session.execute(
        select(JobLogEntry.level, func.count(JobLogEntry.id))
        .where(JobLogEntry.account_id == bound.account_id, JobLogEntry.timestamp >= cutoff)
        .group_by(JobLogEntry.level)
    ).all()
    counts = {level: 0 for level in LOG_LEVELS}
    for row in rows:
        counts[str(row[0])] = int(row[1])
    return {"window_hours": window_hours, "total": sum(counts.values()), "by_level": counts}
