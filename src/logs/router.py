"""Log stream API routes: incremental tail, cleanup and level counts."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.accounts.context import PERM_LOGS_CLEAR, PERM_LOGS_READ, AccountContext
from src.accounts.dependencies import http_error, require_account_permission
from src.core.errors import PipelineError
from src.logs import stream
from src.schemas.logs import LogClearResponse, LogEntryItem, LogStatsResponse, LogTailResponse
from src.storage.db import get_session
from src.storage.models import JobLogEntry


router = APIRouter(prefix="/logs", tags=["logs"])


def to_entry_item(entry: JobLogEntry) -> LogEntryItem:
    return LogEntryItem(
        id=entry.id,
        job_id=entry.job_id,
        level=entry.level,
        source=entry.source,
        message=entry.message,
        metadata=stream.entry_metadata(entry),
        timestamp=entry.timestamp,
    )


@router.get("", response_model=LogTailResponse)
def tail_logs(
    since: Optional[str] = None,
    after_id: Optional[int] = Query(default=None, ge=0),
    level: Optional[str] = None,
    source: Optional[str] = None,
    job_id: Optional[str] = None,
    search: Optional[str] = Query(default=None, max_length=200),
    limit: Optional[int] = Query(default=None, ge=1),
    ctx: AccountContext = Depends(require_account_permission(PERM_LOGS_READ)),
    session: Session = Depends(get_session),
) -> LogTailResponse:
    try:
        result = stream.tail(
            session,
            ctx,
            since=stream.parse_cursor(since),
            after_id=after_id,
            level=level,
            source=source,
            job_id=job_id,
            search=search,
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


@router.delete("", response_model=LogClearResponse)
def clear_logs(
    older_than_days: Optional[int] = Query(default=None, ge=0),
    ctx: AccountContext = Depends(require_account_permission(PERM_LOGS_CLEAR)),
    session: Session = Depends(get_session),
) -> LogClearResponse:
    try:
        deleted = stream.clear(session, ctx, older_than_days=older_than_days)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return LogClearResponse(account_id=ctx.account_id, deleted=deleted)


@router.get("/stats", response_model=LogStatsResponse)
def log_stats(
    window_hours: int = Query(default=24, ge=1, le=24 * 30),
    ctx: AccountContext = Depends(require_account_permission(PERM_LOGS_READ)),
    session: Session = Depends(get_session),
) -> LogStatsResponse:
    try:
        counts = stream.stats(session, ctx, window_hours=window_hours)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return LogStatsResponse(account_id=ctx.account_id, **counts)
