"""FastAPI dependencies resolving account context from request headers."""

from __future__ import annotations

from collections.abc import Callable
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from src.accounts.context import AccountContext, require_permission, resolve_account_context
from src.core.errors import PipelineError, http_status_for
from src.storage.db import get_session
from src.storage.tenant import bind_account


def http_error(exc: PipelineError) -> HTTPException:
    return HTTPException(status_code=http_status_for(exc), detail=exc.to_payload())


def get_account_context(
    account_id: Optional[str] = Header(default=None, alias="x-account-id"),
    user_id: Optional[str] = Header(default=None, alias="x-user-id"),
    session: Session = Depends(get_session),
) -> AccountContext:
    try:
        ctx = resolve_account_context(session, account_id=account_id, user_id=user_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    bind_account(session, ctx.account_id)
    return ctx


def require_account_permission(permission: str) -> Callable[[AccountContext], AccountContext]:
    def dependency(ctx: AccountContext = Depends(get_account_context)) -> AccountContext:
        try:
            return require_permission(ctx, permission)
        except PipelineError as exc:
            raise http_error(exc) from exc

    return dependency
