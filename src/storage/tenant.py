"""Binds the current account to a DB session so PostgreSQL row-level security applies."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session, SessionTransaction


ACCOUNT_SETTING = "app.current_account_id"
_BINDINGS_KEY = "account_context_bindings"


def _supports_rls(session: Session) -> bool:
    bind = session.get_bind()
    return bind is not None and bind.dialect.name == "postgresql"


def _apply_setting(connection: Connection, account_id: str) -> None:
    # Transaction-local; an empty value lifts the account filter for the worker.
    connection.execute(
        text("SELECT set_config(:name, :account_id, true)"),
        {"name": ACCOUNT_SETTING, "account_id": account_id},
    )


def _bindings(session: Session) -> List[str]:
    return session.info.setdefault(_BINDINGS_KEY, [])


def _reapply_on_begin(session: Session, transaction: SessionTransaction, connection: Connection) -> None:
    bindings = session.info.get(_BINDINGS_KEY)
    if bindings:
        _apply_setting(connection, bindings[-1])


def set_account_context(session: Session, account_id: Optional[str]) -> None:
    """Set the account for the current transaction only."""

    if not _supports_rls(session):
        return
    _apply_setting(session.connection(), account_id or "")


def reset_account_context(session: Session) -> None:
    set_account_context(session, None)


def bind_account(session: Session, account_id: Optional[str]) -> None:
    """Apply the account now and again at the start of every later transaction of the session."""

    bindings = _bindings(session)
    bindings.append(account_id or "")
    if not _supports_rls(session):
        return
    if not event.contains(session, "after_begin", _reapply_on_begin):
        event.listen(session, "after_begin", _reapply_on_begin)
    if session.in_transaction():
        set_account_context(session, bindings[-1])
    else:
        session.connection()


def unbind_account(session: Session) -> None:
    """Drop the innermost binding; the enclosing one, if any, takes effect again."""

    bindings = _bindings(session)
    if bindings:
        bindings.pop()
    if not _supports_rls(session):
        return
    if not bindings and event.contains(session, "after_begin", _reapply_on_begin):
        event.remove(session, "after_begin", _reapply_on_begin)
    if session.is_active and session.in_transaction():
        set_account_context(session, bindings[-1] if bindings else None)


@contextmanager
def account_scope(session: Session, account_id: Optional[str]) -> Iterator[Session]:
    bind_account(session, account_id)
    try:
        yield session
    finally:
        unbind_account(session)
