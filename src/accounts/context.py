"""Account context binding and permission gates for every core operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Optional, Type, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.orm import Session
import structlog

from src.core.errors import Forbidden, NoAccount
from src.storage.models import Account, AccountMember, OrganizationMember
from src.storage.tenant import account_scope


T = TypeVar("T")

PERM_JOBS_READ = "jobs:read"
PERM_JOBS_WRITE = "jobs:write"
PERM_TEMPLATES_READ = "templates:read"
PERM_TEMPLATES_WRITE = "templates:write"
PERM_CONTENT_READ = "content:read"
PERM_CONTENT_REVIEW = "content:review"
PERM_IMAGES_READ = "images:read"
PERM_IMAGES_WRITE = "images:write"
PERM_SETTINGS_READ = "settings:read"
PERM_SETTINGS_WRITE = "settings:write"
PERM_LOGS_READ = "logs:read"
PERM_LOGS_CLEAR = "logs:clear"
PERM_WORKFLOWS_WRITE = "workflows:write"

ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    {
        PERM_JOBS_READ,
        PERM_JOBS_WRITE,
        PERM_TEMPLATES_READ,
        PERM_TEMPLATES_WRITE,
        PERM_CONTENT_READ,
        PERM_CONTENT_REVIEW,
        PERM_IMAGES_READ,
        PERM_IMAGES_WRITE,
        PERM_SETTINGS_READ,
        PERM_SETTINGS_WRITE,
        PERM_LOGS_READ,
        PERM_LOGS_CLEAR,
        PERM_WORKFLOWS_WRITE,
    }
)
READ_PERMISSIONS: FrozenSet[str] = frozenset(
    {
        PERM_JOBS_READ,
        PERM_TEMPLATES_READ,
        PERM_CONTENT_READ,
        PERM_IMAGES_READ,
        PERM_SETTINGS_READ,
        PERM_LOGS_READ,
    }
)

ROLE_PERMISSIONS: dict[str, FrozenSet[str]] = {
    "owner": ALL_PERMISSIONS,
    "admin": ALL_PERMISSIONS,
    "editor": READ_PERMISSIONS
    | {
        PERM_JOBS_WRITE,
        PERM_TEMPLATES_WRITE,
        PERM_CONTENT_REVIEW,
        PERM_IMAGES_WRITE,
        PERM_WORKFLOWS_WRITE,
    },
    "viewer": READ_PERMISSIONS,
}
ORGANIZATION_INHERITED_ROLES = ("owner", "admin")


@dataclass(frozen=True)
class AccountContext:
    account_id: str
    user_id: str
    organization_id: Optional[str] = None
    role: str = "viewer"
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    def can(self, permission: str) -> bool:
        return permission in self.permissions


def system_context(account_id: str, *, organization_id: Optional[str] = None) -> AccountContext:
    """Context used by the worker when executing a job on behalf of an account."""

    return AccountContext(
        account_id=account_id,
        user_id="system",
        organization_id=organization_id,
        role="owner",
        permissions=ALL_PERMISSIONS,
    )


def require_account(ctx: Optional[AccountContext]) -> AccountContext:
    if ctx is None or not str(ctx.account_id or "").strip():
        raise NoAccount("account_context_missing")
    if not str(ctx.user_id or "").strip():
        raise NoAccount("user_context_missing")
    return ctx


def require_permission(ctx: Optional[AccountContext], permission: str) -> AccountContext:
    bound = require_account(ctx)
    if not bound.can(permission):
        raise Forbidden(
            f"permission_denied {permission}",
            details={"permission": permission, "role": bound.role},
        )
    return bound


def resolve_account_context(session: Session, *, account_id: Optional[str], user_id: Optional[str]) -> AccountContext:
    """Resolve the caller's role on an account from direct or organization membership."""

    normalized_account = (account_id or "").strip()
    normalized_user = (user_id or "").strip()
    if not normalized_account:
        raise NoAccount("account_id_required")
    if not normalized_user:
        raise NoAccount("user_id_required")

    account = session.get(Account, normalized_account)
    if account is None:
        raise Forbidden("account_access_denied")

    role = session.scalar(
        select(AccountMember.role).where(
            AccountMember.account_id == normalized_account,
            AccountMember.user_id == normalized_user,
        )
    )
    if role is None:
        org_role = session.scalar(
            select(OrganizationMember.role).where(
                OrganizationMember.organization_id == account.organization_id,
                OrganizationMember.user_id == normalized_user,
            )
        )
        if org_role in ORGANIZATION_INHERITED_ROLES:
            role = org_role
    if role is None or role not in ROLE_PERMISSIONS:
        raise Forbidden("account_access_denied")

    return AccountContext(
        account_id=normalized_account,
        user_id=normalized_user,
        organization_id=account.organization_id,
        role=role,
        permissions=ROLE_PERMISSIONS[role],
    )


def with_account(session: Session, ctx: Optional[AccountContext], operation: Callable[[Session, AccountContext], T]) -> T:
    """Run an operation with the account bound to the DB session and log context."""

    bound = require_account(ctx)
    with account_scope(session, bound.account_id), structlog.contextvars.bound_contextvars(
        account_id=bound.account_id, user_id=bound.user_id
    ):
        return operation(session, bound)


def scoped(ctx: Optional[AccountContext], model: Type[Any], *criteria: Any) -> Select:
    """Select rows of an account-owned model restricted to the bound account."""

    bound = require_account(ctx)
    return select(model).where(model.account_id == bound.account_id, *criteria)


def get_scoped(session: Session, ctx: Optional[AccountContext], model: Type[T], row_id: Any) -> Optional[T]:
    return session.scalar(scoped(ctx, model, model.id == row_id))
