from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.accounts.context import AccountContext, resolve_account_context
from src.storage.db import Base, load_models
from src.storage.models import Account, AccountMember, Organization, Story


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}
        self.expirations: Dict[str, int] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        if ex is not None:
            self.expirations[key] = int(ex)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def delete(self, key: str):
        return 1 if self._store.pop(key, None) is not None else 0

    def exists(self, key: str):
        return 1 if key in self._store else 0

    def keys(self, pattern: str):
        if "*" not in pattern:
            return [pattern] if pattern in self._store else []
        prefix = pattern.split("*", 1)[0]
        return [key for key in self._store if key.startswith(prefix)]

    def eval(self, script: str, numkeys: int, key: str, token: str, *args):
        del numkeys
        if self._store.get(key) != token:
            return 0
        if "expire" in script:
            self.expirations[key] = int(args[0])
            return 1
        self._store.pop(key, None)
        return 1


@dataclass(frozen=True)
class SeededAccount:
    account_id: str
    organization_id: str
    user_id: str
    role: str


def build_sqlite_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def seed_account(
    session_factory: sessionmaker,
    *,
    name: str = "Eden News",
    user_id: str = "user-owner",
    role: str = "owner",
) -> SeededAccount:
    with session_factory() as session:
        organization = Organization(name=f"{name} Org")
        session.add(organization)
        session.flush()
        account = Account(organization_id=organization.id, name=name)
        session.add(account)
        session.flush()
        session.add(AccountMember(account_id=account.id, user_id=user_id, role=role))
        session.commit()
        return SeededAccount(
            account_id=account.id,
            organization_id=organization.id,
            user_id=user_id,
            role=role,
        )


def add_member(session_factory: sessionmaker, account_id: str, *, user_id: str, role: str) -> None:
    with session_factory() as session:
        session.add(AccountMember(account_id=account_id, user_id=user_id, role=role))
        session.commit()


def context_for(session_factory: sessionmaker, seeded: SeededAccount, *, user_id: str | None = None) -> AccountContext:
    with session_factory() as session:
        return resolve_account_context(session, account_id=seeded.account_id, user_id=user_id or seeded.user_id)


def headers_for(seeded: SeededAccount, *, user_id: str | None = None) -> Dict[str, str]:
    return {"x-account-id": seeded.account_id, "x-user-id": user_id or seeded.user_id}


LONG_STORY_TEXT = (
    "Churches across the region opened their doors this week to families displaced by the floods. "
    "Volunteers organised meals, temporary beds and prayer vigils while local leaders coordinated "
    "with relief agencies to reach the most isolated villages. "
) * 4


def seed_story(
    session_factory: sessionmaker,
    account_id: str,
    *,
    title: str = "Churches open doors to flood victims",
    full_text: str = LONG_STORY_TEXT,
    relevance_score: float = 0.9,
) -> str:
    with session_factory() as session:
        story = Story(
            account_id=account_id,
            title=title,
            full_text=full_text,
            summary=full_text[:200],
            url="https://news.example.org/flood-relief",
            source_name="Example News",
            relevance_score=relevance_score,
        )
        session.add(story)
        session.commit()
        return story.id
