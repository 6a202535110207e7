import pytest

from src.ai.providers.factory import reset_provider_cache
from src.core.config import get_settings
from src.core.runtime import load_runtime_config
from src.images.cdn import reset_uploader_cache
from src.storage.redis_client import reset_client_cache
from tests.support import FakeRedis, build_sqlite_session_factory, context_for, seed_account


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    monkeypatch.setenv("PROVIDER_RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("JOB_RETRY_BACKOFF_BASE_SECONDS", "0")
    monkeypatch.setenv("SENTRY_DSN", "")
    get_settings.cache_clear()
    load_runtime_config.cache_clear()
    reset_provider_cache()
    reset_uploader_cache()
    reset_client_cache()
    yield
    get_settings.cache_clear()
    load_runtime_config.cache_clear()
    reset_provider_cache()
    reset_uploader_cache()
    reset_client_cache()


@pytest.fixture
def session_factory():
    return build_sqlite_session_factory()


@pytest.fixture
def owner(session_factory):
    return seed_account(session_factory)


@pytest.fixture
def owner_ctx(session_factory, owner):
    return context_for(session_factory, owner)


@pytest.fixture
def session(session_factory):
    with session_factory() as db_session:
        yield db_session


@pytest.fixture
def fake_redis():
    return FakeRedis()
