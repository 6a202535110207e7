import pytest

from src.core.config import get_settings


def test_loads_environment_values(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./data/test_eden.sqlite")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/9")
    monkeypatch.setenv("JOB_STALL_TIMEOUT_SECONDS", "600")
    monkeypatch.setenv("AI_DEMO_MODE", "true")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "development"
    assert settings.database_url.endswith("test_eden.sqlite")
    assert settings.redis_url.endswith("/9")
    assert settings.job_stall_timeout_seconds == 600
    assert settings.ai_demo_mode is True
    assert settings.job_dedupe_window_seconds == 5

    get_settings.cache_clear()


def test_rejects_invalid_observability_limits(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "1.2")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="SENTRY_TRACES_SAMPLE_RATE"):
        get_settings()

    get_settings.cache_clear()


def test_rejects_non_positive_job_timeouts(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("JOB_STALL_TIMEOUT_SECONDS", "0")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="JOB_STALL_TIMEOUT_SECONDS"):
        get_settings()

    monkeypatch.setenv("JOB_STALL_TIMEOUT_SECONDS", "300")
    monkeypatch.setenv("WORKER_LOCK_TTL_SECONDS", "0")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="WORKER_LOCK_TTL_SECONDS"):
        get_settings()

    monkeypatch.setenv("WORKER_LOCK_TTL_SECONDS", "120")
    monkeypatch.setenv("JOB_MAX_RETRIES", "-1")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="JOB_MAX_RETRIES"):
        get_settings()

    get_settings.cache_clear()


def test_rejects_backoff_ceiling_below_base(monkeypatch) -> None:
    monkeypatch.setenv("JOB_RETRY_BACKOFF_BASE_SECONDS", "30")
    monkeypatch.setenv("JOB_RETRY_BACKOFF_MAX_SECONDS", "10")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="JOB_RETRY_BACKOFF_MAX_SECONDS"):
        get_settings()

    get_settings.cache_clear()


def test_rejects_out_of_range_default_temperature(monkeypatch) -> None:
    monkeypatch.setenv("DEFAULT_TEMPERATURE", "2.5")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="DEFAULT_TEMPERATURE"):
        get_settings()

    get_settings.cache_clear()


def test_demo_mode_in_production_requires_a_provider_key(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app:password@db:5432/eden_content")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("AI_DEMO_MODE", "true")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="AI_DEMO_MODE"):
        get_settings()

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    get_settings.cache_clear()
    assert get_settings().ai_demo_mode is True

    get_settings.cache_clear()


def test_production_requires_database_url(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="DATABASE_URL"):
        get_settings()

    get_settings.cache_clear()
