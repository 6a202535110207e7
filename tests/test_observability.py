from types import SimpleNamespace

from src.core import observability


def _settings(dsn: str, *, env: str = "development", rate: float = 0.0) -> SimpleNamespace:
    return SimpleNamespace(
        sentry_dsn=dsn,
        env=env,
        app_name="eden_content",
        app_version="0.1.0",
        sentry_traces_sample_rate=rate,
    )


def test_init_sentry_skips_when_dsn_missing(monkeypatch) -> None:
    observability.reset_observability_for_tests()

    called = {"count": 0}

    def fake_init(**kwargs):  # noqa: ARG001
        called["count"] += 1

    monkeypatch.setattr(observability, "_call_sentry_init", fake_init)
    monkeypatch.setattr(observability, "get_settings", lambda: _settings(""))

    assert observability.init_sentry() is False
    assert called["count"] == 0
    assert observability.sentry_enabled() is False
    observability.reset_observability_for_tests()


def test_init_sentry_initializes_once(monkeypatch) -> None:
    observability.reset_observability_for_tests()

    calls = []

    def fake_init(**kwargs):
        calls.append(kwargs)

    monkeypatch.setattr(observability, "FastApiIntegration", lambda: object())
    monkeypatch.setattr(observability, "_call_sentry_init", fake_init)
    monkeypatch.setattr(
        observability,
        "get_settings",
        lambda: _settings("https://abc@example.ingest.sentry.io/1", env="production", rate=0.2),
    )

    assert observability.init_sentry() is True
    assert observability.init_sentry() is True
    assert len(calls) == 1
    assert calls[0]["dsn"] == "https://abc@example.ingest.sentry.io/1"
    assert calls[0]["environment"] == "production"
    assert calls[0]["traces_sample_rate"] == 0.2
    assert calls[0]["release"] == "eden_content@0.1.0"
    observability.reset_observability_for_tests()


def test_sentry_scope_is_a_no_op_when_not_initialized() -> None:
    observability.reset_observability_for_tests()

    with observability.sentry_scope(account_id="acc-1", job_id="job-1"):
        value = "inside"

    assert value == "inside"
    observability.capture_exception(RuntimeError("ignored"))
