from __future__ import annotations

from pathlib import Path

import allure
import pytest

from novel_pipeline.config import Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("NOVEL_PIPELINE_DB_PATH", "NOVEL_PIPELINE_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".novel_pipeline.db")
    assert settings.queue.max_attempts == 3
    assert settings.queue.poll_interval_seconds == 1.0
    assert settings.queue.graceful_shutdown_seconds == 60.0
    assert settings.queue.rate_limit_fallback_seconds == 1800
    assert settings.queue.session_window_seconds == 5 * 60 * 60
    assert settings.queue.stale_after_seconds == 300.0
    assert settings.pipeline.default_target_words == 2200


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("NOVEL_PIPELINE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("NOVEL_PIPELINE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("NOVEL_PIPELINE_COMPLETION_BACKEND", " Echo ")
    monkeypatch.setenv("NOVEL_PIPELINE_STOP_ON_HIGH_SEVERITY", "yes")
    monkeypatch.setenv("NOVEL_PIPELINE_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.queue.max_attempts == 5
    assert settings.completion.backend == "echo"
    assert settings.pipeline.stop_on_high_severity is True
    assert settings.log_level == "DEBUG"
    settings.validate_for_worker()


def test_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("NOVEL_PIPELINE_DB_PATH", str(tmp_path / "env.db"))
    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOVEL_PIPELINE_STOP_ON_HIGH_SEVERITY", "maybe")
    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_worker_validation_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NOVEL_PIPELINE_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setenv("NOVEL_PIPELINE_COMPLETION_BACKEND", "anthropic")

    settings = Settings.from_env()
    with pytest.raises(ValueError, match="API key is required"):
        settings.validate_for_worker()

    settings.completion.api_key = "key"
    settings.completion.base_url = "api.example.com"
    with pytest.raises(ValueError, match="Invalid completion API base URL"):
        settings.validate_for_worker()


@pytest.mark.parametrize(
    ("attribute", "value", "message"),
    [
        ("max_attempts", 0, "MAX_ATTEMPTS"),
        ("poll_interval_seconds", -1.0, "POLL_INTERVAL_SECONDS"),
        ("graceful_shutdown_seconds", 0.0, "GRACEFUL_SHUTDOWN_SECONDS"),
    ],
)
def test_worker_validation_rejects_bad_queue_values(
    attribute: str,
    value: float,
    message: str,
) -> None:
    settings = Settings()
    settings.completion.backend = "echo"
    setattr(settings.queue, attribute, value)
    with pytest.raises(ValueError, match=message):
        settings.validate_for_worker()


def test_unknown_backend_is_rejected() -> None:
    settings = Settings()
    settings.completion.backend = "openai"
    with pytest.raises(ValueError, match="Unsupported completion backend"):
        settings.validate_for_worker()


def test_pipeline_validation_checks_thresholds() -> None:
    settings = Settings()
    settings.validate_for_pipeline()
    settings.pipeline.word_count_high_severity_percent = 5
    with pytest.raises(ValueError, match="HIGH_SEVERITY_PERCENT"):
        settings.validate_for_pipeline()
