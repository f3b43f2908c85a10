"""Runtime configuration for the job queue, completion client and pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

COMPLETION_BACKENDS: tuple[str, ...] = ("anthropic", "echo")


@dataclass(slots=True)
class QueueSettings:
    """Worker loop and retry policy settings."""

    poll_interval_seconds: float = 1.0
    max_attempts: int = 3
    graceful_shutdown_seconds: float = 60.0
    rate_limit_fallback_seconds: int = 1_800
    session_window_seconds: int = 18_000
    stale_after_seconds: float = 300.0


@dataclass(slots=True)
class CompletionSettings:
    """External completion service settings."""

    backend: str = "anthropic"
    api_key: str = ""
    base_url: str = "https://api.anthropic.com"
    model: str = "claude-sonnet-4-5"
    request_timeout_seconds: float = 600.0
    max_retries: int = 2


@dataclass(slots=True)
class PipelineSettings:
    """Orchestrator validation settings."""

    default_target_words: int = 2_200
    word_count_tolerance_percent: float = 10.0
    word_count_high_severity_percent: float = 20.0
    stop_on_high_severity: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".novel_pipeline.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("NOVEL_PIPELINE_DB_PATH", ".novel_pipeline.db")),
            sqlite_busy_timeout_ms=int(os.getenv("NOVEL_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("NOVEL_PIPELINE_LOG_LEVEL", "INFO").upper(),
            queue=QueueSettings(
                poll_interval_seconds=float(
                    os.getenv("NOVEL_PIPELINE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                max_attempts=int(os.getenv("NOVEL_PIPELINE_MAX_ATTEMPTS", "3")),
                graceful_shutdown_seconds=float(
                    os.getenv("NOVEL_PIPELINE_GRACEFUL_SHUTDOWN_SECONDS", "60"),
                ),
                rate_limit_fallback_seconds=int(
                    os.getenv("NOVEL_PIPELINE_RATE_LIMIT_FALLBACK_SECONDS", "1800"),
                ),
                session_window_seconds=int(
                    os.getenv("NOVEL_PIPELINE_SESSION_WINDOW_SECONDS", "18000"),
                ),
                stale_after_seconds=float(
                    os.getenv("NOVEL_PIPELINE_STALE_AFTER_SECONDS", "300"),
                ),
            ),
            completion=CompletionSettings(
                backend=os.getenv("NOVEL_PIPELINE_COMPLETION_BACKEND", "anthropic").strip().lower(),
                api_key=os.getenv("NOVEL_PIPELINE_API_KEY", os.getenv("ANTHROPIC_API_KEY", "")),
                base_url=os.getenv("NOVEL_PIPELINE_API_BASE_URL", "https://api.anthropic.com"),
                model=os.getenv("NOVEL_PIPELINE_MODEL", "claude-sonnet-4-5"),
                request_timeout_seconds=float(
                    os.getenv("NOVEL_PIPELINE_REQUEST_TIMEOUT_SECONDS", "600"),
                ),
                max_retries=int(os.getenv("NOVEL_PIPELINE_HTTP_MAX_RETRIES", "2")),
            ),
            pipeline=PipelineSettings(
                default_target_words=int(
                    os.getenv("NOVEL_PIPELINE_DEFAULT_TARGET_WORDS", "2200"),
                ),
                word_count_tolerance_percent=float(
                    os.getenv("NOVEL_PIPELINE_WORD_COUNT_TOLERANCE_PERCENT", "10"),
                ),
                word_count_high_severity_percent=float(
                    os.getenv("NOVEL_PIPELINE_WORD_COUNT_HIGH_SEVERITY_PERCENT", "20"),
                ),
                stop_on_high_severity=_env_bool(
                    "NOVEL_PIPELINE_STOP_ON_HIGH_SEVERITY",
                    default=False,
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker or completion settings are unusable."""

        if self.queue.poll_interval_seconds < 0:
            raise ValueError("NOVEL_PIPELINE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.queue.max_attempts < 1:
            raise ValueError("NOVEL_PIPELINE_MAX_ATTEMPTS must be >= 1.")
        if self.queue.graceful_shutdown_seconds <= 0:
            raise ValueError("NOVEL_PIPELINE_GRACEFUL_SHUTDOWN_SECONDS must be > 0.")
        if self.queue.rate_limit_fallback_seconds < 0:
            raise ValueError("NOVEL_PIPELINE_RATE_LIMIT_FALLBACK_SECONDS must be >= 0.")
        if self.completion.backend not in COMPLETION_BACKENDS:
            raise ValueError(
                f"Unsupported completion backend: {self.completion.backend!r}. "
                f"Expected one of: {', '.join(COMPLETION_BACKENDS)}.",
            )
        if self.completion.backend == "anthropic":
            if not self.completion.api_key:
                raise ValueError(
                    "An API key is required. Set NOVEL_PIPELINE_API_KEY or ANTHROPIC_API_KEY.",
                )
            _validate_base_url(self.completion.base_url)
        if self.completion.request_timeout_seconds <= 0:
            raise ValueError("NOVEL_PIPELINE_REQUEST_TIMEOUT_SECONDS must be > 0.")

    def validate_for_pipeline(self) -> None:
        """Raise configuration error if validation thresholds are inconsistent."""

        if self.pipeline.default_target_words <= 0:
            raise ValueError("NOVEL_PIPELINE_DEFAULT_TARGET_WORDS must be a positive integer.")
        if self.pipeline.word_count_tolerance_percent < 0:
            raise ValueError("NOVEL_PIPELINE_WORD_COUNT_TOLERANCE_PERCENT must be >= 0.")
        if self.pipeline.word_count_high_severity_percent < self.pipeline.word_count_tolerance_percent:
            raise ValueError(
                "NOVEL_PIPELINE_WORD_COUNT_HIGH_SEVERITY_PERCENT must be >= the tolerance.",
            )


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid completion API base URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
