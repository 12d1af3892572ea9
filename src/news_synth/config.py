"""Runtime configuration for the candidate queue and synthesis pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_BACKENDS = ("http", "echo")


@dataclass(slots=True)
class QueueSettings:
    """Candidate queue lifecycle settings."""

    ttl_hours: float = 48.0
    stale_after_hours: float = 2.0
    excluded_sources: tuple[str, ...] = ()
    default_max_items: int = 10


@dataclass(slots=True)
class SynthesisSettings:
    """Text generation settings for planner and section writers."""

    backend: str = "http"
    model: str = "gpt-4o-mini"
    planner_model: str | None = None
    concurrency: int = 3
    call_timeout_seconds: float = 120.0
    api_base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    http_max_retries: int = 2
    output_dir: Path = Path("articles")

    @property
    def effective_planner_model(self) -> str:
        return self.planner_model or self.model


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".news_synth.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    synthesis: SynthesisSettings = field(default_factory=SynthesisSettings)

    @property
    def queue_ttl(self) -> timedelta:
        return timedelta(hours=self.queue.ttl_hours)

    @property
    def queue_stale_after(self) -> timedelta:
        return timedelta(hours=self.queue.stale_after_hours)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("NEWS_SYNTH_DB_PATH", ".news_synth.db")),
            sqlite_busy_timeout_ms=int(os.getenv("NEWS_SYNTH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                ttl_hours=float(os.getenv("NEWS_SYNTH_QUEUE_TTL_HOURS", "48")),
                stale_after_hours=float(os.getenv("NEWS_SYNTH_QUEUE_STALE_AFTER_HOURS", "2")),
                excluded_sources=_csv_tuple(os.getenv("NEWS_SYNTH_QUEUE_EXCLUDED_SOURCES", "")),
                default_max_items=int(os.getenv("NEWS_SYNTH_QUEUE_DEFAULT_MAX_ITEMS", "10")),
            ),
            synthesis=SynthesisSettings(
                backend=os.getenv("NEWS_SYNTH_BACKEND", "http").strip().lower(),
                model=os.getenv("NEWS_SYNTH_MODEL", "gpt-4o-mini"),
                planner_model=os.getenv("NEWS_SYNTH_PLANNER_MODEL") or None,
                concurrency=int(os.getenv("NEWS_SYNTH_CONCURRENCY", "3")),
                call_timeout_seconds=float(os.getenv("NEWS_SYNTH_CALL_TIMEOUT_SECONDS", "120")),
                api_base_url=os.getenv("NEWS_SYNTH_API_BASE_URL", "https://api.openai.com/v1"),
                api_key=os.getenv("NEWS_SYNTH_API_KEY") or None,
                http_max_retries=int(os.getenv("NEWS_SYNTH_HTTP_MAX_RETRIES", "2")),
                output_dir=Path(os.getenv("NEWS_SYNTH_OUTPUT_DIR", "articles")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("NEWS_SYNTH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.ttl_hours <= 0:
            raise ValueError("NEWS_SYNTH_QUEUE_TTL_HOURS must be > 0.")
        if self.queue.stale_after_hours <= 0:
            raise ValueError("NEWS_SYNTH_QUEUE_STALE_AFTER_HOURS must be > 0.")
        if self.queue.default_max_items <= 0:
            raise ValueError("NEWS_SYNTH_QUEUE_DEFAULT_MAX_ITEMS must be a positive integer.")
        if self.synthesis.backend not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported NEWS_SYNTH_BACKEND: {self.synthesis.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_BACKENDS)}.",
            )
        if self.synthesis.concurrency <= 0:
            raise ValueError("NEWS_SYNTH_CONCURRENCY must be a positive integer.")
        if self.synthesis.call_timeout_seconds <= 0:
            raise ValueError("NEWS_SYNTH_CALL_TIMEOUT_SECONDS must be > 0.")
        if self.synthesis.http_max_retries < 0:
            raise ValueError("NEWS_SYNTH_HTTP_MAX_RETRIES must be >= 0.")
        if self.synthesis.backend == "http":
            parsed = urlparse(self.synthesis.api_base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "Invalid NEWS_SYNTH_API_BASE_URL: "
                    f"{self.synthesis.api_base_url!r}. Expected an absolute http(s) URL.",
                )


def _csv_tuple(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip().lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        values.append(normalized)
    return tuple(values)
