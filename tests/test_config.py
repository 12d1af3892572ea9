from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from news_synth.config import Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]

_ENV_PREFIX = "NEWS_SYNTH_"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIX):
            monkeypatch.delenv(name)


def test_defaults() -> None:
    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == Path(".news_synth.db")
    assert settings.queue_ttl == timedelta(hours=48)
    assert settings.queue_stale_after == timedelta(hours=2)
    assert settings.queue.excluded_sources == ()
    assert settings.synthesis.backend == "http"
    assert settings.synthesis.concurrency == 3
    assert settings.synthesis.effective_planner_model == settings.synthesis.model


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("NEWS_SYNTH_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("NEWS_SYNTH_QUEUE_TTL_HOURS", "24")
    monkeypatch.setenv("NEWS_SYNTH_QUEUE_STALE_AFTER_HOURS", "0.5")
    monkeypatch.setenv("NEWS_SYNTH_QUEUE_EXCLUDED_SOURCES", " Crawler.example.com,, rss ,rss")
    monkeypatch.setenv("NEWS_SYNTH_BACKEND", " ECHO ")
    monkeypatch.setenv("NEWS_SYNTH_MODEL", "writer-model")
    monkeypatch.setenv("NEWS_SYNTH_PLANNER_MODEL", "planner-model")
    monkeypatch.setenv("NEWS_SYNTH_CONCURRENCY", "5")
    monkeypatch.setenv("NEWS_SYNTH_OUTPUT_DIR", str(tmp_path / "out"))

    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.queue_ttl == timedelta(hours=24)
    assert settings.queue_stale_after == timedelta(minutes=30)
    assert settings.queue.excluded_sources == ("crawler.example.com", "rss")
    assert settings.synthesis.backend == "echo"
    assert settings.synthesis.effective_planner_model == "planner-model"
    assert settings.synthesis.concurrency == 5
    assert settings.synthesis.output_dir == tmp_path / "out"


def test_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("NEWS_SYNTH_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("NEWS_SYNTH_QUEUE_TTL_HOURS", "0", "TTL"),
        ("NEWS_SYNTH_QUEUE_STALE_AFTER_HOURS", "-1", "STALE_AFTER"),
        ("NEWS_SYNTH_CONCURRENCY", "0", "CONCURRENCY"),
        ("NEWS_SYNTH_BACKEND", "carrier-pigeon", "Unsupported"),
        ("NEWS_SYNTH_CALL_TIMEOUT_SECONDS", "0", "TIMEOUT"),
        ("NEWS_SYNTH_API_BASE_URL", "llm.local", "API_BASE_URL"),
    ],
)
def test_validate_rejects_bad_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()
