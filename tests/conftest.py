"""Shared fixtures for schedule-sync tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest

from schedule_sync.store.sqlite import SQLiteStateStore

_ENV_VARS = (
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REDIRECT_URI",
    "DATABASE_PATH",
    "LOG_LEVEL",
    "TIMEZONE",
    "CALENDAR_NAME",
    "SYNC_INTERVAL",
    "USER_CONCURRENCY",
    "GOOGLE_BATCH_LIMIT",
    "MAX_RETRIES",
    "RETRY_DELAY",
    "RETRY_MAX_DELAY",
    "CHUNK_DELAY",
    "INTERNAL_TOKEN",
)


@pytest.fixture()
def monkeypatch_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required environment variables to valid defaults.

    Also patches ``load_dotenv`` so that a real ``.env`` file on disk does not
    override the test values.  Optional variables are removed.

    Returns the dict of variables so tests can inspect or override values.
    """
    monkeypatch.setattr("schedule_sync.config.load_dotenv", lambda *_a, **_kw: None)
    for key in _ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    env_vars = {
        "GOOGLE_CLIENT_ID": "test-client-id.apps.googleusercontent.com",
        "GOOGLE_CLIENT_SECRET": "test-client-secret-12345",
        "GOOGLE_REDIRECT_URI": "https://example.com/oauth/callback",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove all schedule-sync-related environment variables.

    Patches ``load_dotenv`` so a real ``.env`` file cannot re-inject values
    that the test explicitly removed.
    """
    monkeypatch.setattr("schedule_sync.config.load_dotenv", lambda *_a, **_kw: None)
    for key in _ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def store(tmp_path: Path) -> SQLiteStateStore:
    """A fresh SQLite state store in a temp directory."""
    return SQLiteStateStore(tmp_path / "state.db")


@pytest.fixture(autouse=True)
def _reset_root_logger() -> Generator[None, None, None]:
    """Reset the root logger after each test to prevent handler leaks."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    root.handlers = original_handlers
    root.setLevel(original_level)
