"""Configuration loading for schedule-sync.

Reads settings from environment variables (with .env support via python-dotenv)
and validates that all required values are present.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Google refuses batch requests with more than 50 calls.
MAX_BATCH_LIMIT = 50


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment variables.

    Durations are in seconds.

    Attributes:
        google_client_id: OAuth client ID of the Google Cloud project.
        google_client_secret: OAuth client secret.
        google_redirect_uri: Redirect URI registered for the consent flow.
        database_path: Path of the SQLite state database.
        log_level: Logging level (default ``"INFO"``).
        timezone: IANA timezone for created calendars and event times.
        calendar_name: Summary of the dedicated calendar created per user.
        sync_interval: Seconds between scheduled sync runs.
        user_concurrency: Users processed simultaneously within a run.
        batch_limit: Operations per physical batch request (max 50).
        max_attempts: Total attempts for a retried API call.
        retry_base_delay: First backoff delay.
        retry_max_delay: Upper bound for a single backoff delay.
        chunk_delay: Pause between consecutive batch chunks of one user.
        internal_token: Secret mixed into signed account-link states.
    """

    google_client_id: str
    google_client_secret: str
    google_redirect_uri: str
    database_path: str = "schedule_sync.db"
    log_level: str = "INFO"
    timezone: str = "Asia/Yekaterinburg"
    calendar_name: str = "University Schedule"
    sync_interval: float = 900.0
    user_concurrency: int = 5
    batch_limit: int = MAX_BATCH_LIMIT
    max_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    chunk_delay: float = 1.0
    internal_token: str = ""

    def __repr__(self) -> str:
        return (
            f"Settings(google_client_id={self.google_client_id!r}, "
            f"google_client_secret='***', "
            f"google_redirect_uri={self.google_redirect_uri!r}, "
            f"database_path={self.database_path!r}, "
            f"log_level={self.log_level!r}, "
            f"timezone={self.timezone!r}, "
            f"sync_interval={self.sync_interval!r}, "
            f"user_concurrency={self.user_concurrency!r}, "
            f"batch_limit={self.batch_limit!r}, "
            f"internal_token='***')"
        )


_OPTIONAL_STRINGS = {
    "DATABASE_PATH": "database_path",
    "LOG_LEVEL": "log_level",
    "TIMEZONE": "timezone",
    "CALENDAR_NAME": "calendar_name",
    "INTERNAL_TOKEN": "internal_token",
}

_OPTIONAL_INTS = {
    "USER_CONCURRENCY": "user_concurrency",
    "GOOGLE_BATCH_LIMIT": "batch_limit",
    "MAX_RETRIES": "max_attempts",
}

_OPTIONAL_FLOATS = {
    "SYNC_INTERVAL": "sync_interval",
    "RETRY_DELAY": "retry_base_delay",
    "RETRY_MAX_DELAY": "retry_max_delay",
    "CHUNK_DELAY": "chunk_delay",
}


def load_settings() -> Settings:
    """Load and validate settings from environment variables.

    Calls :func:`dotenv.load_dotenv` so a ``.env`` file in the project root
    is picked up automatically.

    Returns:
        A validated :class:`Settings` instance.

    Raises:
        ConfigError: If any required environment variable is missing,
            empty, or whitespace-only (the message names **all** missing
            variables), or if a numeric variable cannot be parsed or is
            out of range.
    """
    load_dotenv()

    required = {
        "GOOGLE_CLIENT_ID": "google_client_id",
        "GOOGLE_CLIENT_SECRET": "google_client_secret",
        "GOOGLE_REDIRECT_URI": "google_redirect_uri",
    }

    values: dict[str, object] = {}
    missing: list[str] = []

    for env_var, field_name in required.items():
        raw = os.environ.get(env_var, "")
        if not raw.strip():
            missing.append(env_var)
        else:
            values[field_name] = raw.strip()

    if missing:
        names = ", ".join(missing)
        raise ConfigError(f"Missing required environment variables: {names}")

    for env_var, field_name in _OPTIONAL_STRINGS.items():
        raw = os.environ.get(env_var, "").strip()
        if raw:
            values[field_name] = raw

    for env_var, field_name in _OPTIONAL_INTS.items():
        raw = os.environ.get(env_var, "").strip()
        if raw:
            values[field_name] = _parse_number(env_var, raw, int)

    for env_var, field_name in _OPTIONAL_FLOATS.items():
        raw = os.environ.get(env_var, "").strip()
        if raw:
            values[field_name] = _parse_number(env_var, raw, float)

    batch_limit = values.get("batch_limit")
    if isinstance(batch_limit, int) and batch_limit > MAX_BATCH_LIMIT:
        values["batch_limit"] = MAX_BATCH_LIMIT

    return Settings(**values)  # type: ignore[arg-type]


def _parse_number(env_var: str, raw: str, kind: type) -> int | float:
    """Parse a numeric environment value.

    Integers (counts) must be positive; floats (durations) may be zero.

    Args:
        env_var: Variable name, used in the error message.
        raw: The stripped raw value.
        kind: ``int`` or ``float``.

    Raises:
        ConfigError: If *raw* is not a number of *kind* or is out of range.
    """
    try:
        value = kind(raw)
    except ValueError as exc:
        raise ConfigError(f"{env_var} must be a number, got {raw!r}") from exc
    if value < 0 or (kind is int and value == 0):
        raise ConfigError(f"{env_var} is out of range: {raw!r}")
    return value
