"""
Monitor configuration loaded from environment variables, plus the station file.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Stations live in a separate JSON file (``STATIONS_FILE``) because each entry
carries its own endpoint, scene, and credentials.

CHANGELOG:
- 2026-10-18: Add rotation window and shutdown grace (STORY-010)
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import TypeAdapter, ValidationError, field_validator
from pydantic_settings import BaseSettings

from monitor.src.errors import ConfigError
from monitor.src.models import StationIdentity

_STATION_LIST = TypeAdapter(list[StationIdentity])


class MonitorSettings(BaseSettings):
    """Power monitor configuration.

    All values are loaded from environment variables. Every field has a
    default so a bare ``STATIONS_FILE`` is enough to start.

    Attributes:
        stations_file: JSON file listing the stations to monitor.
        database_url: SQLAlchemy async URL of the reading store.
        db_connect_attempts: Startup connection attempts before running
            without persistence.
        monitor_mode: ``simultaneous`` (all stations at once) or
            ``rotation`` (one station per window).
        update_rate_ms: Notification cadence requested from each station.
        connect_timeout_s: WebSocket opening handshake timeout.
        handshake_step_timeout_s: Bounded wait for each handshake response.
        reconnect_delay_s: Fixed delay between reconnect attempts.
        max_reconnect_attempts: Consecutive failures before a station is
            given up on.
        persist_interval_s: Minimum interval between writes per station.
        http_poll_interval_s: Tick of HTTP-polled stations.
        http_timeout_s: Timeout of one HTTP data fetch.
        max_poll_failures: Consecutive HTTP failures before the poller stops.
        rotation_window_s: Monitoring window per station in rotation mode.
        shutdown_grace_s: Grace period before a transport is force-closed.
        object_tables_file: Optional override of the packaged object tables.
        health_path: Status file rewritten periodically.
        status_interval_s: Seconds between status file rewrites.
        create_schema: Create missing tables at startup.
        log_level: Root log level.
    """

    stations_file: str = "stations.json"
    database_url: str = "sqlite+aiosqlite:///./power_monitor.db"
    db_connect_attempts: int = 5
    monitor_mode: Literal["rotation", "simultaneous"] = "simultaneous"
    update_rate_ms: int = 3000
    connect_timeout_s: float = 10.0
    handshake_step_timeout_s: float = 5.0
    reconnect_delay_s: float = 5.0
    max_reconnect_attempts: int = 5
    persist_interval_s: float = 10.0
    http_poll_interval_s: float = 10.0
    http_timeout_s: float = 10.0
    max_poll_failures: int = 5
    rotation_window_s: float = 30.0
    shutdown_grace_s: float = 2.0
    object_tables_file: str | None = None
    health_path: str = "./health.json"
    status_interval_s: float = 30.0
    create_schema: bool = True
    log_level: str = "INFO"

    @field_validator("update_rate_ms")
    @classmethod
    def update_rate_must_be_reasonable(cls, v: int) -> int:
        """Stations push notifications at this rate; below 500 ms floods the link."""
        if v < 500:
            raise ValueError("UPDATE_RATE_MS must be >= 500")
        return v

    @field_validator("max_reconnect_attempts", "max_poll_failures", "db_connect_attempts")
    @classmethod
    def budget_must_be_positive(cls, v: int) -> int:
        """Retry budgets count attempts, so they must allow at least one."""
        if v < 1:
            raise ValueError("retry budgets must be >= 1")
        return v

    @field_validator(
        "connect_timeout_s",
        "handshake_step_timeout_s",
        "http_poll_interval_s",
        "http_timeout_s",
        "rotation_window_s",
    )
    @classmethod
    def interval_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and intervals must be > 0")
        return v

    @field_validator(
        "reconnect_delay_s",
        "persist_interval_s",
        "shutdown_grace_s",
        "status_interval_s",
    )
    @classmethod
    def delay_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must be >= 0")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"LOG_LEVEL must be a standard level name (got {v!r})")
        return level

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def load_stations(path: str | Path) -> list[StationIdentity]:
    """Load and validate the station file.

    Each entry is ``{"name", "endpoint", "scene"?, "session_uuid"?,
    "username"?, "password"?}``. The transport kind of every station is
    decided here.

    Args:
        path: Path of the JSON station file.

    Returns:
        Stations in file order.

    Raises:
        ConfigError: If the file is missing, malformed, contains an
            unsupported endpoint, or repeats a station name.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read station file {path}: {exc}") from exc

    try:
        stations = _STATION_LIST.validate_json(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid station file {path}: {exc}") from exc

    seen: set[str] = set()
    for station in stations:
        if station.name in seen:
            raise ConfigError(f"Duplicate station name in {path}: {station.name!r}")
        seen.add(station.name)

    if not stations:
        raise ConfigError(f"Station file {path} lists no stations")
    return stations
