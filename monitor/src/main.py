"""
Power monitor entry point.

Loads the configuration and station file, opens the store, and runs the
fleet in one of two modes:

1. **simultaneous**: every station is supervised concurrently.
2. **rotation**: stations are monitored one at a time, each for a fixed
   window.

The mode comes from ``MONITOR_MODE`` and can be overridden by the first
command-line argument (``python -m monitor.src.main rotation``).

Graceful shutdown on SIGTERM/SIGINT sets a shared asyncio.Event; the fleet is
then stopped (bounded by the shutdown grace period), pending readings are
flushed, and a final per-station report is logged and written to the status
file. If the store is unreachable at startup the monitor keeps running
without persistence.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-18: Periodic status file rewrites
- 2026-10-18: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from monitor.src.config import MonitorSettings, load_stations
from monitor.src.db.repository import StationRepository
from monitor.src.db.session import safe_url
from monitor.src.errors import ConfigError, PersistenceError
from monitor.src.fleet import FleetCoordinator
from monitor.src.health import HealthWriter

if TYPE_CHECKING:
    import httpx

    from monitor.src.models import FleetReport, StationIdentity
    from monitor.src.transport import ChannelFactory

logger = logging.getLogger(__name__)

_NOISY_LOGGERS = ("websockets", "httpx", "httpcore", "aiosqlite", "sqlalchemy.engine")


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the monitor.

    Sets up the root logger with a JSON-formatted handler writing to stderr
    and quiets the chattier third-party loggers.

    Args:
        level: Root log level name.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: MonitorSettings, stations: Sequence[StationIdentity]) -> None:
    """Log a config summary at startup, excluding secrets.

    The database password is masked and station credentials are never
    logged.

    Args:
        settings: The loaded settings.
        stations: The loaded stations.
    """
    logger.info(
        "Power monitor starting with config: "
        "mode=%s, stations_file=%s, database_url=%s, "
        "update_rate_ms=%s, handshake_step_timeout_s=%s, "
        "reconnect_delay_s=%s, max_reconnect_attempts=%s, "
        "persist_interval_s=%s, http_poll_interval_s=%s, "
        "max_poll_failures=%s, rotation_window_s=%s, health_path=%s",
        settings.monitor_mode,
        settings.stations_file,
        safe_url(settings.database_url),
        settings.update_rate_ms,
        settings.handshake_step_timeout_s,
        settings.reconnect_delay_s,
        settings.max_reconnect_attempts,
        settings.persist_interval_s,
        settings.http_poll_interval_s,
        settings.max_poll_failures,
        settings.rotation_window_s,
        settings.health_path,
    )
    for station in stations:
        logger.info(
            "[%s] %s endpoint=%s scene=%s login=%s",
            station.name,
            station.transport.kind,
            station.endpoint,
            station.scene,
            "sign-in" if station.username else "session-restore" if station.is_socket else "-",
        )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="power-monitor",
        description="Monitor substation power meters and store their readings.",
    )
    parser.add_argument(
        "mode",
        nargs="?",
        choices=("rotation", "simultaneous"),
        help="scheduling mode (default: MONITOR_MODE)",
    )
    parser.add_argument("--stations", help="station file (default: STATIONS_FILE)")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Store and status helpers
# ---------------------------------------------------------------------------


async def open_repository(settings: MonitorSettings) -> StationRepository | None:
    """Connect to the store, or return ``None`` to run without persistence."""
    repository = StationRepository(
        settings.database_url,
        max_connect_attempts=settings.db_connect_attempts,
    )
    try:
        await repository.connect()
        if settings.create_schema:
            await repository.create_schema()
        info = await repository.get_database_info()
    except PersistenceError:
        logger.error("Store unavailable, readings will not be persisted", exc_info=True)
        await repository.close()
        return None
    logger.info(
        "Store ready (%s): %d stations, %d readings",
        info["dialect"],
        info["stations"],
        info["readings"],
    )
    return repository


def _write_health(health: HealthWriter, report: FleetReport) -> None:
    try:
        health.write(report)
    except Exception:
        logger.warning("Failed to write status file", exc_info=True)


async def _status_loop(
    *,
    coordinator: FleetCoordinator,
    health: HealthWriter,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Rewrite the status file every *interval_s* until shutdown."""
    while not shutdown_event.is_set():
        _write_health(health, coordinator.snapshot())
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)


# ---------------------------------------------------------------------------
# Runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run(
    settings: MonitorSettings,
    stations: Sequence[StationIdentity],
    *,
    shutdown_event: asyncio.Event,
    repository: StationRepository | None = None,
    health: HealthWriter | None = None,
    channel_factory: ChannelFactory | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FleetReport:
    """Run the fleet until *shutdown_event* is set, then stop it.

    Returns:
        The final per-station report.
    """
    coordinator = FleetCoordinator(
        settings,
        repository=repository,
        channel_factory=channel_factory,
        http_transport=http_transport,
    )
    coordinator.initialize(stations)

    status_task: asyncio.Task[None] | None = None
    if health is not None and settings.status_interval_s > 0:
        status_task = asyncio.create_task(
            _status_loop(
                coordinator=coordinator,
                health=health,
                interval_s=settings.status_interval_s,
                shutdown_event=shutdown_event,
            )
        )

    try:
        if settings.monitor_mode == "rotation":
            await coordinator.run_rotation(shutdown_event)
        else:
            await coordinator.run_all()
            logger.info("All stations started, waiting for shutdown signal")
        await shutdown_event.wait()
    finally:
        if status_task is not None:
            status_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await status_task
        report = await coordinator.shutdown_all()
        if health is not None:
            _write_health(health, report)
    return report


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main(argv: Sequence[str] | None = None) -> int:
    """Async entrypoint: load config, open the store, run the fleet.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.

    Returns:
        Process exit code.
    """
    args = parse_args(argv)
    configure_logging()

    try:
        settings = MonitorSettings()
    except ValidationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    configure_logging(settings.log_level)

    overrides: dict[str, str] = {}
    if args.mode:
        overrides["monitor_mode"] = args.mode
    if args.stations:
        overrides["stations_file"] = args.stations
    if overrides:
        settings = settings.model_copy(update=overrides)

    try:
        stations = load_stations(settings.stations_file)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2
    log_config_summary(settings, stations)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    repository = await open_repository(settings)
    try:
        await run(
            settings,
            stations,
            shutdown_event=shutdown_event,
            repository=repository,
            health=HealthWriter(settings.health_path),
        )
    finally:
        if repository is not None:
            await repository.close()
    logger.info("Shutdown complete")
    return 0


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the power monitor."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
