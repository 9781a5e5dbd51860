"""
Unit tests for the monitor entry point.

Tests verify:
- configure_logging() emits one JSON object per record.
- The startup summary masks the database password and never logs station
  credentials.
- parse_args() accepts the mode override and the station file option.
- run() starts the fleet, stops it on the shutdown event, and writes the
  final status file.
- open_repository() returns None when the store is unreachable.
- async_main() exits with code 2 on bad configuration.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
from pathlib import Path

import pytest
from conftest import ChannelFactoryStub, InMemoryRepository
from monitor.src import main as main_module
from monitor.src.config import MonitorSettings
from monitor.src.health import HealthWriter
from monitor.src.main import (
    async_main,
    configure_logging,
    log_config_summary,
    open_repository,
    parse_args,
    run,
)
from monitor.src.models import SessionState, StationIdentity


def _stations() -> list[StationIdentity]:
    return [
        StationIdentity.model_validate(
            {
                "name": "Chiang Mai",
                "endpoint": "ws://10.0.0.5:8080/comet",
                "username": "monitor",
                "password": "station-secret",
            }
        )
    ]


def _settings(**overrides: object) -> MonitorSettings:
    values: dict[str, object] = {
        "database_url": "postgresql+asyncpg://monitor:db-secret@db:5432/power",
        "handshake_step_timeout_s": 0.2,
        "reconnect_delay_s": 0.0,
        "persist_interval_s": 0.0,
        "shutdown_grace_s": 0.2,
    }
    values.update(overrides)
    return MonitorSettings(**values)


class TestConfigureLogging:
    def test_json_lines(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging("DEBUG")
            stream = io.StringIO()
            root.handlers[0].setStream(stream)

            logging.getLogger("monitor.test").info("hello %s", "world")

            entry = json.loads(stream.getvalue().strip())
            assert entry["msg"] == "hello world"
            assert entry["level"] == "INFO"
            assert entry["logger"] == "monitor.test"
            assert logging.getLogger("websockets").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


class TestStartupLogging:
    """The startup summary never contains secrets."""

    def test_password_masked(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="monitor.src.main"):
            log_config_summary(_settings(), _stations())

        assert "db-secret" not in caplog.text
        assert "station-secret" not in caplog.text
        assert "***" in caplog.text

    def test_summary_contains_stations(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="monitor.src.main"):
            log_config_summary(_settings(), _stations())

        assert "[Chiang Mai]" in caplog.text
        assert "sign-in" in caplog.text
        assert "mode=simultaneous" in caplog.text


class TestParseArgs:
    def test_defaults(self) -> None:
        args = parse_args([])
        assert args.mode is None
        assert args.stations is None

    def test_mode_and_stations(self) -> None:
        args = parse_args(["rotation", "--stations", "s.json"])
        assert args.mode == "rotation"
        assert args.stations == "s.json"

    def test_unknown_mode(self) -> None:
        with pytest.raises(SystemExit):
            parse_args(["round-robin"])


class TestRun:
    """run() drives the fleet until the shutdown event."""

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self, tmp_path: Path) -> None:
        factory = ChannelFactoryStub()
        repository = InMemoryRepository()
        health_path = tmp_path / "health.json"
        shutdown_event = asyncio.Event()

        task = asyncio.create_task(
            run(
                _settings(status_interval_s=0.01),
                _stations(),
                shutdown_event=shutdown_event,
                repository=repository,
                health=HealthWriter(health_path),
                channel_factory=factory,
            )
        )
        async with asyncio.timeout(2.0):
            while not health_path.exists():
                await asyncio.sleep(0.01)
        shutdown_event.set()
        report = await asyncio.wait_for(task, timeout=2.0)

        assert factory.channels[0].methods[0] == "comet.signIn"
        assert factory.channels[0].closed
        assert report.for_station("Chiang Mai").state is SessionState.DISCONNECTED
        assert "Chiang Mai" in repository.stations
        data = json.loads(health_path.read_text())
        assert data["stations"]["Chiang Mai"]["state"] == "disconnected"

    @pytest.mark.asyncio
    async def test_rotation_mode(self) -> None:
        factory = ChannelFactoryStub()
        shutdown_event = asyncio.Event()

        task = asyncio.create_task(
            run(
                _settings(monitor_mode="rotation", rotation_window_s=0.05),
                _stations(),
                shutdown_event=shutdown_event,
                channel_factory=factory,
            )
        )
        async with asyncio.timeout(2.0):
            while len(factory.channels) < 2:
                await asyncio.sleep(0.01)
        shutdown_event.set()
        report = await asyncio.wait_for(task, timeout=2.0)

        assert report.mode == "rotation"


class TestOpenRepository:
    @pytest.mark.asyncio
    async def test_unreachable_store_runs_without_persistence(self, tmp_path: Path) -> None:
        missing = tmp_path / "no" / "such" / "x.db"

        repository = await open_repository(
            _settings(database_url=f"sqlite+aiosqlite:///{missing}", db_connect_attempts=1)
        )

        assert repository is None

    @pytest.mark.asyncio
    async def test_store_ready(self, tmp_path: Path) -> None:
        repository = await open_repository(
            _settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/ok.db")
        )
        assert repository is not None
        assert (await repository.get_database_info())["stations"] == 0
        await repository.close()


class TestAsyncMain:
    """Configuration errors exit with code 2 before anything connects."""

    @pytest.fixture(autouse=True)
    def _quiet_logging(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(main_module, "configure_logging", lambda level="INFO": None)

    @pytest.mark.asyncio
    async def test_invalid_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("UPDATE_RATE_MS", "10")
        assert await async_main([]) == 2

    @pytest.mark.asyncio
    async def test_missing_station_file(self, tmp_path: Path) -> None:
        assert await async_main(["--stations", str(tmp_path / "missing.json")]) == 2
