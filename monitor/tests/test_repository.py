"""
Tests for StationRepository against a temporary SQLite database.

Tests verify:
- connect() / create_schema() / health_check() / close().
- connect() raises PersistenceError after its attempts are used up.
- Concurrent reconnect() callers open a single new engine.
- A lost connection fails the operation at once, without reconnecting inline.
- find_or_create_station() creates once and updates endpoint and scene.
- Object maps are stored, replaced, and read back in insertion order.
- insert_readings() skips (station_id, ts) duplicates and maps fields onto
  columns; unknown fields are dropped.
- Operations before connect() raise PersistenceError.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from monitor.src.db.models import PowerReading
from monitor.src.db.repository import StationRepository
from monitor.src.db.session import safe_url
from monitor.src.errors import PersistenceError
from monitor.src.models import StationIdentity
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

_T0 = datetime(2026, 10, 18, 8, 0, tzinfo=UTC)


@pytest_asyncio.fixture()
async def repo(tmp_path: Path) -> AsyncIterator[StationRepository]:
    repository = StationRepository(f"sqlite+aiosqlite:///{tmp_path}/monitor.db")
    await repository.connect()
    await repository.create_schema()
    yield repository
    await repository.close()


def _identity(
    name: str = "Ranong", endpoint: str = "ws://10.0.0.1:8080", scene: str | None = "s1"
) -> StationIdentity:
    data = {"name": name, "endpoint": endpoint, "session_uuid": "uuid"}
    if scene is not None:
        data["scene"] = scene
    return StationIdentity.model_validate(data)


class TestConnection:
    """Connection lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_and_health(self, repo: StationRepository) -> None:
        assert repo.is_connected
        assert await repo.health_check()

    @pytest.mark.asyncio
    async def test_close_then_unhealthy(self, repo: StationRepository) -> None:
        await repo.close()
        assert not repo.is_connected
        assert not await repo.health_check()
        await repo.close()

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self, tmp_path: Path) -> None:
        missing = tmp_path / "no" / "such" / "dir" / "x.db"
        repository = StationRepository(
            f"sqlite+aiosqlite:///{missing}",
            max_connect_attempts=2,
            base_backoff_s=0.0,
        )
        with pytest.raises(PersistenceError, match="after 2 attempts"):
            await repository.connect()
        assert not repository.is_connected

    @pytest.mark.asyncio
    async def test_operations_need_connection(self, tmp_path: Path) -> None:
        repository = StationRepository(f"sqlite+aiosqlite:///{tmp_path}/x.db")
        with pytest.raises(PersistenceError, match="Not connected"):
            await repository.list_stations()

    @pytest.mark.asyncio
    async def test_reconnect(self, repo: StationRepository) -> None:
        await repo.reconnect()
        assert await repo.health_check()

    @pytest.mark.asyncio
    async def test_concurrent_reconnects_open_one_engine(self, repo: StationRepository) -> None:
        generation = repo._generation

        await asyncio.gather(repo.reconnect(), repo.reconnect(), repo.reconnect())

        assert repo._generation == generation + 1
        assert await repo.health_check()

    @pytest.mark.asyncio
    async def test_connection_error_fails_without_reconnecting(
        self, repo: StationRepository, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        reconnect = AsyncMock()
        monkeypatch.setattr(repo, "reconnect", reconnect)
        monkeypatch.setattr(
            repo,
            "_execute",
            AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("gone"))),
        )

        with pytest.raises(PersistenceError, match="connection lost"):
            await repo.list_stations()
        reconnect.assert_not_awaited()

    def test_safe_url_masks_password(self) -> None:
        url = safe_url("postgresql+asyncpg://monitor:s3cret@db:5432/power")
        assert "s3cret" not in url
        assert "monitor" in url


class TestStations:
    @pytest.mark.asyncio
    async def test_find_or_create_is_stable(self, repo: StationRepository) -> None:
        first = await repo.find_or_create_station(_identity())
        second = await repo.find_or_create_station(_identity())

        assert first.id == second.id
        assert first.endpoint == "ws://10.0.0.1:8080"
        assert first.scene == "s1"

    @pytest.mark.asyncio
    async def test_endpoint_and_scene_updated(self, repo: StationRepository) -> None:
        first = await repo.find_or_create_station(_identity())
        updated = await repo.find_or_create_station(
            _identity(endpoint="ws://10.0.0.2:8080", scene=None)
        )

        assert updated.id == first.id
        assert updated.endpoint == "ws://10.0.0.2:8080"
        assert updated.scene is None

    @pytest.mark.asyncio
    async def test_ensure_station_named(self, repo: StationRepository) -> None:
        bare = await repo.ensure_station_named("Loei")
        again = await repo.ensure_station_named("Loei")

        assert bare.id == again.id
        assert bare.endpoint is None
        assert [s.name for s in await repo.list_stations()] == ["Loei"]


class TestObjectMaps:
    @pytest.mark.asyncio
    async def test_empty_by_default(self, repo: StationRepository) -> None:
        record = await repo.find_or_create_station(_identity())
        assert await repo.get_monitored_object_map(record.id) == {}

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, repo: StationRepository) -> None:
        record = await repo.find_or_create_station(_identity())

        await repo.upsert_monitored_object_map(record.id, {"activePower1": 8684, "muxPower1": 18069})
        count = await repo.upsert_monitored_object_map(record.id, {"muxPower5": 224272})

        assert count == 1
        assert await repo.get_monitored_object_map(record.id) == {"muxPower5": 224272}

    @pytest.mark.asyncio
    async def test_order_preserved(self, repo: StationRepository) -> None:
        record = await repo.find_or_create_station(_identity())
        await repo.upsert_monitored_object_map(
            record.id, {"muxPower2": 2, "activePower1": 1, "muxPower1": 3}
        )
        stored = await repo.get_monitored_object_map(record.id)
        assert list(stored) == ["muxPower2", "activePower1", "muxPower1"]


class TestReadings:
    @pytest.mark.asyncio
    async def test_insert_maps_fields_to_columns(self, repo: StationRepository) -> None:
        record = await repo.find_or_create_station(_identity())

        assert await repo.insert_reading(
            record.id, _T0, {"activePower1": 250.5, "muxPower6": None, "frequency": 50.0}
        )

        async with repo._sessions() as session:
            row = await session.scalar(select(PowerReading))
        assert row.active_power_1 == 250.5
        assert row.mux_power_6 is None
        assert row.active_power_2 is None

    @pytest.mark.asyncio
    async def test_duplicates_skipped(self, repo: StationRepository) -> None:
        record = await repo.find_or_create_station(_identity())
        rows = [
            (record.id, _T0, {"activePower1": 1.0}),
            (record.id, _T0 + timedelta(seconds=10), {"muxPower1": 2.0}),
        ]

        assert await repo.insert_readings(rows) == 2
        assert await repo.insert_readings(rows) == 0
        assert not await repo.insert_reading(record.id, _T0, {"activePower1": 9.0})

        info = await repo.get_database_info()
        assert info == {
            "dialect": "sqlite",
            "stations": 1,
            "monitored_objects": 0,
            "readings": 2,
        }

    @pytest.mark.asyncio
    async def test_empty_batch(self, repo: StationRepository) -> None:
        assert await repo.insert_readings([]) == 0
