"""
StationRepository: the persistence collaborator of the monitor.

Wraps a pooled async engine behind a narrow interface:

- ``find_or_create_station`` / ``ensure_station_named``
- ``get_monitored_object_map`` / ``upsert_monitored_object_map``
- ``insert_reading`` / ``insert_readings``
- ``health_check`` / ``get_database_info``

Every operation opens its own session from the pool, so station supervisors
may call it concurrently. Every database failure is raised as
``PersistenceError`` without sleeping; reconnecting is left to the caller
(see ``reconnect``), so a store outage never stalls a station.

Readings are inserted with ``INSERT ... ON CONFLICT (station_id, ts) DO
NOTHING`` on SQLite and PostgreSQL, so replaying a batch never duplicates
rows.

CHANGELOG:
- 2026-10-18: Fail fast on connection errors; skip redundant queued reconnects
- 2026-10-18: Reconnect and retry once on connection-level failures
- 2026-10-18: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError

from monitor.src.db.models import (
    FIELD_COLUMNS,
    Base,
    PowerReading,
    Station,
    StationMonitoredObject,
)
from monitor.src.db.session import create_engine, create_session_factory, safe_url
from monitor.src.errors import PersistenceError
from monitor.src.models import StationRecord

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from monitor.src.models import StationIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")

ReadingRow = tuple[int, datetime, Mapping[str, float | None]]
"""``(station_id, timestamp, {field: value})`` as accepted by ``insert_readings``."""

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_BACKOFF_S: float = 1.0
"""Initial delay after the first failed connection attempt."""

MAX_BACKOFF_S: float = 30.0
"""Cap for the exponential connection backoff."""


def _to_record(station: Station) -> StationRecord:
    return StationRecord(
        id=station.id,
        name=station.name,
        endpoint=station.endpoint,
        scene=station.scene,
    )


def _reading_row(
    station_id: int,
    ts: datetime,
    fields: Mapping[str, float | None],
) -> dict[str, Any]:
    """Map semantic fields onto ``power_readings`` columns.

    Fields without a column are dropped with a warning.
    """
    row: dict[str, Any] = {"station_id": station_id, "ts": ts}
    for field_name, value in fields.items():
        column = FIELD_COLUMNS.get(field_name)
        if column is None:
            logger.warning("No column for field %s, dropping it", field_name)
            continue
        row[column] = value
    return row


class StationRepository:
    """Async SQLAlchemy store for stations, object maps, and readings.

    Args:
        database_url: SQLAlchemy async URL.
        max_connect_attempts: Connection attempts made by :meth:`connect`
            before giving up.
        base_backoff_s: First backoff delay; doubles per failed attempt.
    """

    def __init__(
        self,
        database_url: str,
        *,
        max_connect_attempts: int = 5,
        base_backoff_s: float = BASE_BACKOFF_S,
    ) -> None:
        self._url = database_url
        self._max_connect_attempts = max(1, max_connect_attempts)
        self._base_backoff_s = base_backoff_s
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None
        self._reconnect_lock = asyncio.Lock()
        self._generation = 0

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    # -- Connection lifecycle ---------------------------------------------------

    async def connect(self) -> None:
        """Open the engine and verify it with ``SELECT 1``.

        Retries with exponential backoff (``base_backoff_s * 2**n``, capped at
        ``MAX_BACKOFF_S``).

        Raises:
            PersistenceError: If every attempt failed.
        """
        for attempt in range(1, self._max_connect_attempts + 1):
            engine = create_engine(self._url)
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except (SQLAlchemyError, OSError) as exc:
                await engine.dispose()
                if attempt == self._max_connect_attempts:
                    raise PersistenceError(
                        f"Cannot connect to {safe_url(self._url)} "
                        f"after {attempt} attempts: {exc}"
                    ) from exc
                delay = min(self._base_backoff_s * (2 ** (attempt - 1)), MAX_BACKOFF_S)
                logger.warning(
                    "Database connection attempt %d/%d failed, retrying in %.1fs: %s",
                    attempt,
                    self._max_connect_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                continue

            self._engine = engine
            self._sessions = create_session_factory(engine)
            self._generation += 1
            logger.info("Connected to database %s", safe_url(self._url))
            return

    async def close(self) -> None:
        """Dispose of the engine. Safe to call when not connected."""
        engine, self._engine, self._sessions = self._engine, None, None
        if engine is not None:
            await engine.dispose()
            logger.info("Database connection closed")

    async def reconnect(self) -> None:
        """Close and reopen the engine.

        Callers that queued behind a reconnect which already produced a new
        engine return without replacing it again.
        """
        generation = self._generation
        async with self._reconnect_lock:
            if self._generation != generation and self._engine is not None:
                logger.debug("Database already reconnected, skipping")
                return
            logger.info("Reconnecting to database %s", safe_url(self._url))
            await self.close()
            await self.connect()

    async def health_check(self) -> bool:
        """Return True when ``SELECT 1`` succeeds."""
        if self._engine is None:
            return False
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError):
            logger.warning("Database health check failed", exc_info=True)
            return False
        return True

    async def create_schema(self) -> None:
        """Create any missing tables."""
        if self._engine is None:
            raise PersistenceError("Not connected")
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Schema creation failed: {exc}") from exc

    # -- Operation runner ---------------------------------------------------------

    async def _execute(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        if self._sessions is None:
            raise PersistenceError("Not connected")
        async with self._sessions() as session:
            return await operation(session)

    async def _run(
        self,
        name: str,
        operation: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """Run *operation* in its own session."""
        try:
            return await self._execute(operation)
        except (OperationalError, InterfaceError) as exc:
            raise PersistenceError(f"{name} failed, connection lost: {exc}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{name} failed: {exc}") from exc

    # -- Stations -----------------------------------------------------------------

    async def find_or_create_station(self, identity: StationIdentity) -> StationRecord:
        """Return the station row for *identity*, creating it if needed.

        The endpoint and scene are updated when the configuration changed;
        the name never is.
        """

        async def op(session: AsyncSession) -> StationRecord:
            station = await session.scalar(select(Station).where(Station.name == identity.name))
            if station is None:
                station = Station(
                    name=identity.name,
                    endpoint=identity.endpoint,
                    scene=identity.scene,
                )
                session.add(station)
                await session.commit()
                logger.info("[%s] Created station record %d", identity.name, station.id)
            elif station.endpoint != identity.endpoint or station.scene != identity.scene:
                logger.info(
                    "[%s] Updating station endpoint %s -> %s, scene %s -> %s",
                    identity.name,
                    station.endpoint,
                    identity.endpoint,
                    station.scene,
                    identity.scene,
                )
                station.endpoint = identity.endpoint
                station.scene = identity.scene
                await session.commit()
            return _to_record(station)

        return await self._run("find_or_create_station", op)

    async def ensure_station_named(self, name: str) -> StationRecord:
        """Return the station called *name*, creating a bare row if needed."""

        async def op(session: AsyncSession) -> StationRecord:
            station = await session.scalar(select(Station).where(Station.name == name))
            if station is None:
                station = Station(name=name)
                session.add(station)
                await session.commit()
                logger.info("[%s] Created station record %d", name, station.id)
            return _to_record(station)

        return await self._run("ensure_station_named", op)

    async def list_stations(self) -> list[StationRecord]:
        """Return every station, ordered by name."""

        async def op(session: AsyncSession) -> list[StationRecord]:
            result = await session.scalars(select(Station).order_by(Station.name))
            return [_to_record(s) for s in result]

        return await self._run("list_stations", op)

    # -- Monitored objects ----------------------------------------------------------

    async def get_monitored_object_map(self, station_id: int) -> dict[str, int]:
        """Return the stored field -> raw id map; empty means "use the default"."""

        async def op(session: AsyncSession) -> dict[str, int]:
            result = await session.scalars(
                select(StationMonitoredObject)
                .where(StationMonitoredObject.station_id == station_id)
                .order_by(StationMonitoredObject.id)
            )
            return {row.object_type: row.object_id for row in result}

        return await self._run("get_monitored_object_map", op)

    async def upsert_monitored_object_map(
        self,
        station_id: int,
        mapping: Mapping[str, int],
    ) -> int:
        """Replace the station's stored map with *mapping*.

        Returns:
            Number of objects stored.
        """

        async def op(session: AsyncSession) -> int:
            await session.execute(
                delete(StationMonitoredObject).where(
                    StationMonitoredObject.station_id == station_id
                )
            )
            session.add_all(
                StationMonitoredObject(
                    station_id=station_id,
                    object_type=field_name,
                    object_id=int(raw_id),
                )
                for field_name, raw_id in mapping.items()
            )
            await session.commit()
            return len(mapping)

        count = await self._run("upsert_monitored_object_map", op)
        logger.info("Stored %d monitored objects for station %d", count, station_id)
        return count

    # -- Readings -------------------------------------------------------------------

    async def insert_reading(
        self,
        station_id: int,
        ts: datetime,
        fields: Mapping[str, float | None],
    ) -> bool:
        """Insert one reading.

        Returns:
            False when a reading for the same station and timestamp already
            existed.
        """
        return await self.insert_readings([(station_id, ts, fields)]) > 0

    async def insert_readings(self, rows: Sequence[ReadingRow]) -> int:
        """Insert a batch of readings, skipping (station_id, ts) duplicates.

        Returns:
            Number of rows actually inserted.
        """
        if not rows:
            return 0
        values = [_reading_row(station_id, ts, fields) for station_id, ts, fields in rows]
        # A multi-row VALUES clause needs the same columns in every row.
        columns = {column for row in values for column in row}
        values = [{column: row.get(column) for column in columns} for row in values]

        async def op(session: AsyncSession) -> int:
            dialect = session.get_bind().dialect.name
            if dialect == "postgresql":
                insert_fn = pg_insert
            elif dialect == "sqlite":
                insert_fn = sqlite_insert
            else:
                return await self._insert_one_by_one(session, values)

            stmt = (
                insert_fn(PowerReading)
                .values(values)
                .on_conflict_do_nothing(index_elements=["station_id", "ts"])
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

        inserted = await self._run("insert_readings", op)
        logger.debug("Inserted %d/%d readings", inserted, len(values))
        return inserted

    @staticmethod
    async def _insert_one_by_one(session: AsyncSession, values: list[dict[str, Any]]) -> int:
        """Portable fallback for dialects without ``ON CONFLICT``."""
        inserted = 0
        for row in values:
            try:
                async with session.begin_nested():
                    session.add(PowerReading(**row))
                inserted += 1
            except IntegrityError:
                logger.debug("Skipping duplicate reading %s@%s", row["station_id"], row["ts"])
        await session.commit()
        return inserted

    # -- Introspection ----------------------------------------------------------------

    async def get_database_info(self) -> dict[str, Any]:
        """Return row counts and the dialect in use."""

        async def op(session: AsyncSession) -> dict[str, Any]:
            stations = await session.scalar(select(func.count()).select_from(Station))
            objects = await session.scalar(
                select(func.count()).select_from(StationMonitoredObject)
            )
            readings = await session.scalar(select(func.count()).select_from(PowerReading))
            return {
                "dialect": session.get_bind().dialect.name,
                "stations": stations or 0,
                "monitored_objects": objects or 0,
                "readings": readings or 0,
            }

        return await self._run("get_database_info", op)
