"""
ReadingPipeline: validate, normalize, merge, dedupe, and persist readings.

One pipeline per station. Frames are processed strictly in arrival order by
the owning supervisor, so dedupe and debounce decisions are never raced.

Stages for each raw frame:

1. **validate**: advisory warnings only; an empty frame is skipped.
2. **normalize**: raw keys resolved through the station's registry.
3. **merge**: notifications may carry only the objects that changed, so the
   normalized fields are layered onto the station's current state. Fields
   absent from a frame keep their last value.
4. **dedupe**: a merged reading identical to the previous one is dropped.
5. **persist**: at most one write per ``persist_interval_s``. A reading
   outside the window is written immediately; readings inside the window
   replace a single pending reading that a timer writes when the window
   closes, so the most recent one wins.

Persistence failures are logged, the reading is dropped, and a background
reconnect of the store is started. Nothing here raises into the supervisor.

CHANGELOG:
- 2026-10-18: Count readings the store already held as duplicates, not writes
- 2026-10-18: Merge partial notification frames onto the station state
- 2026-10-18: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from monitor.src.models import NormalizedReading
from monitor.src.normalizer import normalize, validate

if TYPE_CHECKING:
    from monitor.src.models import RawTelemetryFrame, StationIdentity, StationRecord
    from monitor.src.registry import ObjectMapRegistry

logger = logging.getLogger(__name__)


class ReadingStore(Protocol):
    """The slice of the persistence collaborator the pipeline uses."""

    async def find_or_create_station(self, identity: StationIdentity) -> StationRecord: ...

    async def insert_reading(
        self,
        station_id: int,
        ts: datetime,
        fields: Mapping[str, float | None],
    ) -> bool: ...

    async def health_check(self) -> bool: ...

    async def reconnect(self) -> None: ...


def dedupe(reading: NormalizedReading, previous: NormalizedReading | None) -> bool:
    """Return True when *reading* differs from *previous*.

    Any field value change counts, including null <-> number transitions and
    fields appearing or disappearing.
    """
    return not reading.same_values(previous)


class ReadingPipeline:
    """Per-station processing of raw frames into persisted readings.

    Args:
        identity: The station.
        registry: The station's object map registry.
        repository: Persistence collaborator, or ``None`` to keep readings
            in memory only.
        persist_interval_s: Debounce window between writes.
        clock: Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        identity: StationIdentity,
        registry: ObjectMapRegistry,
        repository: ReadingStore | None = None,
        *,
        persist_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._identity = identity
        self._registry = registry
        self._repository = repository
        self._persist_interval_s = persist_interval_s
        self._clock = clock

        self._record: StationRecord | None = None
        self._state: dict[str, float | None] = {}
        self._last_reading: NormalizedReading | None = None
        self._last_persisted: NormalizedReading | None = None
        self._last_write_at: float | None = None
        self._pending: NormalizedReading | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

        self.frames_processed: int = 0
        self.readings_written: int = 0
        self.unchanged_skipped: int = 0
        self.write_failures: int = 0
        self.duplicates_skipped: int = 0

    @property
    def name(self) -> str:
        return self._identity.name

    @property
    def last_reading(self) -> NormalizedReading | None:
        """Most recent merged reading, persisted or not."""
        return self._last_reading

    @property
    def last_persisted(self) -> NormalizedReading | None:
        return self._last_persisted

    @property
    def pending(self) -> NormalizedReading | None:
        """Reading waiting for the current debounce window to close."""
        return self._pending

    # -- Station record -------------------------------------------------------

    async def ensure_station(self) -> StationRecord | None:
        """Look up (or create) the station row once; ``None`` if the store is down."""
        if self._record is not None or self._repository is None:
            return self._record
        try:
            self._record = await self._repository.find_or_create_station(self._identity)
        except Exception:
            logger.warning("[%s] Station lookup failed", self.name, exc_info=True)
            self._schedule_reconnect()
            return None
        return self._record

    # -- Stages -----------------------------------------------------------------

    def merge(self, reading: NormalizedReading) -> NormalizedReading:
        """Layer *reading* onto the station's current field state."""
        self._state.update(reading.fields)
        return NormalizedReading(
            station=reading.station,
            ts=reading.ts,
            fields=dict(sorted(self._state.items())),
        )

    async def process(self, frame: RawTelemetryFrame) -> NormalizedReading | None:
        """Run one raw frame through every stage.

        Returns:
            The merged reading when it changed and was handed to
            :meth:`persist`, otherwise ``None``.
        """
        self.frames_processed += 1
        result = validate(frame, self._registry)
        if result.warnings:
            logger.debug("[%s] Frame warnings: %s", self.name, "; ".join(result.warnings))
        if not result.ok:
            return None

        reading = self.merge(normalize(frame, self._registry))
        if not reading.fields:
            return None

        previous, self._last_reading = self._last_reading, reading
        if not dedupe(reading, previous):
            self.unchanged_skipped += 1
            logger.debug("[%s] No change, skipping reading", self.name)
            return None

        await self.persist(reading)
        return reading

    async def persist(self, reading: NormalizedReading) -> None:
        """Write *reading* now, or hold it until the debounce window closes."""
        now = self._clock()
        if self._last_write_at is None or now - self._last_write_at >= self._persist_interval_s:
            self._pending = None
            self._cancel_flush()
            await self._write(reading)
            return

        self._pending = reading
        if self._flush_task is None or self._flush_task.done():
            delay = self._persist_interval_s - (now - self._last_write_at)
            self._flush_task = asyncio.create_task(self._flush_after(delay))

    async def flush(self) -> None:
        """Write the pending reading immediately, if any."""
        self._cancel_flush()
        reading, self._pending = self._pending, None
        if reading is not None:
            await self._write(reading)

    async def aclose(self) -> None:
        """Flush the pending reading and stop background tasks."""
        await self.flush()
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
        self._reconnect_task = None

    # -- Internals --------------------------------------------------------------

    def _cancel_flush(self) -> None:
        task, self._flush_task = self._flush_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _flush_after(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))
        reading, self._pending = self._pending, None
        self._flush_task = None
        if reading is not None:
            await self._write(reading)

    async def _write(self, reading: NormalizedReading) -> bool:
        self._last_write_at = self._clock()
        if self._repository is None:
            self._last_persisted = reading
            return True

        record = await self.ensure_station()
        if record is None:
            self.write_failures += 1
            logger.warning("[%s] Store unavailable, reading at %s lost", self.name, reading.ts)
            return False

        try:
            inserted = await self._repository.insert_reading(record.id, reading.ts, reading.fields)
        except Exception:
            self.write_failures += 1
            logger.error(
                "[%s] Failed to save reading at %s", self.name, reading.ts, exc_info=True
            )
            self._schedule_reconnect()
            return False

        self._last_persisted = reading
        if not inserted:
            self.duplicates_skipped += 1
            logger.debug(
                "[%s] Reading at %s already stored, nothing written",
                self.name,
                reading.ts.isoformat(),
            )
            return False

        self.readings_written += 1
        logger.info(
            "[%s] Saved reading at %s (%d fields)",
            self.name,
            reading.ts.isoformat(),
            len(reading.fields),
        )
        return True

    def _schedule_reconnect(self) -> None:
        if self._repository is None:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_store())

    async def _reconnect_store(self) -> None:
        if self._repository is None:
            return
        try:
            if await self._repository.health_check():
                return
            await self._repository.reconnect()
        except Exception:
            logger.warning(
                "[%s] Store reconnect failed, next write will retry",
                self.name,
                exc_info=True,
            )
            return
        logger.info("[%s] Store reconnected", self.name)
