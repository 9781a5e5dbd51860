"""
FleetCoordinator: owns one supervisor per station and runs them.

Two scheduling policies share the same supervisors and pipelines:

- **simultaneous**: every supervisor is started concurrently; a station that
  fails (or raises) never blocks or aborts its siblings.
- **rotation**: stations are monitored one at a time, each for
  ``rotation_window_s``, cycling until shutdown. The state at the end of each
  window is kept as that station's snapshot. Stations that exhausted their
  retry budget are skipped.

``shutdown_all`` stops every supervisor (each bounded by the shutdown grace
period), flushes pending readings and returns a ``FleetReport`` with the last
known reading per station.

CHANGELOG:
- 2026-10-18: Keep end-of-window snapshots in rotation mode
- 2026-10-18: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from monitor.src.models import (
    FleetReport,
    SessionState,
    SocketTransport,
    StationSnapshot,
)
from monitor.src.pipeline import ReadingPipeline
from monitor.src.registry import ObjectMapRegistry, load_object_tables
from monitor.src.supervisor import ConnectionSupervisor, HttpPollSupervisor
from monitor.src.transport import HttpJsonClient

if TYPE_CHECKING:
    import httpx

    from monitor.src.config import MonitorSettings
    from monitor.src.db.repository import StationRepository
    from monitor.src.models import StationIdentity
    from monitor.src.registry import ObjectTables
    from monitor.src.transport import ChannelFactory

logger = logging.getLogger(__name__)

Supervisor = ConnectionSupervisor | HttpPollSupervisor


class FleetCoordinator:
    """Builds and runs the per-station supervisors.

    Args:
        settings: Monitor configuration.
        repository: Shared persistence collaborator, or ``None`` to run
            without a store.
        tables: Object tables; loaded from ``settings.object_tables_file``
            (or the packaged copy) when omitted.
        channel_factory: Channel factory for socket stations (tests inject
            fakes); defaults to WebSocket connections.
        http_transport: Optional httpx transport for the shared HTTP client.
    """

    def __init__(
        self,
        settings: MonitorSettings,
        *,
        repository: StationRepository | None = None,
        tables: ObjectTables | None = None,
        channel_factory: ChannelFactory | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._repository = repository
        self._tables = tables or load_object_tables(settings.object_tables_file)
        self._channel_factory = channel_factory
        self._http_transport = http_transport
        self._http_client: HttpJsonClient | None = None
        self._supervisors: list[Supervisor] = []
        self._window_snapshots: dict[str, StationSnapshot] = {}
        self._mode: str = settings.monitor_mode

    @property
    def supervisors(self) -> list[Supervisor]:
        return list(self._supervisors)

    @property
    def mode(self) -> str:
        return self._mode

    def supervisor(self, name: str) -> Supervisor | None:
        for sup in self._supervisors:
            if sup.name == name:
                return sup
        return None

    # -- Construction -------------------------------------------------------------

    def initialize(self, stations: Sequence[StationIdentity]) -> list[Supervisor]:
        """Create a registry, pipeline, and supervisor for every station.

        The supervisor kind follows the transport variant decided when the
        station file was loaded.
        """
        settings = self._settings
        for identity in stations:
            registry = ObjectMapRegistry(identity.name, self._tables, self._repository)
            pipeline = ReadingPipeline(
                identity,
                registry,
                self._repository,
                persist_interval_s=settings.persist_interval_s,
            )
            if isinstance(identity.transport, SocketTransport):
                sup: Supervisor = ConnectionSupervisor(
                    identity,
                    registry,
                    pipeline,
                    channel_factory=self._channel_factory,
                    update_rate_ms=settings.update_rate_ms,
                    connect_timeout_s=settings.connect_timeout_s,
                    step_timeout_s=settings.handshake_step_timeout_s,
                    reconnect_delay_s=settings.reconnect_delay_s,
                    max_reconnect_attempts=settings.max_reconnect_attempts,
                    shutdown_grace_s=settings.shutdown_grace_s,
                )
            else:
                sup = HttpPollSupervisor(
                    identity,
                    pipeline,
                    client=self._shared_http_client(),
                    poll_interval_s=settings.http_poll_interval_s,
                    max_poll_failures=settings.max_poll_failures,
                    shutdown_grace_s=settings.shutdown_grace_s,
                )
            self._supervisors.append(sup)
            logger.info(
                "[%s] Configured %s station at %s",
                identity.name,
                sup.transport_kind,
                identity.endpoint,
            )
        return self.supervisors

    def _shared_http_client(self) -> HttpJsonClient:
        if self._http_client is None:
            self._http_client = HttpJsonClient(
                timeout=self._settings.http_timeout_s,
                transport=self._http_transport,
            )
        return self._http_client

    # -- Scheduling -----------------------------------------------------------------

    async def _start_one(self, sup: Supervisor) -> SessionState:
        try:
            return await sup.start()
        except Exception:
            logger.error("[%s] Failed to start", sup.name, exc_info=True)
            return sup.state

    async def run_all(self) -> dict[str, SessionState]:
        """Start every supervisor concurrently.

        Returns:
            Station name -> state after its first attempt.
        """
        self._mode = "simultaneous"
        logger.info("Starting %d stations simultaneously", len(self._supervisors))
        states = await asyncio.gather(*(self._start_one(s) for s in self._supervisors))
        result = {sup.name: state for sup, state in zip(self._supervisors, states, strict=True)}
        streaming = sum(1 for state in states if state is SessionState.STREAMING)
        logger.info("%d/%d stations streaming", streaming, len(states))
        return result

    async def run_rotation(self, stop_event: asyncio.Event) -> None:
        """Monitor one station at a time until *stop_event* is set."""
        self._mode = "rotation"
        window = self._settings.rotation_window_s
        logger.info(
            "Rotating over %d stations, %.0fs per station", len(self._supervisors), window
        )
        while not stop_event.is_set():
            active = [s for s in self._supervisors if not s.terminal]
            if not active:
                logger.error("Every station exhausted its retry budget, rotation stopped")
                return
            for sup in active:
                if stop_event.is_set():
                    break
                await self._run_window(sup, window, stop_event)

    async def _run_window(
        self,
        sup: Supervisor,
        window: float,
        stop_event: asyncio.Event,
    ) -> None:
        logger.info("[%s] Rotation window started", sup.name)
        await self._start_one(sup)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=window)
        snapshot = sup.snapshot()
        self._window_snapshots[sup.name] = snapshot
        await sup.stop()
        logger.info(
            "[%s] Rotation window ended: state=%s, fields=%d",
            sup.name,
            snapshot.state.value,
            len(snapshot.reading.fields) if snapshot.reading else 0,
        )

    # -- Reporting and shutdown -------------------------------------------------------

    def snapshot(self) -> FleetReport:
        """Current state and last reading of every station."""
        stations: list[StationSnapshot] = []
        for sup in self._supervisors:
            live = sup.snapshot()
            window = self._window_snapshots.get(sup.name)
            if window is not None and not sup.running:
                live = window.model_copy(
                    update={"reading": live.reading or window.reading, "terminal": live.terminal}
                )
            stations.append(live)
        return FleetReport(generated_at=datetime.now(tz=UTC), mode=self._mode, stations=stations)

    async def shutdown_all(self) -> FleetReport:
        """Stop every supervisor and return the final report.

        Never raises: a station that fails to stop is logged and still
        reported.
        """
        logger.info("Stopping %d stations", len(self._supervisors))
        results = await asyncio.gather(
            *(sup.aclose() for sup in self._supervisors),
            return_exceptions=True,
        )
        for sup, result in zip(self._supervisors, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("[%s] Error during shutdown: %r", sup.name, result)

        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

        report = self.snapshot()
        log_report(report)
        return report


def log_report(report: FleetReport) -> None:
    """Log the per-station summary of *report*."""
    logger.info("Final report (%s mode, %d stations)", report.mode, len(report.stations))
    for snap in report.stations:
        if snap.reading is None:
            logger.info(
                "[%s] state=%s attempts=%d last_error=%s: no reading",
                snap.station,
                snap.state.value,
                snap.attempts,
                snap.last_error,
            )
            continue
        logger.info(
            "[%s] state=%s at %s: %s",
            snap.station,
            snap.state.value,
            snap.reading.ts.isoformat(),
            ", ".join(f"{k}={v}" for k, v in snap.reading.fields.items()),
        )
