"""
Per-station connection supervisors.

``ConnectionSupervisor`` owns the WebSocket session of one socket station and
drives its ``SessionState`` machine from a single supervising task::

    disconnected -> connecting -> handshaking -> streaming
                         ^                          |
                         |      (close / error)     v
                         +------------------- degraded
                                                     |
                           (budget exhausted / stop) v
                                                disconnected

Every attempt starts from scratch: the station record and object map are
looked up again, a new channel is opened and the full handshake runs from
step 1 with no leftover session token. A failed attempt increments the
consecutive-failure counter and waits ``reconnect_delay_s``; reaching
``max_reconnect_attempts`` consecutive failures makes the station terminal
(``disconnected``, never retried). Reaching ``streaming`` resets the counter.

``HttpPollSupervisor`` is the timer-driven counterpart for HTTP data
endpoints: fetch, hand to the pipeline, sleep until the next tick. A single
failed fetch is logged and retried on the next tick; ``max_poll_failures``
consecutive failures stop the poller.

``stop()`` cancels the supervising task, which unblocks any pending receive,
handshake wait, or reconnect delay at once. Closing the transport is bounded
by ``shutdown_grace_s``; after that the transport is abandoned.

CHANGELOG:
- 2026-10-18: Add HttpPollSupervisor for HTTP data endpoints (STORY-009)
- 2026-10-18: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from monitor.src.errors import ProtocolError, RetryBudgetExhausted, TransportError
from monitor.src.models import RawTelemetryFrame, SessionState, StationSnapshot
from monitor.src.protocol import SessionProtocol
from monitor.src.transport import HttpJsonClient, open_websocket

if TYPE_CHECKING:
    from monitor.src.models import StationIdentity
    from monitor.src.pipeline import ReadingPipeline
    from monitor.src.registry import ObjectMapRegistry
    from monitor.src.transport import ChannelFactory, MessageChannel

logger = logging.getLogger(__name__)


class _SupervisorBase:
    """State, task, and snapshot plumbing shared by both supervisors."""

    transport_kind: str = ""

    def __init__(
        self,
        identity: StationIdentity,
        pipeline: ReadingPipeline,
        *,
        shutdown_grace_s: float,
    ) -> None:
        self._identity = identity
        self._pipeline = pipeline
        self._shutdown_grace_s = shutdown_grace_s

        self._state = SessionState.DISCONNECTED
        self._failures: int = 0
        self._last_error: str | None = None
        self._terminal = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._settled = asyncio.Event()

    # -- Observers --------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._identity.name

    @property
    def identity(self) -> StationIdentity:
        return self._identity

    @property
    def pipeline(self) -> ReadingPipeline:
        return self._pipeline

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def attempts(self) -> int:
        """Consecutive failures since the last successful attempt."""
        return self._failures

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def terminal(self) -> bool:
        """True once the retry budget is exhausted; the station is never retried."""
        return self._terminal

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> StationSnapshot:
        return StationSnapshot(
            station=self.name,
            transport=self.transport_kind,
            state=self._state,
            attempts=self._failures,
            last_error=self._last_error,
            terminal=self._terminal,
            reading=self._pipeline.last_reading,
        )

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("[%s] %s -> %s", self.name, self._state.value, state.value)
            self._state = state

    # -- Lifecycle --------------------------------------------------------------

    async def start(self) -> SessionState:
        """Start supervising and wait for the first attempt to settle.

        Returns once the station is streaming or its first attempt failed.
        Never raises for transport or protocol failures.

        Returns:
            The state after the first attempt.
        """
        if self._terminal:
            logger.warning("[%s] Retry budget exhausted earlier, not starting", self.name)
            return self._state
        if not self.running:
            self._stop_event = asyncio.Event()
            self._settled = asyncio.Event()
            self._task = asyncio.create_task(self._supervise(), name=f"supervisor:{self.name}")
        await self._settled.wait()
        return self._state

    async def stop(self) -> None:
        """Stop the supervising task and close the transport. Idempotent."""
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=self._shutdown_grace_s + 1.0)
            if not done:
                logger.warning("[%s] Supervisor did not stop in time, abandoning it", self.name)
        await self._release()
        self._set_state(SessionState.DISCONNECTED)

    async def aclose(self) -> None:
        """Stop for good: stop the session and flush the pipeline."""
        await self.stop()
        await self._pipeline.aclose()

    async def wait_stopped(self) -> None:
        """Wait until the supervising task ends (budget exhausted or stopped)."""
        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _supervise(self) -> None:
        try:
            await self._run()
        finally:
            self._settled.set()
            await self._release()
            self._set_state(SessionState.DISCONNECTED)

    async def _sleep(self, delay: float) -> None:
        """Sleep *delay* seconds or until stop is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

    async def _run(self) -> None:
        raise NotImplementedError

    async def _release(self) -> None:
        """Free the transport; bounded by the shutdown grace period."""


# ---------------------------------------------------------------------------
# Socket stations
# ---------------------------------------------------------------------------


class ConnectionSupervisor(_SupervisorBase):
    """Supervises the WebSocket session of one socket station.

    Args:
        identity: The station; must have a socket transport.
        registry: The station's object map registry.
        pipeline: The station's reading pipeline.
        channel_factory: Opens a ``MessageChannel`` for a URL; defaults to a
            ``websockets`` connection.
        update_rate_ms: Notification cadence requested in the handshake.
        connect_timeout_s: Opening handshake timeout of the default factory.
        step_timeout_s: Bounded wait for each handshake response.
        reconnect_delay_s: Fixed delay between attempts.
        max_reconnect_attempts: Consecutive failures before giving up.
        shutdown_grace_s: Bound on closing the transport.
    """

    transport_kind = "socket"

    def __init__(
        self,
        identity: StationIdentity,
        registry: ObjectMapRegistry,
        pipeline: ReadingPipeline,
        *,
        channel_factory: ChannelFactory | None = None,
        update_rate_ms: int = 3000,
        connect_timeout_s: float = 10.0,
        step_timeout_s: float = 5.0,
        reconnect_delay_s: float = 5.0,
        max_reconnect_attempts: int = 5,
        shutdown_grace_s: float = 2.0,
    ) -> None:
        if not identity.is_socket:
            raise ValueError(f"{identity.name}: ConnectionSupervisor needs a socket transport")
        super().__init__(identity, pipeline, shutdown_grace_s=shutdown_grace_s)
        self._registry = registry
        self._protocol = SessionProtocol(identity, update_rate_ms=update_rate_ms)
        self._channel_factory = channel_factory or functools.partial(
            open_websocket,
            open_timeout=connect_timeout_s,
            close_timeout=shutdown_grace_s,
        )
        self._step_timeout_s = step_timeout_s
        self._reconnect_delay_s = reconnect_delay_s
        self._max_attempts = max(1, max_reconnect_attempts)
        self._channel: MessageChannel | None = None
        self._token: str | None = None

    @property
    def session_token(self) -> str | None:
        """Token of the current session; ``None`` outside ``streaming``."""
        return self._token

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            error = await self._attempt()
            if self._stop_event.is_set():
                break

            self._failures += 1
            self._last_error = error
            if self._failures >= self._max_attempts:
                self._terminal = True
                self._set_state(SessionState.DISCONNECTED)
                logger.error(
                    "[%s] %s (last error: %s). Restart the process to resume this station",
                    self.name,
                    RetryBudgetExhausted(self.name, self._failures),
                    error,
                )
                return

            self._set_state(SessionState.DEGRADED)
            self._settled.set()
            logger.warning(
                "[%s] Attempt failed (%d/%d): %s. Reconnecting in %.1fs",
                self.name,
                self._failures,
                self._max_attempts,
                error,
                self._reconnect_delay_s,
            )
            await self._sleep(self._reconnect_delay_s)

    async def _attempt(self) -> str:
        """Run one session from connect to loss.

        Returns:
            Description of why the session ended.
        """
        self._token = None
        self._set_state(SessionState.CONNECTING)
        try:
            record = await self._pipeline.ensure_station()
            object_map = await self._registry.load(record)

            logger.info("[%s] Connecting to %s", self.name, self._identity.endpoint)
            channel = await self._channel_factory(self._identity.endpoint)
            self._channel = channel

            self._set_state(SessionState.HANDSHAKING)
            self._token = await self._protocol.handshake(
                channel,
                object_map.object_ids(),
                step_timeout=self._step_timeout_s,
            )

            self._set_state(SessionState.STREAMING)
            self._failures = 0
            self._last_error = None
            self._settled.set()
            logger.info(
                "[%s] Streaming %d objects", self.name, len(object_map.object_ids())
            )
            await self._listen(channel)
            return "listen loop ended"
        except (TransportError, ProtocolError) as exc:
            return str(exc)
        except Exception as exc:
            logger.error("[%s] Unexpected session error", self.name, exc_info=True)
            return f"{type(exc).__name__}: {exc}"
        finally:
            self._token = None
            await self._release()

    async def _listen(self, channel: MessageChannel) -> None:
        """Route telemetry notifications to the pipeline until the channel fails."""
        while True:
            raw = await channel.recv()
            values = self._protocol.extract_sync(self._protocol.decode(raw))
            if values is None:
                continue
            frame = RawTelemetryFrame(
                station=self.name,
                received_at=datetime.now(tz=UTC),
                values=values,
            )
            try:
                await self._pipeline.process(frame)
            except Exception:
                logger.error("[%s] Failed to process frame", self.name, exc_info=True)

    async def _release(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await asyncio.wait_for(channel.close(), timeout=self._shutdown_grace_s)
        except TimeoutError:
            logger.warning("[%s] Transport close timed out, abandoning it", self.name)
        except Exception:
            logger.debug("[%s] Error while closing transport", self.name, exc_info=True)


# ---------------------------------------------------------------------------
# HTTP-polled stations
# ---------------------------------------------------------------------------


class HttpPollSupervisor(_SupervisorBase):
    """Polls the JSON data endpoint of one HTTP station on a fixed timer.

    Args:
        identity: The station; must have an HTTP-poll transport.
        pipeline: The station's reading pipeline.
        client: HTTP JSON client; one is created (and closed) if omitted.
        poll_interval_s: Seconds between fetches.
        http_timeout_s: Timeout of the client created when ``client`` is omitted.
        max_poll_failures: Consecutive failed fetches before the poller stops.
        shutdown_grace_s: Bound on closing the HTTP client.
    """

    transport_kind = "http_poll"

    def __init__(
        self,
        identity: StationIdentity,
        pipeline: ReadingPipeline,
        *,
        client: HttpJsonClient | None = None,
        poll_interval_s: float = 10.0,
        http_timeout_s: float = 10.0,
        max_poll_failures: int = 5,
        shutdown_grace_s: float = 2.0,
    ) -> None:
        if identity.is_socket:
            raise ValueError(f"{identity.name}: HttpPollSupervisor needs an HTTP-poll transport")
        super().__init__(identity, pipeline, shutdown_grace_s=shutdown_grace_s)
        self._owns_client = client is None
        self._client = client or HttpJsonClient(timeout=http_timeout_s)
        self._poll_interval_s = poll_interval_s
        self._max_failures = max(1, max_poll_failures)
        self.last_fetch_at: datetime | None = None

    async def _run(self) -> None:
        logger.info(
            "[%s] Polling %s every %.1fs",
            self.name,
            self._identity.endpoint,
            self._poll_interval_s,
        )
        self._set_state(SessionState.CONNECTING)
        await self._pipeline.ensure_station()
        while not self._stop_event.is_set():
            await self.poll_once()
            if self._failures >= self._max_failures:
                self._terminal = True
                self._set_state(SessionState.DISCONNECTED)
                logger.error(
                    "[%s] %s (last error: %s). Poller stopped",
                    self.name,
                    RetryBudgetExhausted(self.name, self._failures),
                    self._last_error,
                )
                return
            self._settled.set()
            await self._sleep(self._poll_interval_s)

    async def poll_once(self) -> bool:
        """Fetch once and hand the document to the pipeline.

        Returns:
            True when the fetch succeeded.
        """
        try:
            document = await self._client.get_json(self._identity.endpoint)
        except TransportError as exc:
            return self._record_failure(str(exc))
        except Exception as exc:
            logger.error("[%s] Unexpected fetch error", self.name, exc_info=True)
            return self._record_failure(f"{type(exc).__name__}: {exc}")

        self._failures = 0
        self._last_error = None
        self._set_state(SessionState.STREAMING)
        self.last_fetch_at = datetime.now(tz=UTC)
        frame = RawTelemetryFrame(
            station=self.name,
            received_at=self.last_fetch_at,
            values=document,
        )
        try:
            await self._pipeline.process(frame)
        except Exception:
            logger.error("[%s] Failed to process fetched data", self.name, exc_info=True)
        return True

    def _record_failure(self, error: str) -> bool:
        self._failures += 1
        self._last_error = error
        self._set_state(SessionState.DEGRADED)
        logger.warning(
            "[%s] Fetch failed (%d/%d): %s",
            self.name,
            self._failures,
            self._max_failures,
            error,
        )
        return False

    async def aclose(self) -> None:
        await super().aclose()
        if not self._owns_client:
            return
        try:
            await asyncio.wait_for(self._client.aclose(), timeout=self._shutdown_grace_s)
        except TimeoutError:
            logger.warning("[%s] HTTP client close timed out", self.name)
