"""
Tests for the HTTP JSON client and the HTTP-poll supervisor.

Tests verify:
- HttpJsonClient returns JSON objects and maps non-200, invalid JSON,
  non-object bodies and network errors to TransportError.
- A successful poll reaches STREAMING and persists the aliased fields.
- A failed poll is DEGRADED and retried on the next tick.
- max_poll_failures consecutive failures make the poller terminal.
- A success in between resets the failure count.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
import pytest
from conftest import InMemoryRepository
from monitor.src.errors import TransportError
from monitor.src.models import SessionState, StationIdentity
from monitor.src.pipeline import ReadingPipeline
from monitor.src.registry import ObjectMapRegistry, ObjectTables
from monitor.src.supervisor import HttpPollSupervisor
from monitor.src.transport import HttpJsonClient

Handler = Callable[[httpx.Request], httpx.Response]


def _client(handler: Handler) -> HttpJsonClient:
    return HttpJsonClient(timeout=1.0, transport=httpx.MockTransport(handler))


def _poller(
    station: StationIdentity,
    tables: ObjectTables,
    handler: Handler,
    repo: InMemoryRepository | None = None,
    *,
    max_failures: int = 3,
) -> HttpPollSupervisor:
    registry = ObjectMapRegistry(station.name, tables, repo)
    pipeline = ReadingPipeline(station, registry, repo, persist_interval_s=0.0)
    return HttpPollSupervisor(
        station,
        pipeline,
        client=_client(handler),
        poll_interval_s=0.01,
        max_poll_failures=max_failures,
        shutdown_grace_s=0.5,
    )


class TestHttpJsonClient:
    @pytest.mark.asyncio
    async def test_returns_object(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"mux1": 1.0}))
        assert await client.get_json("http://station/data") == {"mux1": 1.0}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_sends_user_agent(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        client = _client(handler)
        await client.get_json("http://station/data")
        assert seen[0].headers["User-Agent"].startswith("PowerMonitor")
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("response", "match"),
        [
            (httpx.Response(503, text="busy"), "HTTP 503"),
            (httpx.Response(200, text="<html>"), "Invalid JSON"),
            (httpx.Response(200, json=[1, 2]), "Expected a JSON object"),
        ],
    )
    async def test_bad_responses(self, response: httpx.Response, match: str) -> None:
        client = _client(lambda request: response)
        with pytest.raises(TransportError, match=match) as exc_info:
            await client.get_json("http://station/data")
        assert exc_info.value.endpoint == "http://station/data"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(refuse)
        with pytest.raises(TransportError, match="failed"):
            await client.get_json("http://station/data")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(slow)
        with pytest.raises(TransportError, match="timed out"):
            await client.get_json("http://station/data")
        await client.aclose()


class TestHttpPollSupervisor:
    """Timer-driven fetches feed the pipeline."""

    @pytest.mark.asyncio
    async def test_successful_poll_streams(
        self,
        http_station: StationIdentity,
        tables: ObjectTables,
        repository: InMemoryRepository,
    ) -> None:
        poller = _poller(
            http_station,
            tables,
            lambda request: httpx.Response(200, json={"mux1": "1500.5", "power2": 320}),
            repository,
        )

        state = await poller.start()

        assert state is SessionState.STREAMING
        assert poller.last_fetch_at is not None
        assert repository.readings[0][2] == {"muxPower1": 1500.5, "activePower2": 320.0}
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_unchanged_documents_written_once(
        self,
        http_station: StationIdentity,
        tables: ObjectTables,
        repository: InMemoryRepository,
    ) -> None:
        poller = _poller(
            http_station,
            tables,
            lambda request: httpx.Response(200, json={"mux1": 10}),
            repository,
        )
        await poller.start()
        await asyncio.sleep(0.1)
        await poller.aclose()

        assert poller.pipeline.frames_processed > 1
        assert len(repository.readings) == 1

    @pytest.mark.asyncio
    async def test_failed_poll_degraded(
        self, http_station: StationIdentity, tables: ObjectTables
    ) -> None:
        poller = _poller(http_station, tables, lambda request: httpx.Response(500))

        state = await poller.start()

        assert state is SessionState.DEGRADED
        assert poller.attempts >= 1
        assert "HTTP 500" in poller.last_error
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_stops_after_max_failures(
        self, http_station: StationIdentity, tables: ObjectTables
    ) -> None:
        calls: list[int] = []

        def failing(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(502)

        poller = _poller(http_station, tables, failing, max_failures=3)
        await poller.start()
        await asyncio.wait_for(poller.wait_stopped(), timeout=2.0)

        assert len(calls) == 3
        assert poller.terminal
        assert poller.state is SessionState.DISCONNECTED
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_success_resets_failures(
        self, http_station: StationIdentity, tables: ObjectTables
    ) -> None:
        responses = iter([500, 500, 200, 500, 500])

        def flaky(request: httpx.Request) -> httpx.Response:
            status = next(responses, 200)
            return httpx.Response(status, json={"power1": status})

        poller = _poller(http_station, tables, flaky, max_failures=3)

        assert not await poller.poll_once()
        assert not await poller.poll_once()
        assert await poller.poll_once()
        assert poller.attempts == 0
        assert not await poller.poll_once()
        assert poller.attempts == 1
        assert not poller.terminal
        await poller.aclose()

    def test_requires_http_transport(
        self, socket_station: StationIdentity, tables: ObjectTables
    ) -> None:
        with pytest.raises(ValueError):
            _poller(socket_station, tables, lambda request: httpx.Response(200))
