"""
Shared test fixtures for the power monitor tests.

Provides:
- Environment isolation for MonitorSettings (every monitor env var removed,
  working directory moved to tmp_path so no .env file is loaded).
- ``ScriptedChannel``: an in-memory MessageChannel that answers handshake
  requests through a responder function and lets tests push notifications.
- ``InMemoryRepository``: a dict-backed persistence collaborator with
  switchable failures.
- Station identity and object table fixtures.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import pytest
from monitor.src.errors import PersistenceError, TransportError
from monitor.src.models import StationIdentity, StationRecord
from monitor.src.registry import ObjectTables, load_object_tables

# All MonitorSettings environment variable names, used for cleanup.
_ALL_MONITOR_ENV_VARS = (
    "STATIONS_FILE",
    "DATABASE_URL",
    "DB_CONNECT_ATTEMPTS",
    "MONITOR_MODE",
    "UPDATE_RATE_MS",
    "CONNECT_TIMEOUT_S",
    "HANDSHAKE_STEP_TIMEOUT_S",
    "RECONNECT_DELAY_S",
    "MAX_RECONNECT_ATTEMPTS",
    "PERSIST_INTERVAL_S",
    "HTTP_POLL_INTERVAL_S",
    "HTTP_TIMEOUT_S",
    "MAX_POLL_FAILURES",
    "ROTATION_WINDOW_S",
    "SHUTDOWN_GRACE_S",
    "OBJECT_TABLES_FILE",
    "HEALTH_PATH",
    "STATUS_INTERVAL_S",
    "CREATE_SCHEMA",
    "LOG_LEVEL",
)

SESSION_TOKEN = "usid-0123456789abcdef"


@pytest.fixture(autouse=True)
def _clean_monitor_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all monitor env vars and isolate from .env files before each test."""
    for var in _ALL_MONITOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Fake control channel
# ---------------------------------------------------------------------------

Responder = Callable[[dict[str, Any]], list[dict[str, Any]]]

_CLOSED = object()


def default_responder(request: dict[str, Any]) -> list[dict[str, Any]]:
    """Answer every handshake request the way a healthy station does."""
    method = request["method"]
    if method in ("comet.restoreSession", "comet.signIn"):
        result: Any = {"USID": SESSION_TOKEN}
    elif method in ("ScriptEngine.loadScriptInfo", "ScriptEngine.loadDashboards"):
        result = {"items": []}
    elif method == "ScriptEngine.loadScene":
        result = {"scene": request["params"][0]}
    else:
        result = True
    return [{"id": request["id"], "result": result}]


def notification(values: Mapping[str, Any], provider: str = "ScriptEngine") -> dict[str, Any]:
    """Build a telemetry notification envelope."""
    return {"notification": {"provider": provider, "value": {"sync": dict(values)}}}


class ScriptedChannel:
    """In-memory MessageChannel driven by a responder function.

    Every ``send`` is decoded and recorded in ``sent``; the responder's
    answers are queued for ``recv``. ``push`` queues an arbitrary inbound
    message and ``drop`` makes the next ``recv`` fail like a closed socket.
    """

    def __init__(self, responder: Responder | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._responder = responder or default_responder
        self._inbox: asyncio.Queue[object] = asyncio.Queue()

    @property
    def methods(self) -> list[str]:
        return [req["method"] for req in self.sent]

    async def send(self, text: str) -> None:
        if self.closed:
            raise TransportError("channel closed")
        assert text.endswith("\n")
        request = json.loads(text)
        self.sent.append(request)
        for response in self._responder(request):
            self._inbox.put_nowait(json.dumps(response))

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise TransportError("channel closed")
        assert isinstance(item, str)
        return item

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def push(self, message: Mapping[str, Any] | str) -> None:
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        self._inbox.put_nowait(_CLOSED)


class ChannelFactoryStub:
    """Channel factory handing out ScriptedChannels (or raising) per call."""

    def __init__(
        self,
        responder: Responder | None = None,
        *,
        fail_with: Exception | None = None,
    ) -> None:
        self.responder = responder
        self.fail_with = fail_with
        self.calls: list[str] = []
        self.channels: list[ScriptedChannel] = []

    async def __call__(self, url: str) -> ScriptedChannel:
        self.calls.append(url)
        if self.fail_with is not None:
            raise self.fail_with
        channel = ScriptedChannel(self.responder)
        self.channels.append(channel)
        return channel


# ---------------------------------------------------------------------------
# Fake persistence collaborator
# ---------------------------------------------------------------------------


class InMemoryRepository:
    """Dict-backed StationRepository stand-in."""

    def __init__(self) -> None:
        self.stations: dict[str, StationRecord] = {}
        self.maps: dict[int, dict[str, int]] = {}
        self.readings: list[tuple[int, datetime, dict[str, float | None]]] = []
        self.fail_inserts = False
        self.fail_lookups = False
        self.duplicate_inserts = False
        self.healthy = True
        self.reconnects = 0

    async def find_or_create_station(self, identity: StationIdentity) -> StationRecord:
        if self.fail_lookups:
            raise PersistenceError("store down")
        record = self.stations.get(identity.name)
        if record is None:
            record = StationRecord(
                id=len(self.stations) + 1,
                name=identity.name,
                endpoint=identity.endpoint,
                scene=identity.scene,
            )
            self.stations[identity.name] = record
        return record

    async def get_monitored_object_map(self, station_id: int) -> dict[str, int]:
        if self.fail_lookups:
            raise PersistenceError("store down")
        return dict(self.maps.get(station_id, {}))

    async def upsert_monitored_object_map(self, station_id: int, mapping: Mapping[str, int]) -> int:
        self.maps[station_id] = dict(mapping)
        return len(mapping)

    async def insert_reading(
        self,
        station_id: int,
        ts: datetime,
        fields: Mapping[str, float | None],
    ) -> bool:
        if self.fail_inserts:
            raise PersistenceError("write rejected")
        if self.duplicate_inserts:
            return False
        self.readings.append((station_id, ts, dict(fields)))
        return True

    async def health_check(self) -> bool:
        return self.healthy

    async def reconnect(self) -> None:
        self.reconnects += 1
        self.healthy = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def tables() -> ObjectTables:
    """The packaged object tables."""
    return load_object_tables()


@pytest.fixture()
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture()
def socket_station() -> StationIdentity:
    return StationIdentity.model_validate(
        {
            "name": "Chiang Mai",
            "endpoint": "ws://10.0.0.5:8080/comet",
            "scene": "scene-cm-01",
            "session_uuid": "uuid-cm-01",
        }
    )


@pytest.fixture()
def http_station() -> StationIdentity:
    return StationIdentity.model_validate(
        {"name": "Chaiyaphum", "endpoint": "http://10.0.0.9:5000/data"}
    )
