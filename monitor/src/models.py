"""
Pydantic models for stations, telemetry frames, and normalized readings.

The transport of a station is a tagged variant decided once when the station
file is loaded: ``SocketTransport`` for ``ws://``/``wss://`` endpoints and
``HttpPollTransport`` for HTTP data endpoints. Nothing downstream inspects
the endpoint string again.

CHANGELOG:
- 2026-10-18: Add StationStatus / FleetReport for shutdown summary (STORY-009)
- 2026-10-18: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Station transport (tagged variant)
# ---------------------------------------------------------------------------


class SocketTransport(BaseModel):
    """Long-lived WebSocket control channel with a scripted handshake."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["socket"] = "socket"
    url: str
    scene: str | None = None


class HttpPollTransport(BaseModel):
    """Periodic HTTP GET of a JSON data document."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["http_poll"] = "http_poll"
    url: str


StationTransport = Annotated[
    SocketTransport | HttpPollTransport,
    Field(discriminator="kind"),
]


def classify_endpoint(
    endpoint: str,
    scene: str | None = None,
) -> SocketTransport | HttpPollTransport:
    """Decide the transport kind for a configured endpoint string.

    Args:
        endpoint: Station URL from configuration.
        scene: Optional scene identifier (socket stations only).

    Returns:
        ``SocketTransport`` for ``ws://``/``wss://`` URLs, ``HttpPollTransport``
        for ``http(s)://`` URLs whose path contains ``/data``.

    Raises:
        ValueError: If the endpoint matches neither shape.
    """
    url = endpoint.strip()
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme in ("ws", "wss") and parts.netloc:
        return SocketTransport(url=url, scene=scene.strip() if scene else None)
    if scheme in ("http", "https") and parts.netloc and "/data" in parts.path:
        return HttpPollTransport(url=url)
    raise ValueError(
        f"Unsupported station endpoint {endpoint!r}: "
        "expected ws(s):// or an http(s):// URL with a /data path"
    )


# ---------------------------------------------------------------------------
# Station identity
# ---------------------------------------------------------------------------


class StationIdentity(BaseModel):
    """A configured substation.

    Attributes:
        name: Unique human-readable station name (natural key).
        transport: Socket or HTTP-poll transport, decided at load time.
        session_uuid: Client uuid for the session-restore login.
        username: Account name for the sign-in login.
        password: Account password for the sign-in login (never logged).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    transport: StationTransport
    session_uuid: str | None = None
    username: str | None = None
    password: str | None = Field(default=None, repr=False)

    @model_validator(mode="before")
    @classmethod
    def _classify_endpoint(cls, data: Any) -> Any:
        """Turn a raw ``endpoint`` (+ ``scene``) entry into a transport."""
        if isinstance(data, dict) and "transport" not in data and "endpoint" in data:
            data = dict(data)
            endpoint = data.pop("endpoint")
            scene = data.pop("scene", None)
            data["transport"] = classify_endpoint(endpoint, scene)
        return data

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("station name must not be empty")
        return v

    @model_validator(mode="after")
    def _check_credentials(self) -> StationIdentity:
        """Socket stations need either a session uuid or a username/password."""
        if self.username and not self.password:
            raise ValueError(f"station {self.name!r}: username given without password")
        if self.is_socket and not (self.session_uuid or self.username):
            raise ValueError(
                f"station {self.name!r}: socket stations need session_uuid "
                "or username/password"
            )
        return self

    @property
    def is_socket(self) -> bool:
        return isinstance(self.transport, SocketTransport)

    @property
    def endpoint(self) -> str:
        return self.transport.url

    @property
    def scene(self) -> str | None:
        if isinstance(self.transport, SocketTransport):
            return self.transport.scene
        return None


class StationRecord(BaseModel):
    """Station row as returned by the persistence collaborator."""

    id: int
    name: str
    endpoint: str | None = None
    scene: str | None = None


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class RawTelemetryFrame(BaseModel):
    """One inbound snapshot of raw object values, before normalization.

    Attributes:
        station: Station name.
        received_at: Wall-clock receipt time.
        values: Raw object key (stringified id or HTTP field key) to raw value.
    """

    station: str
    received_at: datetime
    values: dict[str, Any]

    @field_validator("values", mode="before")
    @classmethod
    def _stringify_keys(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): val for k, val in v.items()}
        return v


class NormalizedReading(BaseModel):
    """Semantic field values for one station at one timestamp.

    Only known semantic fields appear in ``fields``; a value of ``None``
    means the field was reported but could not be parsed as a number.
    """

    model_config = ConfigDict(frozen=True)

    station: str
    ts: datetime
    fields: dict[str, float | None]

    def same_values(self, other: NormalizedReading | None) -> bool:
        """True when *other* carries exactly the same field values."""
        return other is not None and self.fields == other.fields


class ValidationResult(BaseModel):
    """Outcome of frame validation. Warnings are advisory only."""

    ok: bool = True
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Session state and reporting
# ---------------------------------------------------------------------------


class SessionState(str, Enum):
    """Per-station session lifecycle."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    STREAMING = "streaming"
    DEGRADED = "degraded"


class StationSnapshot(BaseModel):
    """Last known state and reading of one station."""

    station: str
    transport: str
    state: SessionState
    attempts: int = 0
    last_error: str | None = None
    terminal: bool = False
    reading: NormalizedReading | None = None


class FleetReport(BaseModel):
    """Aggregated snapshot across all stations."""

    generated_at: datetime
    mode: str
    stations: list[StationSnapshot]

    def for_station(self, name: str) -> StationSnapshot | None:
        for snapshot in self.stations:
            if snapshot.station == name:
                return snapshot
        return None
