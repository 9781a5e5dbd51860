"""
SQLAlchemy ORM models for the power monitor store.

Three tables:
- ``stations``: one row per substation, unique by name.
- ``station_monitored_objects``: per-station semantic field -> raw object id
  pairs (the station's ``MonitoredObjectMap``).
- ``power_readings``: one row per persisted ``NormalizedReading``. The unique
  constraint on (station_id, ts) makes batched inserts idempotent.

CHANGELOG:
- 2026-10-18: Add mux_power_5/6 columns for six-meter stations
- 2026-10-18: Initial creation (STORY-008)

TODO:
- None
"""

import datetime

from sqlalchemy import (
    DateTime,
    Double,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

FIELD_COLUMNS: dict[str, str] = {
    **{f"activePower{i}": f"active_power_{i}" for i in range(1, 7)},
    **{f"muxPower{i}": f"mux_power_{i}" for i in range(1, 7)},
}
"""Semantic field name -> ``power_readings`` column."""


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all monitor ORM models."""

    pass


class Station(Base):
    """A monitored substation.

    Attributes:
        id: Surrogate key.
        name: Unique station name (natural key).
        endpoint: Last configured endpoint URL (nullable for stations
            created by the bulk importer).
        scene: Last configured scene identifier.
    """

    __tablename__ = "stations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    endpoint: Mapped[str | None] = mapped_column(Text, nullable=True)
    scene: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        """Return string representation of the Station."""
        return f"Station(id={self.id!r}, name={self.name!r}, endpoint={self.endpoint!r})"


class StationMonitoredObject(Base):
    """One semantic field -> raw object id pair of a station's map."""

    __tablename__ = "station_monitored_objects"
    __table_args__ = (
        UniqueConstraint("station_id", "object_type", name="uq_station_object_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_id: Mapped[int] = mapped_column(
        ForeignKey("stations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    object_type: Mapped[str] = mapped_column(Text, nullable=False)
    object_id: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of the StationMonitoredObject."""
        return (
            f"StationMonitoredObject(station_id={self.station_id!r}, "
            f"object_type={self.object_type!r}, object_id={self.object_id!r})"
        )


class PowerReading(Base):
    """Persisted power reading of one station at one timestamp.

    Every value column is nullable: a field that was absent or unparseable
    is stored as NULL.
    """

    __tablename__ = "power_readings"
    __table_args__ = (
        UniqueConstraint("station_id", "ts", name="uq_power_readings_station_ts"),
        Index("ix_power_readings_ts", "ts"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_id: Mapped[int] = mapped_column(
        ForeignKey("stations.id", ondelete="RESTRICT"), nullable=False
    )
    ts: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    active_power_1: Mapped[float | None] = mapped_column(Double, nullable=True)
    active_power_2: Mapped[float | None] = mapped_column(Double, nullable=True)
    active_power_3: Mapped[float | None] = mapped_column(Double, nullable=True)
    active_power_4: Mapped[float | None] = mapped_column(Double, nullable=True)
    active_power_5: Mapped[float | None] = mapped_column(Double, nullable=True)
    active_power_6: Mapped[float | None] = mapped_column(Double, nullable=True)
    mux_power_1: Mapped[float | None] = mapped_column(Double, nullable=True)
    mux_power_2: Mapped[float | None] = mapped_column(Double, nullable=True)
    mux_power_3: Mapped[float | None] = mapped_column(Double, nullable=True)
    mux_power_4: Mapped[float | None] = mapped_column(Double, nullable=True)
    mux_power_5: Mapped[float | None] = mapped_column(Double, nullable=True)
    mux_power_6: Mapped[float | None] = mapped_column(Double, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        """Return string representation of the PowerReading."""
        return f"PowerReading(station_id={self.station_id!r}, ts={self.ts!r})"
