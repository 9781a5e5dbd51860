"""
Per-station mapping of raw sensor object IDs to semantic field names.

Station hardware numbers its meters inconsistently: the fifth MUX meter is
object 75428 at most stations but 224272 at Ranong. Each station therefore
has its own ``MonitoredObjectMap`` (field -> raw id) loaded from the store,
layered over a global alias table (raw key -> field) shipped as data in
``object_tables.json``.

Resolution order for a raw key:
    1. the station's own map,
    2. the global alias table,
    3. ``"unmapped"`` (dropped downstream).

CHANGELOG:
- 2026-10-18: Move default map and aliases out of code into object_tables.json
- 2026-10-18: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from monitor.src.errors import ConfigError

if TYPE_CHECKING:
    from monitor.src.db.repository import StationRepository
    from monitor.src.models import StationRecord

logger = logging.getLogger(__name__)

UNMAPPED = "unmapped"
"""Resolution result for raw keys known to neither the station nor the aliases."""

ResolutionSource = Literal["station", "alias", "unmapped"]

_FIELD_PREFIX_RE = re.compile(r"^(.*?)(\d+)$")


# ---------------------------------------------------------------------------
# Object tables (data)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ObjectTables:
    """Default map, alias table, and advisory ranges.

    Attributes:
        default_map: Fallback field -> raw id map for stations without one.
        aliases: Raw key (stringified id or HTTP key) -> field.
        ranges: Field prefix (``"activePower"``) -> advisory ``(min, max)``.
    """

    default_map: Mapping[str, int]
    aliases: Mapping[str, str]
    ranges: Mapping[str, tuple[float, float]] = field(default_factory=dict)

    def range_for(self, field_name: str) -> tuple[float, float] | None:
        """Return the advisory range for *field_name*, if any."""
        if field_name in self.ranges:
            return self.ranges[field_name]
        match = _FIELD_PREFIX_RE.match(field_name)
        if match:
            return self.ranges.get(match.group(1))
        return None


def load_object_tables(path: str | Path | None = None) -> ObjectTables:
    """Load object tables from *path*, or the copy packaged with the monitor.

    Raises:
        ConfigError: If the document is unreadable or malformed.
    """
    try:
        if path is None:
            text = resources.files("monitor.src").joinpath("object_tables.json").read_text(
                encoding="utf-8"
            )
        else:
            text = Path(path).read_text(encoding="utf-8")
        doc = json.loads(text)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot load object tables: {exc}") from exc

    try:
        default_map = {str(k): int(v) for k, v in doc["default_map"].items()}
        aliases = {str(k): str(v) for k, v in doc.get("aliases", {}).items()}
        ranges = {
            str(k): (float(lo), float(hi)) for k, (lo, hi) in doc.get("ranges", {}).items()
        }
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(f"Malformed object tables: {exc!r}") from exc

    if not default_map:
        raise ConfigError("Object tables define an empty default_map")
    return ObjectTables(default_map=default_map, aliases=aliases, ranges=ranges)


# ---------------------------------------------------------------------------
# Per-station map
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MonitoredObjectMap:
    """Semantic field -> raw object id pairs for one station.

    Immutable for the lifetime of a session; a new session loads a new map.

    Attributes:
        station: Station name.
        fields: Field name -> raw object id.
        is_default: True when this is the fallback map.
    """

    station: str
    fields: Mapping[str, int]
    is_default: bool = False
    _by_raw: dict[str, str] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:  # noqa: D105
        by_raw: dict[str, str] = {}
        for field_name, raw_id in self.fields.items():
            key = str(raw_id)
            if key in by_raw:
                logger.warning(
                    "[%s] raw id %s claimed by both %s and %s; keeping %s",
                    self.station,
                    key,
                    by_raw[key],
                    field_name,
                    by_raw[key],
                )
                continue
            by_raw[key] = field_name
        # frozen=True requires object.__setattr__
        object.__setattr__(self, "_by_raw", by_raw)

    def object_ids(self) -> list[int]:
        """Raw ids to register for push notifications, in map order."""
        seen: dict[int, None] = {}
        for raw_id in self.fields.values():
            seen.setdefault(int(raw_id), None)
        return list(seen)

    def field_for(self, raw_key: str | int) -> str | None:
        return self._by_raw.get(str(raw_key))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ObjectMapRegistry:
    """Resolves raw object keys to semantic fields for one station.

    Until :meth:`load` runs, the registry resolves through the default map.

    Args:
        station: Station name.
        tables: Default map, aliases, and ranges.
        repository: Store to read the station-specific map from. ``None``
            means "always use the default map".
    """

    def __init__(
        self,
        station: str,
        tables: ObjectTables,
        repository: StationRepository | None = None,
    ) -> None:
        self._station = station
        self._tables = tables
        self._repository = repository
        self._map = self._default_map()

    @property
    def station(self) -> str:
        return self._station

    @property
    def tables(self) -> ObjectTables:
        return self._tables

    @property
    def object_map(self) -> MonitoredObjectMap:
        return self._map

    def _default_map(self) -> MonitoredObjectMap:
        return MonitoredObjectMap(
            station=self._station,
            fields=dict(self._tables.default_map),
            is_default=True,
        )

    async def load(self, record: StationRecord | None) -> MonitoredObjectMap:
        """Load the station's map from the store, falling back to the default.

        Never raises: a missing record, an empty stored map, or any lookup
        error all yield the default map.

        Args:
            record: The station's store record, or ``None`` if the store is
                unavailable.

        Returns:
            The map now used by :meth:`resolve`.
        """
        if self._repository is None or record is None:
            logger.info("[%s] No station record, using default object map", self._station)
            self._map = self._default_map()
            return self._map

        try:
            stored = await self._repository.get_monitored_object_map(record.id)
        except Exception:
            logger.warning(
                "[%s] Failed to load monitored objects, using default map",
                self._station,
                exc_info=True,
            )
            self._map = self._default_map()
            return self._map

        if not stored:
            logger.info("[%s] No station-specific objects stored, using default map", self._station)
            self._map = self._default_map()
        else:
            self._map = MonitoredObjectMap(station=self._station, fields=dict(stored))
            logger.info(
                "[%s] Loaded %d station-specific monitored objects: %s",
                self._station,
                len(stored),
                self._map.object_ids(),
            )
        return self._map

    def resolve_with_source(self, raw_key: str | int) -> tuple[str, ResolutionSource]:
        """Resolve *raw_key* and report which table produced the answer."""
        key = str(raw_key)
        station_field = self._map.field_for(key)
        if station_field is not None:
            return station_field, "station"
        alias = self._tables.aliases.get(key)
        if alias is not None:
            return alias, "alias"
        return UNMAPPED, "unmapped"

    def resolve(self, raw_key: str | int) -> str:
        """Return the semantic field for *raw_key*, or ``"unmapped"``."""
        return self.resolve_with_source(raw_key)[0]
