"""
Bulk import of per-station monitored-object maps from CSV.

The CSV header names the semantic fields; every following row is a station
name followed by the raw object id of each field::

    station,activePower1,activePower2,muxPower1,muxPower5
    Ranong,8684,8685,18069,224272
    Chiang Mai,8684,8685,18069,75428

Empty cells are skipped. Each row replaces the station's stored map
(stations missing from the store are created by name).

Usage:
    python -m monitor.src.import_objects import monitorObjectId.csv
    python -m monitor.src.import_objects verify

CHANGELOG:
- 2026-10-18: Initial creation (STORY-013)
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

from monitor.src.config import MonitorSettings
from monitor.src.db.models import FIELD_COLUMNS
from monitor.src.db.repository import StationRepository
from monitor.src.errors import ConfigError, MonitorError

logger = logging.getLogger(__name__)


@dataclass
class StationObjects:
    """One parsed CSV row."""

    name: str
    objects: dict[str, int] = field(default_factory=dict)


@dataclass
class ImportSummary:
    stations_processed: int = 0
    objects_imported: int = 0
    failed: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# CSV parsing
# ---------------------------------------------------------------------------


def parse_csv(path: str | Path) -> list[StationObjects]:
    """Parse the monitored-object CSV.

    Rows with the wrong number of cells and cells that are not integers are
    skipped with a warning.

    Raises:
        ConfigError: If the file is unreadable or has no data rows.
    """
    path = Path(path)
    try:
        with path.open(newline="", encoding="utf-8") as fh:
            rows = [row for row in csv.reader(fh) if any(cell.strip() for cell in row)]
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc

    if len(rows) < 2:
        raise ConfigError(f"{path} must have a header row and at least one data row")

    header = [h.strip() for h in rows[0]]
    for field_name in header[1:]:
        if field_name not in FIELD_COLUMNS:
            logger.warning("Column %s is not a stored field, its readings will be dropped", field_name)

    stations: list[StationObjects] = []
    for line_no, row in enumerate(rows[1:], start=2):
        cells = [c.strip() for c in row]
        if len(cells) != len(header):
            logger.warning(
                "Row %d has %d values but expected %d, skipping",
                line_no,
                len(cells),
                len(header),
            )
            continue
        entry = StationObjects(name=cells[0])
        for field_name, cell in zip(header[1:], cells[1:], strict=True):
            if not cell:
                continue
            try:
                entry.objects[field_name] = int(cell)
            except ValueError:
                logger.warning("Row %d: %s=%r is not an object id, skipping", line_no, field_name, cell)
        stations.append(entry)

    return stations


# ---------------------------------------------------------------------------
# Store operations
# ---------------------------------------------------------------------------


async def import_objects(
    repository: StationRepository,
    stations: list[StationObjects],
) -> ImportSummary:
    """Replace the stored map of every parsed station.

    A failure on one station is logged and does not stop the others.
    """
    summary = ImportSummary()
    for entry in stations:
        if not entry.objects:
            logger.warning("[%s] No valid monitored objects, skipping", entry.name)
            continue
        try:
            record = await repository.ensure_station_named(entry.name)
            summary.objects_imported += await repository.upsert_monitored_object_map(
                record.id, entry.objects
            )
        except MonitorError:
            logger.error("[%s] Import failed", entry.name, exc_info=True)
            summary.failed.append(entry.name)
            continue
        summary.stations_processed += 1
    return summary


async def verify(repository: StationRepository) -> dict[str, dict[str, int]]:
    """Return every station's stored map, keyed by station name."""
    result: dict[str, dict[str, int]] = {}
    for record in await repository.list_stations():
        result[record.name] = await repository.get_monitored_object_map(record.id)
    return result


def _print_verification(maps: dict[str, dict[str, int]]) -> None:
    print(f"\n{'=' * 70}")
    print("  Stored monitored objects")
    print(f"{'=' * 70}")
    if not maps:
        print("  No stations found.")
    for name, objects in maps.items():
        print(f"  {name}: {len(objects)} monitored objects")
        for field_name, raw_id in objects.items():
            print(f"      {field_name:<14} {raw_id}")
    print()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


async def _main(args: argparse.Namespace) -> int:
    settings = MonitorSettings()
    repository = StationRepository(
        settings.database_url,
        max_connect_attempts=settings.db_connect_attempts,
    )
    try:
        await repository.connect()
        if settings.create_schema:
            await repository.create_schema()

        if args.command == "import":
            stations = parse_csv(args.csv)
            print(f"Parsed {len(stations)} stations from {args.csv}")
            summary = await import_objects(repository, stations)
            print(
                f"Stations processed: {summary.stations_processed}/{len(stations)}, "
                f"objects imported: {summary.objects_imported}"
            )
            if summary.failed:
                print(f"Failed: {', '.join(summary.failed)}")

        _print_verification(await verify(repository))
    except MonitorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await repository.close()
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(description="Import per-station monitored-object maps")
    sub = p.add_subparsers(dest="command", required=True)
    imp = sub.add_parser("import", help="Import a CSV file and list the result")
    imp.add_argument("csv", help="CSV file: station,<field>,<field>,...")
    sub.add_parser("verify", help="List every station's stored map")
    return p.parse_args(argv)


def main() -> None:
    """Synchronous entrypoint."""
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(_main(parse_args())))


if __name__ == "__main__":
    main()
