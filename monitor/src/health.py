"""
Status file writer for the power monitor.

Writes a JSON status file at a configurable path with one entry per station:
- state: current ``SessionState``.
- attempts: consecutive failures since the last successful attempt.
- last_error: why the last attempt ended, if it failed.
- terminal: True once the station's retry budget is exhausted.
- last_reading_ts: ISO timestamp of the last known reading.

The file is rewritten periodically and at shutdown, providing a simple
liveness signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-18: Per-station entries built from the fleet report
- 2026-10-18: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from monitor.src.models import FleetReport


class HealthWriter:
    """Writes fleet status to a JSON file.

    Args:
        path: Filesystem path for the status JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def write(self, report: FleetReport) -> None:
        """Rewrite the status file from *report*."""
        stations: dict[str, dict[str, Any]] = {}
        for snap in report.stations:
            stations[snap.station] = {
                "transport": snap.transport,
                "state": snap.state.value,
                "attempts": snap.attempts,
                "last_error": snap.last_error,
                "terminal": snap.terminal,
                "last_reading_ts": snap.reading.ts.isoformat() if snap.reading else None,
            }
        data = {
            "generated_at": report.generated_at.isoformat(),
            "mode": report.mode,
            "streaming": sum(1 for s in stations.values() if s["state"] == "streaming"),
            "stations": stations,
        }
        self.path.write_text(json.dumps(data, indent=2))
