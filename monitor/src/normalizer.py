"""
Pure validation and normalization of raw telemetry frames.

``validate`` coerces every raw value to a number and records advisory
warnings (unparseable values, unmapped keys, out-of-range values). It never
blocks a reading: sensor noise is expected and completeness wins over
strictness.

``normalize`` resolves every raw key through the station's
``ObjectMapRegistry`` and produces a ``NormalizedReading``. Unmapped keys are
dropped. When several raw keys resolve to the same field in one frame the
winner is chosen by, in order:

    1. a parseable value beats ``None``,
    2. the station's own map beats the alias table,
    3. the lowest raw key wins.

These are pure functions: no I/O, no clock. The timestamp comes from the
frame's receipt time.

CHANGELOG:
- 2026-10-18: Parseable alias value now beats an unparseable station value
- 2026-10-18: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from monitor.src.models import NormalizedReading, RawTelemetryFrame, ValidationResult
from monitor.src.registry import UNMAPPED

if TYPE_CHECKING:
    from monitor.src.registry import ObjectMapRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def coerce_value(raw: Any) -> float | None:
    """Interpret a raw telemetry value as a finite float.

    Numbers pass through, numeric strings are parsed, everything else
    (``None``, booleans, empty or garbage strings, NaN/inf, nested objects)
    becomes ``None``.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(value):
        return None
    return value


def _key_order(key: str) -> tuple[int, int, str]:
    """Sort numeric raw ids numerically, before any non-numeric keys."""
    if key.isdigit():
        return (0, int(key), key)
    return (1, 0, key)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate(
    frame: RawTelemetryFrame,
    registry: ObjectMapRegistry | None = None,
) -> ValidationResult:
    """Check a frame and collect advisory warnings.

    Args:
        frame: The raw frame.
        registry: When given, keys are resolved so unmapped keys and
            out-of-range values of known fields are reported as well.

    Returns:
        ``ok`` is False only for an empty frame; every other problem is a
        warning.
    """
    result = ValidationResult()
    if not frame.values:
        result.ok = False
        result.warnings.append("Frame carries no values")
        return result

    for key in sorted(frame.values, key=_key_order):
        raw = frame.values[key]
        value = coerce_value(raw)
        if value is None and raw is not None:
            result.warnings.append(f"Invalid numeric value for {key}: {raw!r}")

        if registry is None:
            continue

        field_name = registry.resolve(key)
        if field_name == UNMAPPED:
            result.warnings.append(f"Unmapped object {key}")
            continue

        bounds = registry.tables.range_for(field_name)
        if value is not None and bounds is not None:
            lo, hi = bounds
            if not (lo <= value <= hi):
                result.warnings.append(
                    f"{field_name} (object {key}) value {value:.6g} outside ({lo:g}, {hi:g})"
                )

    return result


def normalize(
    frame: RawTelemetryFrame,
    registry: ObjectMapRegistry,
) -> NormalizedReading:
    """Convert a raw frame into a ``NormalizedReading``.

    Only fields the registry knows appear in the result. Unparseable
    values of known fields become ``None``.

    Args:
        frame: The raw frame.
        registry: The station's loaded object map registry.

    Returns:
        The normalized reading, timestamped with the frame's receipt time.
    """
    best: dict[str, tuple[tuple[int, int], float | None]] = {}

    for key in sorted(frame.values, key=_key_order):
        field_name, source = registry.resolve_with_source(key)
        if source == "unmapped":
            continue
        value = coerce_value(frame.values[key])
        rank = (int(value is not None), int(source == "station"))
        current = best.get(field_name)
        if current is None or rank > current[0]:
            best[field_name] = (rank, value)

    return NormalizedReading(
        station=frame.station,
        ts=frame.received_at,
        fields={name: value for name, (_, value) in sorted(best.items())},
    )
