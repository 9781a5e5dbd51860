"""Exception hierarchy for the power monitor.

Transport and protocol errors are recoverable and drive the supervisors'
reconnection policy. Persistence errors are caught at the pipeline boundary.
None of these cross a station boundary.
"""

from __future__ import annotations


class MonitorError(Exception):
    """Base exception for all monitor errors."""


class ConfigError(MonitorError):
    """Invalid or missing configuration (station file, object tables)."""


class TransportError(MonitorError):
    """Socket or HTTP failure: refused, timed out, closed, non-200, bad JSON."""

    def __init__(self, message: str, *, endpoint: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(message)


class ProtocolError(MonitorError):
    """A handshake step timed out or got a malformed or rejected response."""

    def __init__(
        self,
        message: str,
        *,
        step: str = "",
        request_id: int | None = None,
    ) -> None:
        self.step = step
        self.request_id = request_id
        super().__init__(message)


class PersistenceError(MonitorError):
    """The store is unreachable or rejected a write."""


class RetryBudgetExhausted(MonitorError):
    """A station used up its reconnect attempts and will not be retried."""

    def __init__(self, station: str, attempts: int) -> None:
        self.station = station
        self.attempts = attempts
        super().__init__(f"{station}: gave up after {attempts} consecutive failures")
