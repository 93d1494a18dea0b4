"""In-memory heartbeat of the external geometry processor.

The processor polls ``/api/geometry-processing/next-job`` every few seconds;
each poll is recorded here.  State is per process and resets on restart.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import threading
import time

_lock = threading.Lock()
_last_ping: float | None = None


@dataclasses.dataclass(frozen=True)
class ProcessorStatus:
    last_ping_ms: int | None
    last_ping_time: dt.datetime | None
    is_healthy: bool
    seconds_since_last_ping: int | None

    def as_dict(self) -> dict[str, object]:
        return {
            "lastPingMs": self.last_ping_ms,
            "lastPingTime": self.last_ping_time.isoformat() if self.last_ping_time else None,
            "isHealthy": self.is_healthy,
            "secondsSinceLastPing": self.seconds_since_last_ping,
        }


def record_ping(now: float | None = None) -> None:
    global _last_ping
    with _lock:
        _last_ping = time.time() if now is None else now


def reset() -> None:
    global _last_ping
    with _lock:
        _last_ping = None


def get_status(*, window_seconds: int = 60, now: float | None = None) -> ProcessorStatus:
    """Return the processor status; healthy means a ping within ``window_seconds``."""

    with _lock:
        last = _last_ping
    if last is None:
        return ProcessorStatus(None, None, False, None)
    current = time.time() if now is None else now
    elapsed = current - last
    return ProcessorStatus(
        last_ping_ms=int(last * 1000),
        last_ping_time=dt.datetime.fromtimestamp(last, tz=dt.timezone.utc),
        is_healthy=elapsed < window_seconds,
        seconds_since_last_ping=int(elapsed),
    )


__all__ = ["ProcessorStatus", "get_status", "record_ping", "reset"]
