from __future__ import annotations

import os
import sys
import time
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any

import psutil
from sqlalchemy import event
from sqlalchemy.engine import Engine


@dataclass
class RequestMetrics:
    start_timestamp: float
    end_timestamp: float
    query_count: int = 0
    peak_memory_bytes: int = 0
    load_average_1m: float | None = None

    @property
    def elapsed_ms(self) -> float:
        return max(self.end_timestamp - self.start_timestamp, 0.0) * 1000.0


# --- request start -----------------------------------------------------------

_START_MARKER: ContextVar[float | None] = ContextVar("page_timer_start_marker", default=None)


def mark_request_start(timestamp: float | None = None) -> None:
    """Record a start marker for the current context (wall-clock seconds)."""

    _START_MARKER.set(time.time() if timestamp is None else timestamp)


def get_start_marker() -> float | None:
    return _START_MARKER.get()


def parse_request_start_header(value: str | None) -> float | None:
    """Parse a proxy ``X-Request-Start`` value into epoch seconds.

    Accepts ``t=`` prefixed or bare numbers in seconds, milliseconds or
    microseconds. Anything else yields None.
    """

    if not value:
        return None
    raw = value.strip()
    if raw.startswith("t="):
        raw = raw[2:]
    try:
        stamp = float(raw)
    except ValueError:
        return None
    if stamp <= 0:
        return None
    if stamp > 1e14:
        return stamp / 1_000_000
    if stamp > 1e11:
        return stamp / 1000
    return stamp


def resolve_request_start(*candidates: float | None, now: float | None = None) -> float:
    """First available start timestamp, else now (which yields ~0 elapsed)."""

    for candidate in candidates:
        if candidate is not None:
            return float(candidate)
    return time.time() if now is None else now


# --- query counting ----------------------------------------------------------


class QueryCounter:
    """Mutable so increments from copied contexts (threadpool) are visible."""

    def __init__(self) -> None:
        self.count = 0

    def increment(self) -> None:
        self.count += 1


_QUERY_COUNTER: ContextVar[QueryCounter | None] = ContextVar("page_timer_query_counter", default=None)


def begin_query_count() -> Token:
    return _QUERY_COUNTER.set(QueryCounter())


def end_query_count(token: Token) -> None:
    _QUERY_COUNTER.reset(token)


def current_query_count() -> int:
    counter = _QUERY_COUNTER.get()
    return counter.count if counter is not None else 0


@event.listens_for(Engine, "after_cursor_execute")
def _count_query(conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool) -> None:
    counter = _QUERY_COUNTER.get()
    if counter is not None:
        counter.increment()


# --- process / host ------------------------------------------------------------


def peak_memory_bytes() -> int:
    """Peak resident memory of this process in bytes, 0 if unknown.

    This is the high-water mark over the whole life of the process, not of the
    current request: on a long-lived worker it only ever grows.
    """

    if sys.platform != "win32":
        import resource

        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # Linux reports kilobytes, macOS bytes.
        return int(peak) if sys.platform == "darwin" else int(peak) * 1024

    try:
        info = psutil.Process().memory_info()
    except psutil.Error:
        return 0
    return int(getattr(info, "peak_wset", info.rss))


def load_average_1m() -> float | None:
    try:
        return float(os.getloadavg()[0])
    except (AttributeError, OSError):
        return None


def collect_request_metrics(started_at: float, now: float | None = None) -> RequestMetrics:
    return RequestMetrics(
        start_timestamp=started_at,
        end_timestamp=time.time() if now is None else now,
        query_count=current_query_count(),
        peak_memory_bytes=peak_memory_bytes(),
        load_average_1m=load_average_1m(),
    )
