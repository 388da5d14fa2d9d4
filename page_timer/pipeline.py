from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, TypeVar

import structlog
from starlette.requests import Request


FOOTER_SCRIPTS = "footer_scripts"
RESPONSE_FINALIZE = "response_finalize"

DEFAULT_PRIORITY = 10

T = TypeVar("T")


@dataclass
class PageContext:
    """What observers get to see about the page being emitted."""

    request: Request
    started_at: float


Observer = Callable[[PageContext], "str | None"]


@dataclass(order=True)
class _Subscription:
    priority: int
    seq: int
    callback: Observer = field(compare=False)


def best_effort(fn: Callable[[], T], *, default: T, operation: str) -> T:
    """Run fn(); on any exception log it and return default.

    Annotations are diagnostics only, so a failing observer must never take the
    page down with it.
    """

    try:
        return fn()
    except Exception:
        structlog.get_logger("page_timer").exception("page_observer_failed", operation=operation)
        return default


class PagePipeline:
    """Named lifecycle events that observers subscribe to."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._seq = 0

    def subscribe(self, event: str, callback: Observer, priority: int = DEFAULT_PRIORITY) -> None:
        self._seq += 1
        subs = self._subscriptions.setdefault(event, [])
        subs.append(_Subscription(priority=priority, seq=self._seq, callback=callback))
        subs.sort()

    def observers(self, event: str) -> list[Observer]:
        return [sub.callback for sub in self._subscriptions.get(event, [])]

    def emit(self, event: str, page: PageContext) -> str:
        fragments: list[str] = []
        for callback in self.observers(event):
            name = getattr(callback, "__name__", repr(callback))
            fragment = best_effort(lambda: callback(page), default=None, operation=f"{event}:{name}")
            if fragment:
                fragments.append(fragment)
        return "".join(fragments)


_PIPELINE: PagePipeline | None = None


def get_pipeline() -> PagePipeline:
    """Process-wide pipeline with the reporter and DOM counter registered."""

    global _PIPELINE
    if _PIPELINE is None:
        from page_timer.annotator import register_default_observers

        pipeline = PagePipeline()
        register_default_observers(pipeline)
        _PIPELINE = pipeline
    return _PIPELINE


def set_pipeline(pipeline: PagePipeline | None) -> None:
    global _PIPELINE
    _PIPELINE = pipeline
