from __future__ import annotations

import re
import sys
from dataclasses import dataclass

import structlog

from page_timer.annotator.classify import is_html_page_request
from page_timer.annotator.metrics import RequestMetrics, collect_request_metrics
from page_timer.annotator.units import human_bytes, parse_human_bytes
from page_timer.config import get_settings
from page_timer.pipeline import RESPONSE_FINALIZE, PageContext, PagePipeline


# Runs after every other finalize observer.
REPORTER_PRIORITY = sys.maxsize

_COMMENT_RE = re.compile(
    r"<!-- (?P<ms>[\d.]+) / (?P<queries>\d+) / (?P<mem>[^/]+?) / (?P<load>n/a|[\d,.]+) -->"
)


@dataclass
class ParsedReport:
    ms: float
    queries: int
    memory_bytes: int
    load: float | None


def format_load(load: float | None) -> str:
    return "n/a" if load is None else f"{load:,.2f}"


def format_report(metrics: RequestMetrics, disguise_mb: bool = True) -> str:
    mem_str = human_bytes(metrics.peak_memory_bytes, disguise_mb=disguise_mb)
    return "\n<!-- %.2f / %d / %s / %s -->" % (
        metrics.elapsed_ms,
        metrics.query_count,
        mem_str,
        format_load(metrics.load_average_1m),
    )


def parse_server_comment(text: str) -> ParsedReport | None:
    """Read back the last timing comment found in text."""

    matches = list(_COMMENT_RE.finditer(text))
    if not matches:
        return None
    m = matches[-1]
    load = m.group("load")
    return ParsedReport(
        ms=float(m.group("ms")),
        queries=int(m.group("queries")),
        memory_bytes=parse_human_bytes(m.group("mem")),
        load=None if load == "n/a" else float(load.replace(",", "")),
    )


def report_request_metrics(page: PageContext) -> str | None:
    if not is_html_page_request(page.request):
        return None

    metrics = collect_request_metrics(page.started_at)
    structlog.get_logger("page_timer").info(
        "page_timed",
        elapsed_ms=round(metrics.elapsed_ms, 2),
        queries=metrics.query_count,
        peak_memory_bytes=metrics.peak_memory_bytes,
        load_1m=metrics.load_average_1m,
    )
    return format_report(metrics, disguise_mb=get_settings().disguise_mb)


def register(pipeline: PagePipeline) -> None:
    pipeline.subscribe(RESPONSE_FINALIZE, report_request_metrics, priority=REPORTER_PRIORITY)
