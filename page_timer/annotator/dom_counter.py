"""Client-side DOM counter.

The browser does the real counting: `render_dom_counter_script` produces the
inline script that is placed in the page footer. The Python half mirrors the
same counting policy so it can be checked against static markup, and reads
the resulting comment back.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from html.parser import HTMLParser
from time import perf_counter
from typing import Iterable

from jinja2 import Environment, PackageLoader, StrictUndefined

from page_timer.annotator.classify import is_html_page_request
from page_timer.config import Settings, get_settings
from page_timer.pipeline import FOOTER_SCRIPTS, PageContext, PagePipeline


DOM_COUNTER_PRIORITY = 9999
CONSOLE_PREFIX = "[PET]"

_env = Environment(
    loader=PackageLoader("page_timer.annotator", "templates"),
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)

_COMMENT_RE = re.compile(
    r"DOM elements: (?P<elements>\d+) \| all nodes: (?P<all>\d+)(?P<trunc> \(trunc\))?"
    r" \| timings: (?P<elem_ms>[\d.]+)ms elem, (?P<all_ms>[\d.]+)ms all"
)


@dataclass
class DomCounts:
    element_count: int
    all_node_count: int
    truncated: bool = False
    elements_ms: float = 0.0
    all_nodes_ms: float = 0.0


def render_dom_counter_script(settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return _env.get_template("dom_counter.js.j2").render(
        max_all_nodes=int(settings.max_all_nodes),
        idle_timeout_ms=int(settings.idle_timeout_ms),
        debug_storage_key=settings.debug_storage_key,
        console_prefix=CONSOLE_PREFIX,
    )


def emit_dom_counter(page: PageContext) -> str | None:
    if not is_html_page_request(page.request):
        return None
    return render_dom_counter_script()


def register(pipeline: PagePipeline) -> None:
    pipeline.subscribe(FOOTER_SCRIPTS, emit_dom_counter, priority=DOM_COUNTER_PRIORITY)


# --- counting policy -----------------------------------------------------------


def count_all_nodes_cautious(nodes: Iterable[object], limit: int) -> tuple[int, bool, float]:
    """Count nodes, bailing out as soon as the count passes limit."""

    t0 = perf_counter()
    n = 0
    for _ in nodes:
        n += 1
        if n > limit:
            return n, True, (perf_counter() - t0) * 1000.0
    return n, False, (perf_counter() - t0) * 1000.0


def measure_dom(element_count: int, nodes: Iterable[object], limit: int = 30000) -> DomCounts:
    """Full walk only when the element count is already under the ceiling."""

    if element_count > limit:
        return DomCounts(element_count=element_count, all_node_count=element_count, truncated=True)
    count, truncated, ms = count_all_nodes_cautious(nodes, limit)
    return DomCounts(element_count=element_count, all_node_count=count, truncated=truncated, all_nodes_ms=ms)


def format_dom_comment(counts: DomCounts) -> str:
    return (
        f"DOM elements: {counts.element_count}"
        f" | all nodes: {counts.all_node_count}"
        f"{' (trunc)' if counts.truncated else ''}"
        f" | timings: {counts.elements_ms:.2f}ms elem, {counts.all_nodes_ms:.2f}ms all"
    )


def parse_dom_comment(text: str) -> DomCounts | None:
    m = _COMMENT_RE.search(text)
    if not m:
        return None
    return DomCounts(
        element_count=int(m.group("elements")),
        all_node_count=int(m.group("all")),
        truncated=bool(m.group("trunc")),
        elements_ms=float(m.group("elem_ms")),
        all_nodes_ms=float(m.group("all_ms")),
    )


class _NodeCollector(HTMLParser):
    """Flat list of node kinds in document order, as written in the markup."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.nodes: list[str] = []

    def _add(self, kind: str) -> None:
        # Adjacent character data is one text node.
        if kind == "text" and self.nodes and self.nodes[-1] == "text":
            return
        self.nodes.append(kind)

    def handle_starttag(self, tag, attrs):
        self._add("element")

    def handle_startendtag(self, tag, attrs):
        self._add("element")

    def handle_endtag(self, tag):
        # Closing a tag ends the current text run.
        if self.nodes and self.nodes[-1] == "text":
            self.nodes.append("boundary")

    def handle_data(self, data):
        self._add("text")

    def handle_comment(self, data):
        self._add("comment")

    def handle_decl(self, decl):
        self._add("doctype")

    def handle_pi(self, data):
        self._add("pi")


def count_html(markup: str, limit: int = 30000) -> DomCounts:
    collector = _NodeCollector()
    collector.feed(markup)
    collector.close()
    nodes = [kind for kind in collector.nodes if kind != "boundary"]

    t0 = perf_counter()
    element_count = sum(1 for kind in nodes if kind == "element")
    elements_ms = (perf_counter() - t0) * 1000.0

    counts = measure_dom(element_count, iter(nodes), limit)
    counts.elements_ms = elements_ms
    return counts
