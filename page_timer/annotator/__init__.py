from __future__ import annotations

from page_timer.annotator import dom_counter, reporter
from page_timer.pipeline import PagePipeline


def register_default_observers(pipeline: PagePipeline) -> PagePipeline:
    """Subscribe the server-side reporter and the client-side DOM counter."""

    reporter.register(pipeline)
    dom_counter.register(pipeline)
    return pipeline
