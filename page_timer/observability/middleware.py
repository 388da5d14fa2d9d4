from __future__ import annotations

import codecs
import time
import uuid
from time import perf_counter
from typing import Any, Callable

import structlog
from starlette.datastructures import MutableHeaders
from starlette.requests import Request

from page_timer.annotator.classify import is_html_page_request
from page_timer.annotator.metrics import (
    begin_query_count,
    end_query_count,
    get_start_marker,
    parse_request_start_header,
    resolve_request_start,
)
from page_timer.config import get_settings
from page_timer.pipeline import (
    FOOTER_SCRIPTS,
    RESPONSE_FINALIZE,
    PageContext,
    PagePipeline,
    best_effort,
    get_pipeline,
)


_BODY_CLOSE = b"</body>"
_BODYLESS_STATUSES = {204, 304}


def request_started_at(request: Request) -> float:
    state = request.scope.get("state") or {}
    return resolve_request_start(
        state.get("request_start"),
        parse_request_start_header(request.headers.get("x-request-start")),
        get_start_marker(),
    )


def response_charset(headers: MutableHeaders) -> str:
    content_type = headers.get("content-type", "")
    for param in content_type.split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            charset = value.strip().strip('"')
            try:
                info = codecs.lookup(charset)
            except LookupError:
                break
            # hex, base64, rot13 and friends are codecs but not text encodings.
            if not getattr(info, "_is_text_encoding", True):
                break
            return charset
    return "utf-8"


def is_annotatable_response(status_code: int, headers: MutableHeaders) -> bool:
    if status_code < 200 or status_code in _BODYLESS_STATUSES:
        return False
    if headers.get("content-encoding", "identity").lower() != "identity":
        return False
    media_type = headers.get("content-type", "").split(";", 1)[0].strip().lower()
    return media_type == "text/html"


def insert_before_body_close(body: bytes, fragment: bytes) -> bytes:
    idx = body.lower().rfind(_BODY_CLOSE)
    if idx == -1:
        return body + fragment
    return body[:idx] + fragment + body[idx:]


class PageTimerMiddleware:
    """Adds request_id context and access logs, and annotates HTML page responses."""

    def __init__(self, app: Callable[..., Any], pipeline: PagePipeline | None = None) -> None:
        self.app = app
        self._pipeline = pipeline

    @property
    def pipeline(self) -> PagePipeline:
        return self._pipeline if self._pipeline is not None else get_pipeline()

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = str(uuid.uuid4())
        path = scope.get("path")
        method = scope.get("method")

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=path,
            method=method,
        )

        scope.setdefault("state", {}).setdefault("request_start", time.time())
        request = Request(scope)
        annotate = get_settings().enabled and is_html_page_request(request)
        counter_token = begin_query_count()

        start = perf_counter()
        status_code: int = 500
        held_start: dict[str, Any] | None = None
        body_chunks: list[bytes] = []

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code, held_start

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_id
                if annotate and is_annotatable_response(status_code, headers):
                    held_start = message
                    return

            elif message.get("type") == "http.response.body" and held_start is not None:
                body_chunks.append(message.get("body", b""))
                if message.get("more_body", False):
                    return

                headers = MutableHeaders(scope=held_start)
                original = b"".join(body_chunks)
                body = self.annotate_page(original, request, response_charset(headers))
                if body != original:
                    headers["content-length"] = str(len(body))
                await send(held_start)
                await send({"type": "http.response.body", "body": body, "more_body": False})
                return

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = (perf_counter() - start) * 1000.0
            end_query_count(counter_token)

            structlog.get_logger("access").info(
                "http_request",
                status_code=status_code,
                elapsed_ms=round(elapsed_ms, 2),
                html_page=annotate,
            )

            structlog.contextvars.clear_contextvars()

    def annotate_page(self, body: bytes, request: Request, charset: str = "utf-8") -> bytes:
        """Insert footer scripts before </body> and append the finalize fragment.

        Returns the original body untouched if anything in the rewrite fails.
        """

        if not body.strip():
            return body

        page = PageContext(request=request, started_at=request_started_at(request))

        def _rewrite() -> bytes:
            out = body
            footer = self.pipeline.emit(FOOTER_SCRIPTS, page)
            if footer:
                out = insert_before_body_close(out, footer.encode(charset, errors="xmlcharrefreplace"))

            tail = self.pipeline.emit(RESPONSE_FINALIZE, page)
            if tail:
                out += tail.encode(charset, errors="xmlcharrefreplace")
            return out

        return best_effort(_rewrite, default=body, operation="annotate_page")
