from __future__ import annotations

import gzip

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.responses import FileResponse, HTMLResponse, PlainTextResponse, Response, StreamingResponse

from page_timer.observability.middleware import (
    PageTimerMiddleware,
    insert_before_body_close,
    response_charset,
)
from page_timer.pipeline import FOOTER_SCRIPTS, RESPONSE_FINALIZE, PagePipeline


def _pipeline() -> PagePipeline:
    pipeline = PagePipeline()
    pipeline.subscribe(FOOTER_SCRIPTS, lambda page: "<script>footer</script>")
    pipeline.subscribe(RESPONSE_FINALIZE, lambda page: "\n<!-- tail -->")
    return pipeline


def _client(response: Response, pipeline: PagePipeline | None = None) -> AsyncClient:
    async def endpoint(scope, receive, send):
        await response(scope, receive, send)

    app = PageTimerMiddleware(endpoint, pipeline=pipeline or _pipeline())
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def test_footer_goes_before_last_body_close_and_tail_after() -> None:
    async with _client(HTMLResponse("<html><BODY><p>x</p></BODY></html>")) as client:
        resp = await client.get("/")
    assert resp.text == "<html><BODY><p>x</p><script>footer</script></BODY></html>\n<!-- tail -->"
    assert int(resp.headers["content-length"]) == len(resp.content)


async def test_fragment_without_body_tag_is_appended() -> None:
    async with _client(HTMLResponse("<p>partial</p>")) as client:
        resp = await client.get("/")
    assert resp.text == "<p>partial</p><script>footer</script>\n<!-- tail -->"


async def test_streamed_html_is_buffered_and_annotated() -> None:
    async def chunks():
        yield "<html><body>"
        yield "<p>streamed</p>"
        yield "</body></html>"

    async with _client(StreamingResponse(chunks(), media_type="text/html")) as client:
        resp = await client.get("/")
    assert resp.text.endswith("<p>streamed</p><script>footer</script></body></html>\n<!-- tail -->")
    assert int(resp.headers["content-length"]) == len(resp.content)


async def test_non_html_responses_stream_through() -> None:
    async with _client(PlainTextResponse("plain </body>")) as client:
        resp = await client.get("/")
    assert resp.text == "plain </body>"


async def test_compressed_html_is_untouched() -> None:
    payload = gzip.compress(b"<html><body></body></html>")
    response = Response(payload, media_type="text/html", headers={"content-encoding": "gzip"})
    async with _client(response) as client:
        resp = await client.get("/")
    assert resp.text == "<html><body></body></html>"


async def test_empty_html_body_is_untouched() -> None:
    async with _client(HTMLResponse("")) as client:
        resp = await client.get("/")
    assert resp.content == b""


async def test_no_content_responses_are_untouched() -> None:
    async with _client(HTMLResponse("", status_code=204)) as client:
        resp = await client.get("/")
    assert resp.status_code == 204
    assert resp.content == b""


async def test_post_requests_are_untouched() -> None:
    async with _client(HTMLResponse("<html><body></body></html>")) as client:
        resp = await client.post("/")
    assert resp.text == "<html><body></body></html>"


async def test_broken_observer_never_breaks_the_page() -> None:
    def broken(page):
        raise RuntimeError("observer failed")

    pipeline = PagePipeline()
    pipeline.subscribe(FOOTER_SCRIPTS, broken)
    pipeline.subscribe(RESPONSE_FINALIZE, lambda page: "\n<!-- tail -->")

    async with _client(HTMLResponse("<html><body></body></html>"), pipeline) as client:
        resp = await client.get("/")
    assert resp.status_code == 200
    assert resp.text == "<html><body></body></html>\n<!-- tail -->"


async def test_latin1_pages_are_encoded_with_their_charset() -> None:
    pipeline = PagePipeline()
    pipeline.subscribe(RESPONSE_FINALIZE, lambda page: "\n<!-- caf\xe9 \u0412 -->")
    response = Response(
        "<html><body>caf\xe9</body></html>".encode("latin-1"),
        media_type="text/html; charset=iso-8859-1",
    )
    async with _client(response, pipeline) as client:
        resp = await client.get("/")
    assert resp.content.endswith("\n<!-- caf\xe9 &#1042; -->".encode("latin-1"))


async def test_app_errors_propagate() -> None:
    async def failing(scope, receive, send):
        raise ValueError("app failed")

    app = PageTimerMiddleware(failing, pipeline=_pipeline())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        with pytest.raises(ValueError):
            await client.get("/")


async def test_started_at_reaches_observers() -> None:
    seen: list[float] = []

    def record(page):
        seen.append(page.started_at)
        return None

    pipeline = PagePipeline()
    pipeline.subscribe(RESPONSE_FINALIZE, record)

    async with _client(HTMLResponse("<html><body></body></html>"), pipeline) as client:
        await client.get("/")
    assert len(seen) == 1
    assert seen[0] > 0


def test_insert_before_body_close_uses_last_occurrence() -> None:
    body = b"<body><pre></body></pre></body>"
    assert insert_before_body_close(body, b"X") == b"<body><pre></body></pre>X</body>"


@pytest.mark.parametrize(
    "content_type, expected",
    [
        ("text/html; charset=ISO-8859-1", "ISO-8859-1"),
        ('text/html; charset="utf-8"', "utf-8"),
        ("text/html", "utf-8"),
        ("text/html; charset=not-a-codec", "utf-8"),
        ("text/html; charset=hex", "utf-8"),
        ("text/html; charset=base64", "utf-8"),
    ],
)
def test_response_charset(content_type: str, expected: str) -> None:
    from starlette.datastructures import MutableHeaders

    headers = MutableHeaders(raw=[(b"content-type", content_type.encode())])
    assert response_charset(headers) == expected


async def test_head_keeps_the_file_content_length(tmp_path) -> None:
    page = tmp_path / "index.html"
    page.write_bytes(b"<html><body>" + b"x" * 500 + b"</body></html>")
    size = page.stat().st_size

    async with _client(FileResponse(page, media_type="text/html")) as client:
        resp = await client.head("/")
    assert resp.status_code == 200
    assert resp.headers["content-length"] == str(size)


async def test_get_of_a_file_is_annotated_with_a_new_length(tmp_path) -> None:
    page = tmp_path / "index.html"
    page.write_bytes(b"<html><body><p>file</p></body></html>")

    async with _client(FileResponse(page, media_type="text/html")) as client:
        resp = await client.get("/")
    assert resp.text.endswith("<script>footer</script></body></html>\n<!-- tail -->")
    assert int(resp.headers["content-length"]) == len(resp.content)


async def test_binary_codec_charset_falls_back_to_utf8() -> None:
    response = Response(b"<html><body></body></html>", media_type="text/html; charset=hex")
    async with _client(response) as client:
        resp = await client.get("/")
    assert resp.status_code == 200
    assert resp.content == b"<html><body><script>footer</script></body></html>\n<!-- tail -->"


def test_failed_rewrite_returns_the_original_body(make_request) -> None:
    middleware = PageTimerMiddleware(app=None, pipeline=_pipeline())
    body = b"<html><body></body></html>"
    assert middleware.annotate_page(body, make_request(), charset="hex") == body
