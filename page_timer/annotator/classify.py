from __future__ import annotations

from starlette.requests import Request

from page_timer.config import get_settings


_PAGE_METHODS = {"GET", "HEAD"}


def is_ajax_request(request: Request) -> bool:
    return request.headers.get("x-requested-with", "").lower() == "xmlhttprequest"


def is_json_request(request: Request) -> bool:
    accept = request.headers.get("accept", "").lower()
    content_type = request.headers.get("content-type", "").lower()
    return "application/json" in accept or "application/json" in content_type


def is_rest_request(request: Request, api_prefix: str | None = None) -> bool:
    prefix = (api_prefix if api_prefix is not None else get_settings().api_prefix).rstrip("/")
    if not prefix:
        return False
    path = request.url.path
    return path == prefix or path.startswith(prefix + "/")


def is_html_page_request(request: Request) -> bool:
    """True only for top-level page navigations (no AJAX, JSON or REST calls)."""

    if is_ajax_request(request) or is_json_request(request) or is_rest_request(request):
        return False
    method = (request.scope.get("method") or "GET").upper()
    return method in _PAGE_METHODS
