from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Callable

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from page_timer.config import get_settings
from page_timer.db.session import init_db
from page_timer.main import app
from page_timer.pipeline import set_pipeline


def build_request(
    method: str = "GET",
    path: str = "/",
    headers: dict[str, str] | None = None,
    state: dict | None = None,
) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "server": ("test", 80),
        "query_string": b"",
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()],
    }
    if state is not None:
        scope["state"] = state
    return Request(scope)


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'pages.db'}")
    monkeypatch.delenv("PAGE_TIMER_ENABLED", raising=False)
    get_settings.cache_clear()
    set_pipeline(None)

    init_db()

    yield

    set_pipeline(None)
    get_settings.cache_clear()


@pytest.fixture
def make_request() -> Callable[..., Request]:
    return build_request


@pytest.fixture
async def api_client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
