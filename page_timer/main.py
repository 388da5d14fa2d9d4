from pathlib import Path

from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from page_timer.config import get_settings
from page_timer.db.models import Page
from page_timer.db.session import get_db, init_db
from page_timer.models.schemas import PageList, PageOut
from page_timer.observability.logging import configure_logging
from page_timer.observability.middleware import PageTimerMiddleware


app = FastAPI(title="Page Exec Timer", version="0.1.0")
app.add_middleware(PageTimerMiddleware)
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


@app.on_event("startup")
def _startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()


@app.get("/", response_class=HTMLResponse)
def index(request: Request, db: Session = Depends(get_db)) -> HTMLResponse:
    pages = db.execute(select(Page).order_by(Page.created_at.desc())).scalars().all()
    total = db.execute(select(func.count()).select_from(Page)).scalar_one()
    return templates.TemplateResponse(request, "index.html", {"pages": pages, "total": total})


@app.get("/pages/{slug}", response_class=HTMLResponse)
def show_page(slug: str, request: Request, db: Session = Depends(get_db)) -> HTMLResponse:
    page = db.execute(select(Page).where(Page.slug == slug)).scalar_one_or_none()
    if page is None:
        return templates.TemplateResponse(request, "not_found.html", {"slug": slug}, status_code=404)
    return templates.TemplateResponse(request, "page.html", {"page": page})


@app.post("/pages", response_class=HTMLResponse)
def create_page(
    request: Request,
    slug: str = Form(...),
    title: str = Form(...),
    body: str = Form(""),
    db: Session = Depends(get_db),
) -> HTMLResponse:
    page = db.execute(select(Page).where(Page.slug == slug)).scalar_one_or_none()
    if page is None:
        page = Page(slug=slug, title=title, body=body)
        db.add(page)
    else:
        page.title = title
        page.body = body
    db.commit()
    db.refresh(page)
    return templates.TemplateResponse(request, "page.html", {"page": page})


@app.get("/api/pages", response_model=PageList)
def list_pages(db: Session = Depends(get_db)) -> PageList:
    pages = db.execute(select(Page).order_by(Page.created_at.desc())).scalars().all()
    return PageList(pages=[PageOut.model_validate(p) for p in pages])


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
