"""FastAPI backend exposing discovery, page extraction and full-site parsing."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import Field

from showcrawler.config import configure_logging, settings
from showcrawler.errors import PipelineLaunchError
from showcrawler.models import DiscoveryResult, ParsedWebsiteResult, StructuredRecord, WireModel
from showcrawler.pipeline import WebsiteParser

_parser: WebsiteParser | None = None


def get_parser() -> WebsiteParser:
    if _parser is None:
        raise HTTPException(status_code=503, detail="Parser not initialized")
    return _parser


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _parser
    configure_logging()
    _parser = WebsiteParser()
    yield
    await _parser.aclose()
    _parser = None


app = FastAPI(title="Karaoke Show Crawler API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)


class DiscoveryRequest(WireModel):
    url: str
    scope_include_subdomains: bool = False


class PageRequest(WireModel):
    url: str
    worker_id: int = 0


class ParseRequest(WireModel):
    url: str
    include_subdomains: bool = False
    max_workers: Optional[int] = Field(None, ge=1, le=20)


def _bad_url(e: ValueError) -> HTTPException:
    return HTTPException(status_code=422, detail=str(e))


# ── Discovery ───────────────────────────────────────────────


@app.post("/discover", response_model=DiscoveryResult)
async def discover(req: DiscoveryRequest, parser: WebsiteParser = Depends(get_parser)):
    """Find candidate show pages on a site."""
    try:
        return await parser.discover(req.url, req.scope_include_subdomains)
    except ValueError as e:
        raise _bad_url(e)
    except PipelineLaunchError as e:
        raise HTTPException(status_code=503, detail=str(e))


# ── Pages ───────────────────────────────────────────────────


@app.post("/pages/extract", response_model=StructuredRecord)
async def extract_page(req: PageRequest, parser: WebsiteParser = Depends(get_parser)):
    """Extract one page into a structured record. Failures come back as records too."""
    try:
        return await parser.extract_page(req.url, req.worker_id)
    except ValueError as e:
        raise _bad_url(e)
    except PipelineLaunchError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.post("/parse", response_model=ParsedWebsiteResult)
async def parse_website(req: ParseRequest, parser: WebsiteParser = Depends(get_parser)):
    try:
        return await parser.parse_website(req.url, req.include_subdomains, req.max_workers)
    except ValueError as e:
        raise _bad_url(e)
    except PipelineLaunchError as e:
        raise HTTPException(status_code=503, detail=str(e))


# ── Health ──────────────────────────────────────────────────


@app.get("/health/extraction")
async def extraction_health(parser: WebsiteParser = Depends(get_parser)):
    """Report whether the extraction service answers."""
    return await parser.client.test_connection()
