"""Task workers: one URL in, one typed result out.

Each worker opens its own browser session, walks a strictly sequential
state machine, and closes the session exactly once on the way out.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

import httpx

from showcrawler.config import Settings, settings as default_settings
from showcrawler.content import LADDER, LadderStep, run_ladder
from showcrawler.errors import ExtractionError, NavigationCategory, NavigationError
from showcrawler.extractor import StructuredExtractionClient
from showcrawler.links import (
    build_discovery_payload,
    extract_links_directly,
    extract_site_name_directly,
    rank_candidates,
)
from showcrawler.models import (
    DiscoveryResult,
    ErrorKind,
    ProgressEvent,
    StructuredRecord,
    Task,
    TaskKind,
)
from showcrawler.scraper import BrowserSession, NavigationOutcome, PageLoad, SessionFactory

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressEvent], None]


class WorkerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    CONTENT_EXTRACTING = "content_extracting"
    STRUCTURED_PARSING = "structured_parsing"
    DONE = "done"
    FAILED = "failed"


class ProgressReporter:
    """Per-worker progress channel. Once closed, further messages are dropped."""

    def __init__(self, worker_id: int, sink: ProgressSink | None = None):
        self.worker_id = worker_id
        self._sink = sink
        self.closed = False

    def __call__(self, message: str) -> None:
        logger.debug("[Worker %s] %s", self.worker_id, message)
        self.emit(ProgressEvent(type="progress", worker_id=self.worker_id, message=message))

    def emit(self, event: ProgressEvent) -> None:
        if self.closed or self._sink is None:
            return
        self._sink(event)

    def close(self) -> None:
        self.closed = True


class PageTaskWorker:
    """Idle -> Loading -> ContentExtracting -> StructuredParsing -> Done | Failed."""

    def __init__(
        self,
        task: Task,
        *,
        client: StructuredExtractionClient,
        new_session: SessionFactory,
        reporter: ProgressReporter | None = None,
        config: Settings | None = None,
        ladder: tuple[LadderStep, ...] = LADDER,
    ):
        self.task = task
        self.state = WorkerState.IDLE
        self._client = client
        self._new_session = new_session
        self._say = reporter or ProgressReporter(task.worker_id)
        self._settings = config or default_settings
        self._ladder = ladder

    def _fail(self, error: str, kind: ErrorKind) -> StructuredRecord:
        self.state = WorkerState.FAILED
        self._say(f"Error: {error}")
        return StructuredRecord.failed(self.task.url, error, kind, self.task.worker_id)

    async def run(self) -> StructuredRecord:
        url = self.task.url
        session = self._new_session(TaskKind.PAGE_EXTRACTION)
        try:
            self.state = WorkerState.LOADING
            self._say(f"Starting page processing for: {url[:60]}")
            await session.open()

            self.state = WorkerState.CONTENT_EXTRACTING
            outcome = await run_ladder(
                session,
                url,
                min_chars=self._settings.content_min_chars,
                steps=self._ladder,
                report=self._say,
            )
            if outcome.status == "blocked":
                return self._fail(outcome.last_error, ErrorKind.BLOCKED_OR_ERROR_PAGE)
            if outcome.navigation_error is not None:
                return self._fail(str(outcome.navigation_error), ErrorKind.NAVIGATION)
            if not outcome.sufficient:
                return self._fail(outcome.last_error, ErrorKind.INSUFFICIENT_CONTENT)

            text = outcome.extracted.text
            self._say(f"Extracted {len(text)} chars of content")

            self.state = WorkerState.STRUCTURED_PARSING
            self._say("Parsing content with the extraction service...")
            try:
                payload = await self._client.extract_record(text, url)
            except ExtractionError as e:
                return self._fail(str(e), e.error_kind)

            record = StructuredRecord(
                url=url,
                worker_id=self.task.worker_id,
                success=payload.success,
                vendor=payload.vendor,
                dj=payload.dj,
                show=payload.show if payload.success else None,
                source=url,
            )
            self.state = WorkerState.DONE
            self._say(_summarize(record))
            return record
        except asyncio.CancelledError:
            self.state = WorkerState.FAILED
            raise
        finally:
            await session.close()


def _summarize(record: StructuredRecord) -> str:
    if not record.success:
        return "No karaoke data found in page"
    show = record.show
    fields = [
        record.vendor and f"Vendor: {record.vendor}",
        record.dj and f"DJ: {record.dj}",
        show.venue and f"Venue: {show.venue}",
        show.address and f"Address: {show.address}",
        show.time and f"Time: {show.time}",
    ]
    return "Parsed: " + (", ".join(f for f in fields if f) or "Basic info")


# Discovery loads the seed page with a strict wait first, then a lenient one.
DISCOVERY_LOADS = (
    PageLoad(wait_until="networkidle", timeout_s=30.0, settle_s=2.0),
    PageLoad(wait_until="domcontentloaded", timeout_s=20.0, settle_s=2.0),
)


class DiscoveryTaskWorker:
    """Same shape as the page worker, but parsing failures fall back to local link ranking."""

    def __init__(
        self,
        task: Task,
        *,
        client: StructuredExtractionClient,
        new_session: SessionFactory,
        reporter: ProgressReporter | None = None,
        config: Settings | None = None,
        probe_client: httpx.AsyncClient | None = None,
    ):
        self.task = task
        self.state = WorkerState.IDLE
        self._client = client
        self._new_session = new_session
        self._say = reporter or ProgressReporter(task.worker_id)
        self._settings = config or default_settings
        self._probe_client = probe_client

    async def _probe(self, url: str) -> None:
        """Pre-flight GET. Only informative: any failure is reported and ignored."""
        self._say("Testing website connectivity...")
        try:
            if self._probe_client is not None:
                resp = await self._probe_client.get(url)
            else:
                async with httpx.AsyncClient(
                    timeout=self._settings.connectivity_timeout_s, follow_redirects=True
                ) as client:
                    resp = await client.get(url)
            self._say(f"Website responded with status: {resp.status_code}")
        except httpx.HTTPError as e:
            self._say(f"Connectivity test warning: {type(e).__name__}: {e}")

    async def _load(self, session: BrowserSession, url: str) -> NavigationOutcome:
        outcome = NavigationOutcome(url=url)
        for attempt, load in enumerate(DISCOVERY_LOADS):
            if attempt:
                self._say("Retrying with simpler wait condition...")
            try:
                outcome = await asyncio.wait_for(session.navigate(url, load), timeout=load.budget_s)
            except asyncio.TimeoutError:
                outcome = NavigationOutcome(
                    url=url,
                    error=NavigationError(
                        NavigationCategory.TIMEOUT, f"Navigation timeout after {load.budget_s:.0f}s"
                    ),
                )
            if outcome.ok:
                self._say(f"Successfully loaded: {outcome.final_url or url}")
                return outcome
            self._say(f"Navigation warning: {outcome.error}")
            # Retrying cannot fix a name that does not resolve.
            if outcome.error.category == NavigationCategory.DNS_RESOLUTION_FAILED:
                break
        return outcome

    async def run(self) -> DiscoveryResult:
        url = self.task.url
        scope = self.task.scope
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        if self._settings.connectivity_probe:
            await self._probe(url)

        session = self._new_session(TaskKind.DISCOVERY)
        try:
            self.state = WorkerState.LOADING
            self._say("Launching browser for URL discovery...")
            await session.open()
            self._say(f"Using user agent: {session.user_agent[:50]}...")

            outcome = await self._load(session, url)
            if not outcome.ok:
                self.state = WorkerState.FAILED
                self._say(f"{outcome.error.category.value} after {elapsed_ms()}ms")
                return DiscoveryResult(
                    success=False, error=str(outcome.error), discovery_time_ms=elapsed_ms()
                )

            self.state = WorkerState.CONTENT_EXTRACTING
            base_url = outcome.final_url or url
            payload = build_discovery_payload(
                outcome.html,
                limit=self._settings.discovery_payload_limit,
                large_threshold=self._settings.discovery_large_threshold,
            )
            self._say(f"Extracted {len(payload)} chars of navigation HTML")

            self.state = WorkerState.STRUCTURED_PARSING
            used_fallback = False
            try:
                discovered = await self._client.discover_urls(payload, base_url, scope)
                candidates = rank_candidates(discovered.urls, base_url, scope)
                site_name = discovered.site_name or "Unknown Site"
            except ExtractionError as e:
                self._say(f"URL discovery failed: {e}")
                self._say("Falling back to direct HTML link extraction...")
                candidates = extract_links_directly(
                    outcome.html, base_url, scope, limit=self._settings.fallback_url_limit
                )
                site_name = extract_site_name_directly(outcome.html)
                used_fallback = True

            self.state = WorkerState.DONE
            self._say(f"URL discovery complete! Found {len(candidates)} URLs in {elapsed_ms()}ms")
            return DiscoveryResult(
                success=True,
                urls=[c.absolute_url for c in candidates],
                candidates=candidates,
                site_name=site_name,
                discovery_time_ms=elapsed_ms(),
                used_fallback=used_fallback,
            )
        except asyncio.CancelledError:
            self.state = WorkerState.FAILED
            raise
        finally:
            self._say("Closing browser...")
            await session.close()


TaskOutput = Union[StructuredRecord, DiscoveryResult]
TaskRunner = Callable[[Task, ProgressReporter], Awaitable[TaskOutput]]


def task_runner(
    client: StructuredExtractionClient,
    new_session: SessionFactory,
    config: Settings | None = None,
    *,
    probe_client: Optional[httpx.AsyncClient] = None,
) -> TaskRunner:
    """Build the callable the pool uses to execute a task of either kind."""

    async def run(task: Task, reporter: ProgressReporter) -> TaskOutput:
        if task.kind == TaskKind.DISCOVERY:
            worker = DiscoveryTaskWorker(
                task,
                client=client,
                new_session=new_session,
                reporter=reporter,
                config=config,
                probe_client=probe_client,
            )
        else:
            worker = PageTaskWorker(
                task, client=client, new_session=new_session, reporter=reporter, config=config
            )
        return await worker.run()

    return run
