"""Full website pipeline: discover candidate URLs, extract every page, aggregate shows."""

import asyncio
import json
import logging
import sys
import time
from typing import Callable, Optional

import httpx

from showcrawler.aggregator import aggregate
from showcrawler.config import Settings, configure_logging, settings as default_settings
from showcrawler.errors import PipelineLaunchError
from showcrawler.extractor import StructuredExtractionClient
from showcrawler.links import normalize_url
from showcrawler.models import (
    DiscoveryResult,
    ErrorKind,
    ParsedWebsiteResult,
    ParseStats,
    ProgressEvent,
    ScopeConfig,
    StructuredRecord,
    Task,
    TaskKind,
    WorkerFailed,
    WorkerResult,
)
from showcrawler.orchestrator import WorkerPool
from showcrawler.scraper import SessionFactory, session_factory
from showcrawler.workers import task_runner

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _log_progress(event: ProgressEvent) -> None:
    if event.type == "progress":
        logger.info("[Worker %s] %s", event.worker_id, event.message)
    elif event.type == "error":
        logger.warning("[Worker %s] failed: %s", event.worker_id, event.message)


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)


def result_to_record(result: WorkerResult) -> StructuredRecord:
    """Every submitted URL ends up as exactly one record, failed or not."""
    if isinstance(result, WorkerFailed):
        return result.as_record()
    value = result.value
    if isinstance(value, StructuredRecord):
        return value
    return StructuredRecord.failed(
        result.task.url, "Unexpected discovery result for a page task", ErrorKind.WORKER_CRASHED
    )


def unique_urls(seed: str, discovered: list[str]) -> list[str]:
    """Seed first, then discovered URLs, deduplicated by normalized form."""
    seen: set[str] = set()
    out: list[str] = []
    for url in [seed, *discovered]:
        normalized = normalize_url(url)
        if normalized not in seen:
            seen.add(normalized)
            out.append(normalized)
    return out


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class WebsiteParser:
    """
    Wires discovery, the worker pool and aggregation together.

    Every collaborator is injectable so runs can be configured per call and
    tests can swap in fakes for the browser and the extraction service.
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        client: StructuredExtractionClient | None = None,
        new_session: SessionFactory | None = None,
        probe_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = config or default_settings
        self._owns_client = client is None
        self.client = client or StructuredExtractionClient(self.settings)
        self._new_session = new_session or session_factory(headless=self.settings.headless)
        self._runner = task_runner(
            self.client, self._new_session, self.settings, probe_client=probe_client
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _pool(self, concurrency: int) -> WorkerPool:
        return WorkerPool(
            concurrency,
            self.settings.task_timeout_s,
            stagger_s=self.settings.worker_stagger_s,
        )

    async def discover(
        self,
        url: str,
        include_subdomains: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> DiscoveryResult:
        """Run one discovery task under the pool's deadline."""
        scope = ScopeConfig.for_url(url, include_subdomains)
        task = Task(url=url, scope=scope, kind=TaskKind.DISCOVERY)
        started = time.monotonic()
        [result] = await self._pool(1).run([task], self._runner, on_progress or _log_progress)
        if isinstance(result, WorkerFailed):
            return DiscoveryResult(
                success=False, error=result.reason, discovery_time_ms=_elapsed_ms(started)
            )
        return result.value

    async def extract_pages(
        self,
        urls: list[str],
        scope: ScopeConfig,
        max_workers: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[StructuredRecord]:
        """Extract every URL; the returned list lines up with ``urls``."""
        tasks = [
            Task(url=u, scope=scope, kind=TaskKind.PAGE_EXTRACTION, worker_id=i)
            for i, u in enumerate(urls, 1)
        ]
        pool = self._pool(max_workers or self.settings.max_workers)
        results = await pool.run(tasks, self._runner, on_progress or _log_progress)
        return [result_to_record(r) for r in results]

    async def extract_page(
        self, url: str, worker_id: int = 0, on_progress: ProgressCallback | None = None
    ) -> StructuredRecord:
        scope = ScopeConfig.for_url(url)
        task = Task(url=url, scope=scope, kind=TaskKind.PAGE_EXTRACTION, worker_id=worker_id)
        [result] = await self._pool(1).run([task], self._runner, on_progress or _log_progress)
        return result_to_record(result)

    async def parse_website(
        self,
        url: str,
        include_subdomains: bool = False,
        max_workers: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ParsedWebsiteResult:
        """
        Run the full pipeline for one seed URL.

        Raises ``PipelineLaunchError`` when no browser can be started, so a
        run that never began is distinguishable from one where every page
        failed.
        """
        started = time.monotonic()
        workers = max_workers or self.settings.max_workers
        logger.info("Starting website parsing for: %s", url)
        logger.info("Subdomains: %s, Workers: %d", include_subdomains, workers)

        discovery = await self.discover(url, include_subdomains, on_progress)
        discovery_ms = _elapsed_ms(started)
        if not discovery.success:
            logger.warning("Discovery failed: %s", discovery.error)
            return ParsedWebsiteResult(
                success=False,
                url=url,
                error=discovery.error or "No URLs discovered",
                stats=ParseStats(discovery_ms=discovery_ms, total_ms=_elapsed_ms(started)),
            )

        urls = unique_urls(url, discovery.urls)
        logger.info("Found %d unique URLs in %dms", len(urls), discovery_ms)
        logger.info('Site name: "%s"', discovery.site_name)

        processing_started = time.monotonic()
        scope = ScopeConfig.for_url(url, include_subdomains)
        records = await self.extract_pages(urls, scope, workers, on_progress)
        processing_ms = _elapsed_ms(processing_started)

        summary = aggregate(records)
        logger.info(
            "Completed %d pages in %dms: %d shows, %d failed",
            len(records),
            processing_ms,
            len(summary.shows),
            summary.failed_count,
        )

        return ParsedWebsiteResult(
            success=True,
            url=url,
            site_name=discovery.site_name,
            total_urls=len(urls),
            processed_urls=len(records),
            shows=summary.shows,
            djs=summary.djs,
            vendors=summary.vendors,
            failed_count=summary.failed_count,
            failure_reasons=summary.failure_reasons,
            stats=ParseStats(
                discovery_ms=discovery_ms,
                processing_ms=processing_ms,
                total_ms=_elapsed_ms(started),
            ),
        )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _parse_main_args() -> tuple[str | None, bool, int | None]:
    """Return (url, include_subdomains, max_workers)."""
    include_subdomains = "--subdomains" in sys.argv
    max_workers: int | None = None
    positionals: list[str] = []

    i = 1
    while i < len(sys.argv):
        a = sys.argv[i]
        if a == "--subdomains":
            i += 1
            continue
        if a == "--workers":
            if i + 1 < len(sys.argv) and sys.argv[i + 1].isdigit():
                max_workers = max(1, int(sys.argv[i + 1]))
                i += 2
                continue
            i += 1
            continue
        if a.startswith("--workers="):
            try:
                max_workers = max(1, int(a.split("=", 1)[1]))
            except ValueError:
                pass
            i += 1
            continue
        if not a.startswith("--"):
            positionals.append(a)
        i += 1

    url = positionals[0] if positionals else None
    return url, include_subdomains, max_workers


def _print_progress(event: ProgressEvent) -> None:
    if event.type == "progress":
        print(f"[Worker {event.worker_id}] {event.message}")
    elif event.type == "error":
        print(f"[Worker {event.worker_id}] ERROR: {event.message}")


async def main() -> None:
    """CLI entry point."""
    url, include_subdomains, max_workers = _parse_main_args()
    if not url:
        print("Usage: python -m showcrawler.pipeline <url> [--subdomains] [--workers N]")
        print('Example: python -m showcrawler.pipeline "https://example.com" --workers 3')
        sys.exit(1)

    configure_logging()
    parser = WebsiteParser()
    try:
        result = await parser.parse_website(
            url, include_subdomains, max_workers, on_progress=_print_progress
        )
    except PipelineLaunchError as e:
        print(f"Pipeline could not start: {e}")
        sys.exit(2)
    finally:
        await parser.aclose()

    print(f"\n{'=' * 60}")
    if not result.success:
        print(f"FAILED: {result.error}")
        sys.exit(1)
    print(f"{result.site_name}: {len(result.shows)} shows from {result.processed_urls} pages")
    print(f"{'=' * 60}")
    for show in result.shows:
        print(f"  {show.venue} | {show.day_of_week or '?'} | {show.time or '?'}")
        if show.address:
            print(f"           {show.address}, {show.city or ''} {show.state or ''}")
        print(f"           Source: {show.source}")
    if result.failed_count:
        print(f"\nFailed URLs: {result.failed_count}")
        print(json.dumps(result.failure_reasons, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
