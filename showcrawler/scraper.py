"""Headless browser sessions built on Crawl4AI.

A ``BrowserSession`` owns exactly one browser process for the lifetime of a
single task. The task worker that opens it is the only code that closes it.
"""

import asyncio
import contextlib
import random
import sys
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from crawl4ai import AsyncWebCrawler, BrowserConfig, CacheMode, CrawlerRunConfig

from showcrawler.errors import BrowserLaunchError, NavigationError, classify_navigation_error
from showcrawler.models import TaskKind

USER_AGENTS = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
]

PAGE_VIEWPORT = (1200, 800)
DISCOVERY_VIEWPORT = (1920, 1080)

# Slack added on top of a load's own timeouts before the caller gives up on it.
NAVIGATION_GRACE_S = 5.0

_BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-http2",
]


class Fingerprint(Protocol):
    def user_agent(self) -> str: ...

    def viewport(self, default: tuple[int, int]) -> tuple[int, int]: ...


class RandomFingerprint:
    """Pick a different user agent and a slightly jittered viewport per session."""

    def __init__(
        self,
        user_agents: list[str] | None = None,
        rng: random.Random | None = None,
        jitter_px: int = 40,
    ):
        self._user_agents = user_agents or USER_AGENTS
        self._rng = rng or random.Random()
        self._jitter_px = jitter_px

    def user_agent(self) -> str:
        return self._rng.choice(self._user_agents)

    def viewport(self, default: tuple[int, int]) -> tuple[int, int]:
        width, height = default
        j = self._jitter_px
        return width + self._rng.randint(-j, j), height + self._rng.randint(-j, j)


class FixedFingerprint:
    def __init__(self, user_agent: str = USER_AGENTS[0], viewport: tuple[int, int] | None = None):
        self._user_agent = user_agent
        self._viewport = viewport

    def user_agent(self) -> str:
        return self._user_agent

    def viewport(self, default: tuple[int, int]) -> tuple[int, int]:
        return self._viewport or default


@dataclass(frozen=True)
class PageLoad:
    """How to bring a page into a readable state."""

    wait_until: str = "domcontentloaded"
    timeout_s: float = 15.0
    settle_s: float = 0.0
    scroll_to_bottom: bool = False
    reuse_page: bool = False
    """Read the page already loaded in this session instead of navigating again."""

    @property
    def budget_s(self) -> float:
        """Upper bound on how long one navigation with this load may take."""
        return self.timeout_s + self.settle_s + NAVIGATION_GRACE_S


@dataclass
class NavigationOutcome:
    url: str
    html: str = ""
    status_code: Optional[int] = None
    final_url: Optional[str] = None
    error: Optional[NavigationError] = field(default=None)

    @property
    def ok(self) -> bool:
        return self.error is None


class BrowserSession:
    """One headless browser process plus one reusable page.

    Use as ``async with BrowserSession(...) as session:`` or call ``open`` and
    ``close`` explicitly. ``close`` is idempotent.
    """

    def __init__(
        self,
        *,
        fingerprint: Fingerprint | None = None,
        viewport: tuple[int, int] = PAGE_VIEWPORT,
        headless: bool = True,
    ):
        fingerprint = fingerprint or RandomFingerprint()
        self.user_agent = fingerprint.user_agent()
        self.viewport = fingerprint.viewport(viewport)
        self.headless = headless
        self.session_id = f"showcrawler-{uuid.uuid4().hex[:12]}"
        self.close_count = 0
        self._crawler: AsyncWebCrawler | None = None
        self._closed = False

    async def open(self) -> "BrowserSession":
        if self._crawler is not None:
            return self
        width, height = self.viewport
        browser_config = BrowserConfig(
            headless=self.headless,
            text_mode=False,
            verbose=False,
            user_agent=self.user_agent,
            viewport_width=width,
            viewport_height=height,
            extra_args=_BROWSER_ARGS,
        )
        crawler = AsyncWebCrawler(config=browser_config)
        try:
            await crawler.start()
        except Exception as e:
            with contextlib.suppress(Exception):
                await crawler.close()
            raise BrowserLaunchError(f"Could not start headless browser: {e}") from e
        self._crawler = crawler
        return self

    async def navigate(self, url: str, load: PageLoad = PageLoad()) -> NavigationOutcome:
        """Load ``url`` and return what happened. HTTP and network errors are reported, not raised."""
        if self._crawler is None:
            raise RuntimeError("BrowserSession.navigate() called before open()")

        run_config = CrawlerRunConfig(
            cache_mode=CacheMode.BYPASS,
            session_id=self.session_id,
            wait_until=load.wait_until,
            page_timeout=int(load.timeout_s * 1000),
            delay_before_return_html=load.settle_s,
            scan_full_page=load.scroll_to_bottom,
            js_only=load.reuse_page,
            verbose=False,
        )
        try:
            result = await self._crawler.arun(url=url, config=run_config)
        except Exception as e:
            return NavigationOutcome(url=url, error=classify_navigation_error(str(e)))

        final_url = getattr(result, "redirected_url", None) or result.url or url
        outcome = NavigationOutcome(
            url=url,
            html=result.html or "",
            status_code=result.status_code,
            final_url=final_url,
        )
        if not result.success:
            outcome.error = classify_navigation_error(result.error_message or "Unknown error")
        return outcome

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_count += 1
        crawler, self._crawler = self._crawler, None
        if crawler is not None:
            await crawler.close()

    async def __aenter__(self) -> "BrowserSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


SessionFactory = Callable[[TaskKind], BrowserSession]


def session_factory(
    *, fingerprint: Fingerprint | None = None, headless: bool = True
) -> SessionFactory:
    """Build the default factory: page sessions get a smaller viewport than discovery."""

    def _new_session(kind: TaskKind) -> BrowserSession:
        viewport = DISCOVERY_VIEWPORT if kind == TaskKind.DISCOVERY else PAGE_VIEWPORT
        return BrowserSession(fingerprint=fingerprint, viewport=viewport, headless=headless)

    return _new_session


async def main() -> None:
    """CLI: load a URL once and print the rendered HTML."""
    if len(sys.argv) < 2:
        print("Usage: python -m showcrawler.scraper <url>")
        print('Example: python -m showcrawler.scraper "https://example.com/karaoke"')
        sys.exit(1)

    url = sys.argv[1]
    async with BrowserSession() as session:
        outcome = await session.navigate(url)

    print("\n" + "=" * 60)
    print(f"STATUS {outcome.status_code}  FINAL URL {outcome.final_url}")
    print("=" * 60)
    if outcome.error:
        print(f"Navigation failed: {outcome.error}")
        return
    print(outcome.html[:3000])
    if len(outcome.html) > 3000:
        print(f"\n... ({len(outcome.html)} chars total, truncated)")


if __name__ == "__main__":
    asyncio.run(main())
