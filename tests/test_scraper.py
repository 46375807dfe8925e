import random

import pytest

from showcrawler import scraper
from showcrawler.errors import BrowserLaunchError, NavigationCategory
from showcrawler.models import TaskKind
from showcrawler.scraper import (
    DISCOVERY_VIEWPORT,
    NAVIGATION_GRACE_S,
    PAGE_VIEWPORT,
    USER_AGENTS,
    BrowserSession,
    FixedFingerprint,
    PageLoad,
    RandomFingerprint,
    session_factory,
)


class _Result:
    def __init__(self, success=True, html="<p>hi</p>", error_message=None):
        self.success = success
        self.html = html
        self.status_code = 200 if success else None
        self.error_message = error_message
        self.url = "https://bar.test/"
        self.redirected_url = "https://bar.test/home"


class FakeCrawler:
    instances = []

    def __init__(self, config=None, fail_start=False, result=None, raise_on_run=None):
        self.config = config
        self.fail_start = fail_start
        self.result = result or _Result()
        self.raise_on_run = raise_on_run
        self.closed = 0
        self.run_configs = []
        FakeCrawler.instances.append(self)

    async def start(self):
        if self.fail_start:
            raise RuntimeError("Executable doesn't exist at /ms-playwright/chromium")

    async def arun(self, url, config):
        self.run_configs.append(config)
        if self.raise_on_run:
            raise self.raise_on_run
        return self.result

    async def close(self):
        self.closed += 1


@pytest.fixture
def fake_crawler(monkeypatch):
    FakeCrawler.instances = []

    def install(**kwargs):
        monkeypatch.setattr(scraper, "AsyncWebCrawler", lambda config=None: FakeCrawler(config, **kwargs))

    install()
    return install


class TestFingerprints:
    def test_fixed_fingerprint(self):
        fp = FixedFingerprint("agent/1.0", (800, 600))
        session = BrowserSession(fingerprint=fp)
        assert session.user_agent == "agent/1.0"
        assert session.viewport == (800, 600)

    def test_random_fingerprint_is_seedable(self):
        a = RandomFingerprint(rng=random.Random(7))
        b = RandomFingerprint(rng=random.Random(7))
        assert a.user_agent() == b.user_agent()
        assert a.viewport((1200, 800)) == b.viewport((1200, 800))

    def test_random_viewport_stays_near_default(self):
        fp = RandomFingerprint(rng=random.Random(1), jitter_px=10)
        for _ in range(20):
            width, height = fp.viewport((1200, 800))
            assert 1190 <= width <= 1210
            assert 790 <= height <= 810
        assert fp.user_agent() in USER_AGENTS

    def test_factory_sizes_viewport_by_kind(self):
        new_session = session_factory(fingerprint=FixedFingerprint())
        assert new_session(TaskKind.DISCOVERY).viewport == DISCOVERY_VIEWPORT
        assert new_session(TaskKind.PAGE_EXTRACTION).viewport == PAGE_VIEWPORT


def test_page_load_budget_includes_settle_and_grace():
    load = PageLoad(timeout_s=15, settle_s=2)
    assert load.budget_s == 17 + NAVIGATION_GRACE_S


@pytest.mark.asyncio
class TestBrowserSession:
    async def test_close_is_idempotent(self, fake_crawler):
        session = BrowserSession(fingerprint=FixedFingerprint())
        await session.open()
        await session.close()
        await session.close()
        assert session.close_count == 1
        assert FakeCrawler.instances[0].closed == 1

    async def test_context_manager_closes(self, fake_crawler):
        async with BrowserSession(fingerprint=FixedFingerprint()) as session:
            pass
        assert session.close_count == 1

    async def test_launch_failure_raises_browser_launch_error(self, fake_crawler):
        fake_crawler(fail_start=True)
        session = BrowserSession(fingerprint=FixedFingerprint())
        with pytest.raises(BrowserLaunchError, match="Could not start headless browser"):
            await session.open()
        assert FakeCrawler.instances[0].closed == 1
        await session.close()
        assert FakeCrawler.instances[0].closed == 1

    async def test_navigate_before_open(self):
        session = BrowserSession(fingerprint=FixedFingerprint())
        with pytest.raises(RuntimeError):
            await session.navigate("https://bar.test/")

    async def test_navigate_maps_load_to_run_config(self, fake_crawler):
        session = BrowserSession(fingerprint=FixedFingerprint())
        await session.open()
        load = PageLoad(wait_until="networkidle", timeout_s=25, settle_s=2, scroll_to_bottom=True)

        outcome = await session.navigate("https://bar.test/", load)

        assert outcome.ok
        assert outcome.html == "<p>hi</p>"
        assert outcome.final_url == "https://bar.test/home"
        config = FakeCrawler.instances[0].run_configs[0]
        assert config.wait_until == "networkidle"
        assert config.page_timeout == 25000
        assert config.session_id == session.session_id
        await session.close()

    async def test_failed_crawl_is_classified(self, fake_crawler):
        fake_crawler(result=_Result(success=False, html="", error_message="net::ERR_NAME_NOT_RESOLVED"))
        session = BrowserSession(fingerprint=FixedFingerprint())
        await session.open()

        outcome = await session.navigate("https://nope.invalid/")

        assert not outcome.ok
        assert outcome.error.category == NavigationCategory.DNS_RESOLUTION_FAILED
        await session.close()

    async def test_crawler_exception_is_classified(self, fake_crawler):
        fake_crawler(raise_on_run=RuntimeError("Navigation timeout of 15000 ms exceeded"))
        session = BrowserSession(fingerprint=FixedFingerprint())
        await session.open()

        outcome = await session.navigate("https://slow.test/")

        assert outcome.error.category == NavigationCategory.TIMEOUT
        await session.close()
