import asyncio
import json
import re

import httpx
import pytest

from conftest import KARAOKE_PAGE, ONELLYS_RESPONSE, FakeSession, SessionRecorder, chat_response, make_client
from showcrawler.errors import PipelineLaunchError
from showcrawler.models import (
    ErrorKind,
    ScopeConfig,
    StructuredRecord,
    Task,
    TaskKind,
    WorkerComplete,
    WorkerFailed,
)
from showcrawler.pipeline import WebsiteParser, result_to_record, unique_urls

SEED = "https://onellys.test/"


def llm_handler(discovered_urls, failing_sources=()):
    """Answer discovery with ``discovered_urls``; pages with the O'Nelly's record."""

    def handler(request: httpx.Request) -> httpx.Response:
        user = json.loads(request.content)["messages"][1]["content"]
        if user.startswith("[url-discovery"):
            return chat_response({"siteName": "O'Nelly's", "urls": discovered_urls})
        source = re.search(r"SOURCE URL: (\S+)", user).group(1)
        if source in failing_sources:
            return httpx.Response(500, text="upstream exploded")
        return chat_response(ONELLYS_RESPONSE)

    return handler


class TestUniqueUrls:
    def test_seed_first_and_deduplicated(self):
        urls = unique_urls("https://a.test", ["https://a.test/", "https://a.test/x", "https://a.test/x#y"])
        assert urls == ["https://a.test/", "https://a.test/x"]


@pytest.mark.asyncio
class TestWebsiteParser:
    async def test_full_run_aggregates_pages(self, test_settings):
        sessions = SessionRecorder(lambda: FakeSession(html=KARAOKE_PAGE))
        client = make_client(
            llm_handler(["/karaoke", "/events", SEED], failing_sources={"https://onellys.test/events"}),
            test_settings,
        )
        parser = WebsiteParser(test_settings, client=client, new_session=sessions)
        events = []

        result = await parser.parse_website(SEED, max_workers=2, on_progress=events.append)

        assert result.success is True
        assert result.site_name == "O'Nelly's"
        assert result.total_urls == 3
        assert result.processed_urls == 3
        assert len(result.shows) == 1
        show = result.shows[0]
        assert show.venue == "O'Nelly's Sports Pub"
        assert show.source == SEED
        assert show.duplicate_sources == ["https://onellys.test/karaoke"]
        assert [v.name for v in result.vendors] == ["O'Nelly's Sports Pub"]
        assert [d.name for d in result.djs] == ["DJ Mike"]
        assert result.failed_count == 1
        assert result.failure_reasons == {"extraction_service:server_error": 1}
        assert result.stats.total_ms >= result.stats.processing_ms

        # One discovery session plus one per page, each closed once.
        assert len(sessions.sessions) == 4
        assert all(s.close_count == 1 for s in sessions.sessions)
        completes = sorted(e.worker_id for e in events if e.type == "complete")
        assert completes == [0, 1, 2, 3]

    async def test_discovery_failure_is_reported_not_raised(self, test_settings):
        sessions = SessionRecorder(lambda: FakeSession(error="net::ERR_NAME_NOT_RESOLVED"))
        client = make_client(llm_handler([]), test_settings)
        parser = WebsiteParser(test_settings, client=client, new_session=sessions)

        result = await parser.parse_website("https://nope.invalid/")

        assert result.success is False
        assert result.error.startswith("DNS Resolution Failed:")
        assert result.shows == []
        assert len(sessions.sessions) == 1

    async def test_browser_launch_failure_raises(self, test_settings):
        sessions = SessionRecorder(lambda: FakeSession(fail_open=True))
        client = make_client(llm_handler([]), test_settings)
        parser = WebsiteParser(test_settings, client=client, new_session=sessions)

        with pytest.raises(PipelineLaunchError):
            await parser.parse_website(SEED)

    async def test_seed_only_when_nothing_discovered(self, test_settings):
        sessions = SessionRecorder(lambda: FakeSession(html=KARAOKE_PAGE))
        client = make_client(llm_handler([]), test_settings)
        parser = WebsiteParser(test_settings, client=client, new_session=sessions)

        result = await parser.parse_website(SEED)

        assert result.success is True
        assert result.total_urls == 1
        assert len(result.shows) == 1

    async def test_extract_page_returns_record(self, test_settings):
        sessions = SessionRecorder(lambda: FakeSession(html=KARAOKE_PAGE))
        client = make_client(llm_handler([]), test_settings)
        parser = WebsiteParser(test_settings, client=client, new_session=sessions)

        record = await parser.extract_page("https://onellys.test/karaoke", worker_id=7)

        assert record.success is True
        assert record.worker_id == 7
        assert record.show.time == "9pm"

    async def test_page_timeout_becomes_failed_record(self, test_settings):
        config = test_settings.model_copy(update={"task_timeout_s": 0.2})

        async def hang(url, load):
            await asyncio.sleep(60)

        sessions = SessionRecorder(lambda: FakeSession(hang))
        client = make_client(llm_handler([]), config)
        parser = WebsiteParser(config, client=client, new_session=sessions)
        url = "https://onellys.test/slow"

        [record] = await parser.extract_pages([url], ScopeConfig.for_url(url))

        assert record.success is False
        assert record.error_kind == ErrorKind.WORKER_TIMEOUT
        assert record.url == url

    async def test_discovery_timeout_reports_elapsed_time(self, test_settings):
        config = test_settings.model_copy(update={"task_timeout_s": 0.2})

        async def hang(url, load):
            await asyncio.sleep(60)

        sessions = SessionRecorder(lambda: FakeSession(hang))
        client = make_client(llm_handler([]), config)
        parser = WebsiteParser(config, client=client, new_session=sessions)

        result = await parser.discover(SEED)

        assert result.success is False
        assert "operation timeout" in result.error
        assert result.discovery_time_ms >= 150


def test_result_to_record_handles_both_variants():
    task = Task(url=SEED, scope=ScopeConfig.for_url(SEED), kind=TaskKind.PAGE_EXTRACTION, worker_id=2)
    failed = WorkerFailed(
        task=task,
        reason="Worker 2 operation timeout after 100 seconds",
        error_kind=ErrorKind.WORKER_TIMEOUT,
    )
    record = result_to_record(failed)
    assert record.error_kind == ErrorKind.WORKER_TIMEOUT
    assert record.worker_id == 2

    done = StructuredRecord.failed(SEED, "thin", ErrorKind.INSUFFICIENT_CONTENT, 2)
    assert result_to_record(WorkerComplete(task=task, value=done)) == done
