import asyncio
import json
from typing import Callable, Optional

import httpx
import pytest

from showcrawler.config import Settings
from showcrawler.errors import BrowserLaunchError, classify_navigation_error
from showcrawler.extractor import StructuredExtractionClient
from showcrawler.models import TaskKind
from showcrawler.scraper import NavigationOutcome, PageLoad

LLM_URL = "https://llm.test/v1/chat/completions"

KARAOKE_TEXT = "Join us for karaoke every Friday at 9pm at O'Nelly's Sports Pub downtown. " * 20

KARAOKE_PAGE = f"""<html>
<head><title>O'Nelly's Sports Pub</title></head>
<body>
  <nav><a href="/">Home</a></nav>
  <main><h1>Karaoke Night</h1><p>{KARAOKE_TEXT}</p></main>
</body>
</html>"""

ONELLYS_RESPONSE = {
    "success": True,
    "vendor": "O'Nelly's Sports Pub",
    "dj": "DJ Mike",
    "show": {
        "venue": "O'Nelly's Sports Pub",
        "address": "123 Main St",
        "city": "Olympia",
        "state": "WA",
        "dayOfWeek": "Friday",
        "time": "9pm",
    },
}


class FakeSession:
    """Stands in for BrowserSession without launching a browser.

    ``respond(url, load)`` decides what each navigation returns; it may be a
    coroutine function to simulate slow or hanging pages.
    """

    def __init__(
        self,
        respond: Optional[Callable] = None,
        *,
        html: str = "",
        error: Optional[str] = None,
        fail_open: bool = False,
    ):
        self._respond = respond
        self._html = html
        self._error = error
        self._fail_open = fail_open
        self.user_agent = "Mozilla/5.0 (test)"
        self.loads: list[PageLoad] = []
        self.opened = False
        self.close_count = 0

    async def open(self):
        if self._fail_open:
            raise BrowserLaunchError("Could not start headless browser: no chromium")
        self.opened = True
        return self

    async def navigate(self, url: str, load: PageLoad = PageLoad()) -> NavigationOutcome:
        self.loads.append(load)
        if self._respond is not None:
            result = self._respond(url, load)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        if self._error is not None:
            return NavigationOutcome(url=url, error=classify_navigation_error(self._error))
        return NavigationOutcome(url=url, html=self._html, status_code=200, final_url=url)

    async def close(self) -> None:
        self.close_count += 1


class SessionRecorder:
    """Session factory that hands out one FakeSession per call and remembers them."""

    def __init__(self, make: Callable[[], FakeSession]):
        self._make = make
        self.sessions: list[FakeSession] = []
        self.kinds: list[TaskKind] = []

    def __call__(self, kind: TaskKind) -> FakeSession:
        session = self._make()
        self.kinds.append(kind)
        self.sessions.append(session)
        return session


def chat_response(content) -> httpx.Response:
    if not isinstance(content, str):
        content = json.dumps(content)
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def make_client(handler: Callable[[httpx.Request], httpx.Response], config: Settings):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StructuredExtractionClient(config, http_client=http_client)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        llm_base_url="https://llm.test/v1",
        llm_api_key="test-key",
        connectivity_probe=False,
        worker_stagger_s=0,
        task_timeout_s=5,
    )
