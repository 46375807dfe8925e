"""Turn a loaded page into readable text with an escalating list of strategies."""

import asyncio
import html as html_lib
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional

from bs4 import BeautifulSoup

from showcrawler.errors import NavigationCategory, NavigationError
from showcrawler.models import ContentStrategy, ExtractedText
from showcrawler.scraper import BrowserSession, PageLoad

logger = logging.getLogger(__name__)

DEFAULT_MIN_CHARS = 200

# Region extraction falls back to raw text nodes below this length.
REGION_MIN_CHARS = 100

CONTENT_SELECTORS = [
    "main",
    '[role="main"]',
    ".content",
    ".main-content",
    ".page-content",
    ".entry-content",
    ".post-content",
    "article",
    ".article-content",
    "#content",
    ".container",
    ".wrapper",
    ".site-content",
    ".primary-content",
    '[class*="content"]',
    '[class*="main"]',
    '[id*="content"]',
    '[id*="main"]',
]

CONTENT_KEYWORDS = ("karaoke", "venue", "bar", "restaurant")

# Matched anywhere in the text.
BLOCK_SIGNATURES = (
    "403 forbidden",
    "access denied",
    "are you a robot",
    "verify you are human",
)

# Matched only when the whole page text is shorter than the given length.
SHORT_PAGE_SIGNATURES = (
    ("page not found", 1000),
    ("not found", 1000),
    ("captcha", 1000),
    ("error", 200),
)

_HIDDEN_STYLE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)
_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_NOSCRIPT_RE = re.compile(r"<noscript[^>]*>.*?</noscript>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


# ---------------------------------------------------------------------------
# Text extractors
# ---------------------------------------------------------------------------


def _visible_soup(markup: str) -> BeautifulSoup:
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    hidden = soup.find_all(style=_HIDDEN_STYLE) + soup.find_all(attrs={"hidden": True})
    for element in hidden:
        if not element.decomposed:
            element.decompose()
    return soup


def extract_region_text(markup: str) -> str:
    """
    Pull visible text from the regions most likely to hold page content.

    Every content selector is tried. The longest region mentioning a
    venue keyword wins if it is substantial; otherwise the largest block,
    ``<body>`` included. Very short results fall back to joining every
    visible text node.
    """
    soup = _visible_soup(markup)

    best = ""
    fallback = _collapse((soup.body or soup).get_text(" "))
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        text = _collapse(element.get_text(" "))
        lowered = text.lower()
        if any(k in lowered for k in CONTENT_KEYWORDS) and len(text) > len(best):
            best = text
        if len(text) > len(fallback):
            fallback = text

    content = best if len(best) >= DEFAULT_MIN_CHARS else fallback
    if len(content) < REGION_MIN_CHARS:
        nodes = [s for s in (soup.body or soup).stripped_strings if len(s) > 3]
        joined = _collapse(" ".join(nodes))
        if len(joined) > len(content):
            content = joined
    return content


def strip_html_text(markup: str) -> str:
    """Last-resort textual strip of scripts, styles and tags."""
    text = _SCRIPT_RE.sub("", markup)
    text = _STYLE_RE.sub("", text)
    text = _NOSCRIPT_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    return _collapse(html_lib.unescape(text))


def find_block_signature(text: str) -> Optional[str]:
    """Return the error/block-page phrase ``text`` matches, if any."""
    lowered = text.lower()
    for signature in BLOCK_SIGNATURES:
        if signature in lowered:
            return signature
    for signature, max_len in SHORT_PAGE_SIGNATURES:
        if len(text) < max_len and signature in lowered:
            return signature
    return None


# ---------------------------------------------------------------------------
# Ladder
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LadderStep:
    strategy: ContentStrategy
    load: PageLoad
    extract: Callable[[str], str]


LADDER: tuple[LadderStep, ...] = (
    LadderStep(
        ContentStrategy.FAST,
        PageLoad(wait_until="domcontentloaded", timeout_s=15.0, settle_s=2.0),
        extract_region_text,
    ),
    LadderStep(
        ContentStrategy.MEDIUM,
        PageLoad(wait_until="networkidle", timeout_s=25.0),
        extract_region_text,
    ),
    LadderStep(
        ContentStrategy.SLOW,
        PageLoad(wait_until="domcontentloaded", timeout_s=15.0, settle_s=7.0, scroll_to_bottom=True),
        extract_region_text,
    ),
    LadderStep(
        ContentStrategy.RAW,
        PageLoad(timeout_s=10.0, reuse_page=True),
        strip_html_text,
    ),
)


def ladder_budget_s(steps: tuple[LadderStep, ...] = LADDER) -> float:
    return sum(step.load.budget_s for step in steps)


@dataclass
class LadderOutcome:
    status: Literal["sufficient", "blocked", "insufficient"]
    extracted: Optional[ExtractedText] = None
    last_error: Optional[str] = None
    attempts: list[str] = field(default_factory=list)
    navigation_error: Optional[NavigationError] = None
    """Set when no strategy ever got a page to load."""

    @property
    def sufficient(self) -> bool:
        return self.status == "sufficient"


async def run_ladder(
    session: BrowserSession,
    url: str,
    *,
    min_chars: int = DEFAULT_MIN_CHARS,
    steps: tuple[LadderStep, ...] = LADDER,
    report: Callable[[str], None] | None = None,
) -> LadderOutcome:
    """
    Try each strategy in order until one yields enough clean text.

    Every step is bounded by its own load budget, so the whole ladder
    finishes within ``ladder_budget_s(steps)`` even for a page that never
    loads. Exhaustion is returned as an ``insufficient`` or ``blocked``
    outcome, never raised.
    """
    say = report or (lambda message: None)
    last_html = ""
    last_error: Optional[str] = None
    nav_error: Optional[NavigationError] = None
    blocked: Optional[ExtractedText] = None
    blocked_reason: Optional[str] = None
    attempts: list[str] = []

    for step in steps:
        name = step.strategy.value
        attempts.append(name)
        say(f"Trying {name} loading strategy...")

        try:
            outcome = await asyncio.wait_for(
                session.navigate(url, step.load), timeout=step.load.budget_s
            )
        except asyncio.TimeoutError:
            last_error = f"{name} strategy timed out after {step.load.budget_s:.0f}s"
            nav_error = NavigationError(NavigationCategory.TIMEOUT, last_error)
            say(f"{name.capitalize()} strategy failed: {last_error}")
            continue

        if outcome.html:
            last_html = outcome.html
        markup = last_html if step.load.reuse_page else outcome.html
        if outcome.error is not None and not (step.load.reuse_page and markup):
            nav_error = outcome.error
            last_error = str(outcome.error)
            say(f"{name.capitalize()} strategy failed: {last_error}")
            continue

        text = step.extract(markup)
        signature = find_block_signature(text)
        if signature is not None:
            blocked = ExtractedText(text=text, strategy_used=step.strategy)
            blocked_reason = last_error = (
                f"Page appears to be blocked or contains error content ({signature!r})"
            )
            say(f"{name.capitalize()} strategy hit a block page: {signature!r}")
            continue
        if len(text) < min_chars:
            last_error = f"Insufficient content from {name} strategy ({len(text)} chars)"
            say(f"{name.capitalize()} strategy failed: {last_error}")
            continue

        say(f"{name.capitalize()} strategy successful: {len(text)} chars")
        return LadderOutcome(
            status="sufficient",
            extracted=ExtractedText(text=text, strategy_used=step.strategy),
            attempts=attempts,
        )

    logger.debug("Ladder exhausted for %s: %s", url, last_error)
    if blocked is not None:
        return LadderOutcome(
            status="blocked", extracted=blocked, last_error=blocked_reason, attempts=attempts
        )
    return LadderOutcome(
        status="insufficient",
        last_error=f"All loading strategies failed. Last error: {last_error}",
        attempts=attempts,
        navigation_error=None if last_html else nav_error,
    )
