"""Find candidate venue/event URLs on a site's landing page.

Two paths: ``build_discovery_payload`` condenses a page down to its
navigation for the extraction service, and ``extract_links_directly``
ranks every in-scope href without any network call.
"""

import html as html_lib
import re
from urllib.parse import urldefrag, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from showcrawler.models import CandidateURL, ScopeConfig

NAV_SELECTORS = [
    "header",
    "nav",
    ".menu",
    ".navigation",
    "#menu",
    "#nav",
    '[role="navigation"]',
    ".navbar",
    ".nav-menu",
    ".main-menu",
    "footer",
    ".footer",
    ".sitemap",
    ".breadcrumb",
    ".pagination",
    "main",
    ".page-links",
    ".sidebar",
    ".links",
    "ul.menu",
    "ol.menu",
    ".dropdown",
    ".megamenu",
]

LINK_KEYWORDS = ("karaoke", "venue", "location", "state", "event", "show", "schedule")

# Limits applied when a payload is condensed.
MAX_NAV_BLOCKS = 10
MAX_KEYWORD_LINKS = 20
PREFIX_CHARS = 20000

_SKIP_SCHEMES = ("mailto:", "tel:", "javascript:", "data:")
_SKIP_EXTENSIONS = re.compile(
    r"\.(css|js|jpg|jpeg|png|gif|svg|webp|ico|pdf|zip|exe|mp3|mp4|xml|json)$", re.IGNORECASE
)
_SKIP_PATHS = re.compile(r"login|admin|wp-admin", re.IGNORECASE)

US_STATES = [
    "alabama", "alaska", "arizona", "arkansas", "california", "colorado",
    "connecticut", "delaware", "florida", "georgia", "hawaii", "idaho",
    "illinois", "indiana", "iowa", "kansas", "kentucky", "louisiana", "maine",
    "maryland", "massachusetts", "michigan", "minnesota", "mississippi",
    "missouri", "montana", "nebraska", "nevada", "new-hampshire", "new-jersey",
    "new-mexico", "new-york", "north-carolina", "north-dakota", "ohio",
    "oklahoma", "oregon", "pennsylvania", "rhode-island", "south-carolina",
    "south-dakota", "tennessee", "texas", "utah", "vermont", "virginia",
    "washington", "west-virginia", "wisconsin", "wyoming",
]

# Directory sites whose listing pages follow a predictable pattern.
KNOWN_DIRECTORIES = {
    "karaokeviewpoint.com": lambda origin: [f"{origin}/karaoke-in-{s}/" for s in US_STATES],
}


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Canonical form used for deduplication."""
    url, _ = urldefrag(url)
    parts = urlparse(url)
    scheme = parts.scheme.lower()
    netloc = (parts.hostname or "").lower()
    if parts.port and not (
        (scheme == "http" and parts.port == 80) or (scheme == "https" and parts.port == 443)
    ):
        netloc = f"{netloc}:{parts.port}"
    path = parts.path or "/"
    return urlunparse((scheme, netloc, path, parts.params, parts.query, ""))


def is_priority_url(url: str) -> bool:
    lowered = url.lower()
    return any(k in lowered for k in LINK_KEYWORDS)


def _should_skip(raw_href: str, absolute: str) -> bool:
    if raw_href.lower().startswith(_SKIP_SCHEMES) or raw_href.endswith("#"):
        return True
    parts = urlparse(absolute)
    if parts.scheme not in ("http", "https"):
        return True
    return bool(_SKIP_EXTENSIONS.search(parts.path) or _SKIP_PATHS.search(parts.path))


def rank_candidates(
    urls: list[str], base_url: str, scope: ScopeConfig, *, limit: int | None = None
) -> list[CandidateURL]:
    """
    Resolve, scope-filter, deduplicate and order URLs.

    Order is first-seen, with keyword URLs moved ahead of the rest.
    """
    seen: set[str] = set()
    priority: list[CandidateURL] = []
    regular: list[CandidateURL] = []
    for raw in urls:
        raw = (raw or "").strip()
        if not raw:
            continue
        try:
            absolute = urljoin(base_url, raw)
            if _should_skip(raw, absolute):
                continue
            normalized = normalize_url(absolute)
        except ValueError:
            continue
        if normalized in seen or not scope.matches(normalized):
            continue
        seen.add(normalized)
        if is_priority_url(normalized):
            priority.append(CandidateURL(absolute_url=normalized, priority_hint=1))
        else:
            regular.append(CandidateURL(absolute_url=normalized, priority_hint=0))

    ranked = priority + regular
    return ranked[:limit] if limit is not None else ranked


# ---------------------------------------------------------------------------
# Fallback path (no network)
# ---------------------------------------------------------------------------


def extract_links_directly(
    markup: str, base_url: str, scope: ScopeConfig, *, limit: int = 100
) -> list[CandidateURL]:
    """Rank every href on the page. Deterministic for a given input."""
    soup = BeautifulSoup(markup, "html.parser")
    base_tag = soup.find("base", href=True)
    page_base = urljoin(base_url, base_tag["href"]) if base_tag else base_url

    hrefs = [tag["href"] for tag in soup.find_all(href=True) if tag.name != "base"]

    origin = f"{urlparse(base_url).scheme}://{urlparse(base_url).netloc}"
    for domain, expand in KNOWN_DIRECTORIES.items():
        if domain in scope.base_domain:
            hrefs.extend(expand(origin))

    return rank_candidates(hrefs, page_base, scope, limit=limit)


def extract_site_name_directly(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")

    if soup.title and soup.title.string and soup.title.string.strip():
        return soup.title.string.strip()

    meta = soup.find("meta", attrs={"name": "description"})
    if meta and (meta.get("content") or "").strip():
        return meta["content"].strip()

    h1 = soup.find("h1")
    if h1 and h1.get_text(strip=True):
        return h1.get_text(" ", strip=True)

    return "Unknown Site"


# ---------------------------------------------------------------------------
# Primary path: navigation payload for the extraction service
# ---------------------------------------------------------------------------


def _cut_at_tag_boundary(text: str, max_len: int) -> str:
    """Cut ``text`` to at most ``max_len`` chars without ending inside a tag."""
    if len(text) <= max_len:
        return text
    cut = text[:max_len]
    if cut.rfind("<") > cut.rfind(">"):
        cut = cut[: cut.rfind("<")]
    return cut


def _nav_blocks(soup: BeautifulSoup) -> list[str]:
    blocks: list[str] = []
    taken: set[int] = set()
    for selector in NAV_SELECTORS:
        for element in soup.select(selector):
            if id(element) in taken or any(id(p) in taken for p in element.parents):
                continue
            taken.add(id(element))
            blocks.append(f"\n<!-- {selector} -->\n{element.decode_contents()}\n")
    return blocks


def _keyword_links(soup: BeautifulSoup) -> list[str]:
    links: list[str] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        text = anchor.get_text(" ", strip=True)
        if is_priority_url(href) or any(k in text.lower() for k in LINK_KEYWORDS):
            links.append(
                f'<a href="{html_lib.escape(href, quote=True)}">{html_lib.escape(text)}</a>'
            )
    return links


def build_discovery_payload(
    markup: str, *, limit: int = 8000, large_threshold: int = 50000
) -> str:
    """
    Condense a page to navigation regions plus keyword links.

    Payloads above ``large_threshold`` are cut down to ``limit`` chars,
    keeping navigation first, then keyword links, then a prefix of the
    rest. Pieces are only ever cut at tag boundaries.
    """
    soup = BeautifulSoup(markup, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    meta = soup.find("meta", attrs={"name": "description"})
    description = (meta.get("content") or "").strip() if meta else ""

    head = (
        f"<title>{html_lib.escape(title)}</title>\n"
        f'<meta name="description" content="{html_lib.escape(description, quote=True)}">\n'
    )
    nav = _nav_blocks(soup)
    links = _keyword_links(soup)

    full = head + "".join(nav)
    if links:
        full += "\n<!-- Relevant Links Found -->\n" + "\n".join(links)

    if len(full) <= large_threshold:
        return full

    pieces = [head, *nav[:MAX_NAV_BLOCKS], *(link + "\n" for link in links[:MAX_KEYWORD_LINKS])]
    pieces.append(full[:PREFIX_CHARS])

    payload = ""
    for piece in pieces:
        room = limit - len(payload)
        if room <= 0:
            break
        payload += _cut_at_tag_boundary(piece, room)
    return payload
