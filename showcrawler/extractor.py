"""Extract structured show data and candidate links via an OpenAI-compatible LLM API."""

import asyncio
import json
import logging
import sys
from typing import Optional, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from showcrawler.config import Settings, settings as default_settings
from showcrawler.errors import ExtractionError, ExtractionFailure
from showcrawler.models import ScopeConfig, ShowInfo

logger = logging.getLogger(__name__)

PROMPT_VERSION = "2"

# Page text beyond this is not sent to the model.
MAX_CONTENT_CHARS = 30000

# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_PAGE = (
    "You are a professional data extraction AI. Extract karaoke venue, event, "
    "and DJ information from web content. Return valid JSON only."
)

PAGE_INSTRUCTIONS = f"""[page-extraction v{PROMPT_VERSION}]
TASK: Extract all karaoke venue, show, and DJ information from this web page content.

Look for:
- Venue name and business information
- Complete address (street, city, state, zip code)
- Latitude/longitude if present
- Event schedule (days, times, recurring vs one-time)
- DJ/host names or contact info
- Phone numbers and websites
- Event descriptions

Return JSON with this exact structure:
{{
  "success": true,
  "vendor": "business/venue name hosting karaoke",
  "dj": "DJ or performer name",
  "show": {{
    "venue": "venue name",
    "address": "full street address",
    "city": "city name",
    "state": "state name or abbreviation",
    "zip": "zip code",
    "time": "event time/schedule",
    "dayOfWeek": "day(s) of week",
    "djName": "DJ name if different from main dj field",
    "description": "event description",
    "lat": "latitude if available",
    "lng": "longitude if available",
    "venuePhone": "venue phone number",
    "venueWebsite": "venue website"
  }}
}}

Rules:
1. Set success=true only if you find karaoke-related venue/event information.
2. When success=true, show.venue is required.
3. Use null for any field you cannot find. Do not guess.
4. If multiple venues/events, focus on the most complete one.
5. If no karaoke information is found, return {{"success": false}}."""

SYSTEM_PROMPT_DISCOVERY = (
    "You are a professional web analysis AI. Extract the site name and discover "
    "relevant URLs for karaoke venue/event information. Return valid JSON only."
)

DISCOVERY_INSTRUCTIONS = f"""[url-discovery v{PROMPT_VERSION}]
Extract the site name and karaoke-related URLs from the navigation HTML.

Find: venue pages, state or city pages, event pages, schedule pages, directory pages.
Return full absolute URLs only.

JSON: {{"siteName": "name", "urls": ["url1", "url2"]}}"""


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class PagePayload(BaseModel):
    """What the model must return for one page."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    success: bool
    vendor: Optional[str] = None
    dj: Optional[str] = None
    show: Optional[ShowInfo] = None

    @model_validator(mode="after")
    def _require_venue(self) -> "PagePayload":
        if self.success and (self.show is None or not (self.show.venue or "").strip()):
            raise ValueError("success=true requires show.venue")
        return self


class DiscoveryPayload(BaseModel):
    site_name: str = Field("Unknown Site", alias="siteName")
    urls: list[str]


Payload = TypeVar("Payload", bound=BaseModel)


def parse_payload(raw: str, schema: type[Payload]) -> Payload:
    """Strictly parse a model response. No repair, no partial recovery."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ExtractionError(ExtractionFailure.MALFORMED_RESPONSE, f"invalid JSON: {e}") from e
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise ExtractionError(
            ExtractionFailure.MALFORMED_RESPONSE,
            f"response does not match {schema.__name__}: {e.error_count()} error(s)",
        ) from e


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class StructuredExtractionClient:
    """
    Thin client over a chat-completions endpoint.

    One instance is shared by every worker of a run. Requests are built
    only from call arguments, so concurrent calls never share payloads.
    The client never retries; every failure raises ``ExtractionError``.
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = config or default_settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.llm_timeout_s),
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "StructuredExtractionClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.settings.llm_api_key:
            headers["Authorization"] = f"Bearer {self.settings.llm_api_key}"
        return headers

    async def _call_llm(
        self,
        system_prompt: str,
        instructions: str,
        content: str,
        source_url: str,
        max_chars: int | None = MAX_CONTENT_CHARS,
    ) -> str:
        """Send one completion request and return the raw message content.

        ``max_chars=None`` sends ``content`` whole; markup payloads are already
        cut at tag boundaries by their builder.
        """
        if max_chars is not None:
            content = content[:max_chars]
        url = f"{self.settings.llm_base_url.rstrip('/')}/chat/completions"
        user_prompt = (
            f"{instructions}\n\nSOURCE URL: {source_url}\n\nCONTENT:\n{content}"
        )
        payload = {
            "model": self.settings.llm_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.1,
            "max_tokens": self.settings.llm_max_tokens,
            "response_format": {"type": "json_object"},
        }

        logger.debug(
            "Sending to %s (%d chars prompt) for %s",
            self.settings.llm_model,
            len(user_prompt),
            source_url,
        )
        try:
            resp = await self._client.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.settings.llm_timeout_s,
                follow_redirects=False,
            )
        except httpx.HTTPError as e:
            raise ExtractionError(
                ExtractionFailure.NETWORK, f"{type(e).__name__}: {e}"
            ) from e

        if not resp.is_success:
            raise ExtractionError(
                ExtractionFailure.SERVER_ERROR,
                f"API returned status {resp.status_code}: {resp.text[:200]}",
            )

        try:
            body = resp.json()
            message = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionError(
                ExtractionFailure.MALFORMED_RESPONSE, "No response content from API"
            ) from e
        if not isinstance(message, str) or not message.strip():
            raise ExtractionError(
                ExtractionFailure.MALFORMED_RESPONSE, "No response content from API"
            )

        logger.debug("LLM response: %d chars", len(message))
        return message

    async def extract_record(self, content: str, source_url: str) -> PagePayload:
        """Parse venue/show/DJ data out of page text."""
        raw = await self._call_llm(SYSTEM_PROMPT_PAGE, PAGE_INSTRUCTIONS, content, source_url)
        return parse_payload(raw, PagePayload)

    async def discover_urls(
        self, content: str, base_url: str, scope: ScopeConfig
    ) -> DiscoveryPayload:
        """Ask the model which links on a navigation payload are worth crawling."""
        if scope.include_subdomains:
            scope_rule = f"Include subdomains of {scope.base_domain}."
        else:
            scope_rule = f"Only include exact domain {scope.base_domain}."
        instructions = f"{DISCOVERY_INSTRUCTIONS}\n\n{scope_rule}"
        raw = await self._call_llm(
            SYSTEM_PROMPT_DISCOVERY, instructions, content, base_url, max_chars=None
        )
        return parse_payload(raw, DiscoveryPayload)

    async def test_connection(self) -> dict:
        """Check the endpoint answers a minimal request."""
        if not self.settings.llm_api_key:
            return {
                "available": False,
                "model": self.settings.llm_model,
                "error": "API key not configured",
            }
        url = f"{self.settings.llm_base_url.rstrip('/')}/chat/completions"
        payload = {
            "model": self.settings.llm_model,
            "messages": [{"role": "user", "content": "Test connection"}],
            "max_tokens": 10,
        }
        try:
            resp = await self._client.post(url, json=payload, headers=self._headers(), timeout=10)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            return {"available": False, "model": self.settings.llm_model, "error": str(e)}
        return {"available": True, "model": self.settings.llm_model}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


async def main() -> None:
    """CLI: extract a record from a saved page text file."""
    if len(sys.argv) < 3:
        print("Usage: python -m showcrawler.extractor <text_file> <source_url>")
        print('Example: python -m showcrawler.extractor page.txt "https://example.com/karaoke"')
        sys.exit(1)

    from pathlib import Path

    text_file = Path(sys.argv[1])
    source_url = sys.argv[2]

    if not text_file.exists():
        print(f"File not found: {text_file}")
        sys.exit(1)

    content = text_file.read_text(encoding="utf-8")
    async with StructuredExtractionClient() as client:
        try:
            payload = await client.extract_record(content, source_url)
        except ExtractionError as e:
            print(f"Extraction failed: {e}")
            sys.exit(1)

    print(f"\n{'=' * 60}")
    print("EXTRACTED RECORD")
    print(f"{'=' * 60}")
    print(json.dumps(payload.model_dump(by_alias=True), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    asyncio.run(main())
