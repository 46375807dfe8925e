"""Failure taxonomy for the crawl-and-extract pipeline.

Expected terminal outcomes (a page that would not load, a page with too
little text) are reported as values. Exceptions are reserved for the
extraction service failing and for the browser not starting at all.
"""

from enum import Enum

from showcrawler.models import ErrorKind


class NavigationCategory(str, Enum):
    EMPTY_RESPONSE = "Empty Response"
    CONNECTION_REFUSED = "Connection Refused"
    DNS_RESOLUTION_FAILED = "DNS Resolution Failed"
    TIMEOUT = "Timeout"
    NAVIGATION_FAILED = "Navigation Failed"


_NAVIGATION_DETAILS = {
    NavigationCategory.EMPTY_RESPONSE: (
        "The website returned an empty response. This could indicate the site is "
        "down, blocking automated requests, or has connectivity issues."
    ),
    NavigationCategory.CONNECTION_REFUSED: (
        "The website refused the connection. The server may be down or blocking requests."
    ),
    NavigationCategory.DNS_RESOLUTION_FAILED: (
        "Could not resolve the website domain name. Check if the URL is correct."
    ),
    NavigationCategory.TIMEOUT: "The website took too long to load.",
}

# Substrings of Chromium/Playwright error text, checked in order.
_NAVIGATION_PATTERNS = [
    ("ERR_EMPTY_RESPONSE", NavigationCategory.EMPTY_RESPONSE),
    ("ERR_CONNECTION_REFUSED", NavigationCategory.CONNECTION_REFUSED),
    ("ERR_NAME_NOT_RESOLVED", NavigationCategory.DNS_RESOLUTION_FAILED),
    ("ERR_NAME_RESOLUTION_FAILED", NavigationCategory.DNS_RESOLUTION_FAILED),
    ("Navigation timeout", NavigationCategory.TIMEOUT),
    ("Timeout", NavigationCategory.TIMEOUT),
    ("ERR_TIMED_OUT", NavigationCategory.TIMEOUT),
]


class NavigationError:
    """A classified navigation failure. Carried in a NavigationOutcome, never raised."""

    def __init__(self, category: NavigationCategory, raw_message: str):
        self.category = category
        self.raw_message = raw_message

    @property
    def details(self) -> str:
        return _NAVIGATION_DETAILS.get(self.category, self.raw_message)

    def __str__(self) -> str:
        return f"{self.category.value}: {self.details}"

    def __repr__(self) -> str:
        return f"NavigationError({self.category.value!r}, {self.raw_message!r})"


def classify_navigation_error(message: str) -> NavigationError:
    for needle, category in _NAVIGATION_PATTERNS:
        if needle in message:
            return NavigationError(category, message)
    return NavigationError(NavigationCategory.NAVIGATION_FAILED, message)


class ExtractionFailure(str, Enum):
    NETWORK = "network"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"


_EXTRACTION_KINDS = {
    ExtractionFailure.NETWORK: ErrorKind.EXTRACTION_NETWORK,
    ExtractionFailure.SERVER_ERROR: ErrorKind.EXTRACTION_SERVER_ERROR,
    ExtractionFailure.MALFORMED_RESPONSE: ErrorKind.EXTRACTION_MALFORMED_RESPONSE,
}


class ExtractionError(Exception):
    """The structured-extraction service could not produce a valid payload."""

    def __init__(self, reason: ExtractionFailure, detail: str):
        super().__init__(f"ExtractionServiceError:{reason.value}: {detail}")
        self.reason = reason
        self.detail = detail

    @property
    def error_kind(self) -> ErrorKind:
        return _EXTRACTION_KINDS[self.reason]


class BrowserLaunchError(RuntimeError):
    """The headless browser process could not be started."""


class PipelineLaunchError(RuntimeError):
    """The pipeline could not start at all; no per-URL results exist."""
