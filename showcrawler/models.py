from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models exchanged with callers: camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TaskKind(str, Enum):
    DISCOVERY = "discovery"
    PAGE_EXTRACTION = "page_extraction"


class ContentStrategy(str, Enum):
    """Rungs of the content extraction ladder, cheapest first."""

    FAST = "fast"
    """DOM ready plus a short settle delay."""

    MEDIUM = "medium"
    """Wait for network quiescence."""

    SLOW = "slow"
    """DOM ready, long settle, scroll to bottom for lazy content."""

    RAW = "raw"
    """Strip tags from the rendered HTML as a last resort."""


class ErrorKind(str, Enum):
    NAVIGATION = "navigation"
    INSUFFICIENT_CONTENT = "insufficient_content"
    BLOCKED_OR_ERROR_PAGE = "blocked_or_error_page"
    EXTRACTION_NETWORK = "extraction_service:network"
    EXTRACTION_SERVER_ERROR = "extraction_service:server_error"
    EXTRACTION_MALFORMED_RESPONSE = "extraction_service:malformed_response"
    WORKER_TIMEOUT = "worker_timeout"
    WORKER_CRASHED = "worker_crashed"


class ScopeConfig(BaseModel):
    """Domain boundary for one pipeline run. Shared read-only by all workers."""

    model_config = ConfigDict(frozen=True)

    base_domain: str
    include_subdomains: bool = False

    @classmethod
    def for_url(cls, url: str, include_subdomains: bool = False) -> "ScopeConfig":
        hostname = urlparse(url).hostname
        if not hostname:
            raise ValueError(f"URL has no hostname: {url}")
        return cls(base_domain=hostname, include_subdomains=include_subdomains)

    def matches(self, url: str) -> bool:
        try:
            hostname = urlparse(url).hostname
        except ValueError:
            return False
        if not hostname:
            return False
        if hostname == self.base_domain:
            return True
        if not self.include_subdomains:
            return False
        return hostname.endswith(self.base_domain) or self.base_domain.endswith(hostname)


class Task(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    scope: ScopeConfig
    kind: TaskKind
    worker_id: int = 0


class CandidateURL(BaseModel):
    model_config = ConfigDict(frozen=True)

    absolute_url: str
    priority_hint: int = Field(0, description="1 for keyword-priority URLs, 0 otherwise")


class ExtractedText(BaseModel):
    text: str
    strategy_used: ContentStrategy

    @property
    def char_count(self) -> int:
        return len(self.text)


class ShowInfo(WireModel):
    """A recurring show as described on a venue or directory page."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, coerce_numbers_to_str=True
    )

    venue: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    day_of_week: Optional[str] = None
    time: Optional[str] = None
    dj_name: Optional[str] = None
    description: Optional[str] = None
    lat: Optional[str] = None
    lng: Optional[str] = None
    venue_phone: Optional[str] = None
    venue_website: Optional[str] = None

    def populated_count(self) -> int:
        return sum(1 for v in self.model_dump().values() if v not in (None, ""))


class StructuredRecord(WireModel):
    """Output of page extraction for one URL, as handed to consumers."""

    url: str
    worker_id: int = 0
    success: bool
    vendor: Optional[str] = None
    dj: Optional[str] = None
    show: Optional[ShowInfo] = None
    source: str
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @model_validator(mode="after")
    def _check_show(self) -> "StructuredRecord":
        # Failed records never carry show data a consumer could trust.
        if not self.success:
            self.show = None
        elif self.show is None or not (self.show.venue or "").strip():
            raise ValueError("successful record must include show.venue")
        return self

    @classmethod
    def failed(
        cls, url: str, error: str, kind: ErrorKind, worker_id: int = 0
    ) -> "StructuredRecord":
        return cls(
            url=url,
            worker_id=worker_id,
            success=False,
            source=url,
            error=error,
            error_kind=kind,
        )


class DiscoveryResult(WireModel):
    success: bool
    urls: list[str] = Field(default_factory=list)
    candidates: list[CandidateURL] = Field(default_factory=list, exclude=True)
    site_name: str = "Unknown Site"
    error: Optional[str] = None
    discovery_time_ms: int = 0
    used_fallback: bool = False


class ProgressEvent(WireModel):
    type: Literal["progress", "complete", "error"] = "progress"
    worker_id: Optional[int] = None
    message: Optional[str] = None
    data: Optional[Any] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkerComplete(BaseModel):
    status: Literal["complete"] = "complete"
    task: Task
    value: Union[StructuredRecord, DiscoveryResult]


class WorkerFailed(BaseModel):
    status: Literal["error"] = "error"
    task: Task
    reason: str
    error_kind: ErrorKind

    def as_record(self) -> StructuredRecord:
        return StructuredRecord.failed(
            self.task.url, self.reason, self.error_kind, self.task.worker_id
        )


WorkerResult = Union[WorkerComplete, WorkerFailed]


# ---------------------------------------------------------------------------
# Pipeline-level results
# ---------------------------------------------------------------------------


class NamedEntity(WireModel):
    """A vendor or DJ name with the page it was first seen on."""

    name: str
    source: str


class AggregatedShow(ShowInfo):
    source: str
    vendor: Optional[str] = None
    dj: Optional[str] = None
    duplicate_sources: list[str] = Field(default_factory=list)


class ParseStats(WireModel):
    discovery_ms: int = 0
    processing_ms: int = 0
    total_ms: int = 0


class ParsedWebsiteResult(WireModel):
    success: bool
    url: str
    site_name: str = "Unknown Site"
    total_urls: int = 0
    processed_urls: int = 0
    shows: list[AggregatedShow] = Field(default_factory=list)
    djs: list[NamedEntity] = Field(default_factory=list)
    vendors: list[NamedEntity] = Field(default_factory=list)
    failed_count: int = 0
    failure_reasons: dict[str, int] = Field(default_factory=dict)
    stats: ParseStats = Field(default_factory=ParseStats)
    error: Optional[str] = None
