"""Merge per-page records into a deduplicated show list with failure diagnostics."""

import re
from collections import Counter
from typing import Iterable

from pydantic import BaseModel, Field

from showcrawler.models import AggregatedShow, NamedEntity, ShowInfo, StructuredRecord

_PUNCTUATION_RE = re.compile(r"[^\w\s]")

# Histogram key for pages that loaded and were read but list no karaoke show.
NO_SHOW_DATA = "no_show_data"


def _normalize_text(value: str | None) -> str:
    value = (value or "").lower().replace("’", "'")
    return " ".join(_PUNCTUATION_RE.sub("", value).split())


def _normalize_time(value: str | None) -> str:
    return "".join((value or "").lower().split())


def show_key(show: ShowInfo) -> tuple[str, str, str]:
    """Identity of a show: same venue, same day, same time."""
    return (_normalize_text(show.venue), _normalize_text(show.day_of_week), _normalize_time(show.time))


def _richness(record: StructuredRecord) -> int:
    extra = sum(1 for v in (record.vendor, record.dj) if v)
    return record.show.populated_count() + extra


class AggregateResult(BaseModel):
    shows: list[AggregatedShow] = Field(default_factory=list)
    vendors: list[NamedEntity] = Field(default_factory=list)
    djs: list[NamedEntity] = Field(default_factory=list)
    total_urls: int = 0
    failed_count: int = 0
    failure_reasons: dict[str, int] = Field(default_factory=dict)


def _unique_names(pairs: Iterable[tuple[str | None, str]]) -> list[NamedEntity]:
    seen: set[str] = set()
    out: list[NamedEntity] = []
    for name, source in pairs:
        key = (name or "").strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(NamedEntity(name=name.strip(), source=source))
    return out


def aggregate(records: Iterable[StructuredRecord]) -> AggregateResult:
    """
    Deduplicate successful records by (venue, day, time).

    On collision the record with more populated fields wins, earliest first
    on ties; the losers' source URLs are kept on the winner. Failed records
    are only counted, once per URL, into ``failed_count`` and a histogram of
    error kinds. Aggregating a list that contains the same records twice
    gives the same result as aggregating it once.
    """
    records = list(records)
    groups: dict[tuple[str, str, str], list[StructuredRecord]] = {}
    failed: dict[str, StructuredRecord] = {}
    urls: set[str] = set()

    for record in records:
        urls.add(record.url)
        if not record.success or record.show is None:
            failed.setdefault(record.url, record)
            continue
        groups.setdefault(show_key(record.show), []).append(record)

    shows: list[AggregatedShow] = []
    for group in groups.values():
        winner = group[0]
        for candidate in group[1:]:
            if _richness(candidate) > _richness(winner):
                winner = candidate
        duplicate_sources: list[str] = []
        for record in group:
            if record.source != winner.source and record.source not in duplicate_sources:
                duplicate_sources.append(record.source)
        shows.append(
            AggregatedShow(
                **winner.show.model_dump(),
                source=winner.source,
                vendor=winner.vendor,
                dj=winner.dj,
                duplicate_sources=duplicate_sources,
            )
        )

    successful = [r for r in records if r.success]
    reasons = Counter(
        (r.error_kind.value if r.error_kind else NO_SHOW_DATA) for r in failed.values()
    )
    return AggregateResult(
        shows=shows,
        vendors=_unique_names((r.vendor, r.source) for r in successful),
        djs=_unique_names((r.dj, r.source) for r in successful),
        total_urls=len(urls),
        failed_count=len(failed),
        failure_reasons=dict(reasons),
    )
