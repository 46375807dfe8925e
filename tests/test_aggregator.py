from showcrawler.aggregator import NO_SHOW_DATA, aggregate, show_key
from showcrawler.models import ErrorKind, ShowInfo, StructuredRecord


def ok(url: str, vendor: str | None = None, dj: str | None = None, **show) -> StructuredRecord:
    return StructuredRecord(
        url=url, success=True, source=url, vendor=vendor, dj=dj, show=ShowInfo(**show)
    )


def failed(url: str, kind: ErrorKind) -> StructuredRecord:
    return StructuredRecord.failed(url, "failed", kind)


class TestShowKey:
    def test_normalizes_case_punctuation_and_spacing(self):
        a = ShowInfo(venue="O'Nelly's  Sports Pub", day_of_week="Friday", time="9 PM")
        b = ShowInfo(venue="o’nellys sports pub", day_of_week="friday", time="9pm")
        assert show_key(a) == show_key(b)

    def test_different_day_is_different_show(self):
        a = ShowInfo(venue="Pub", day_of_week="Friday", time="9pm")
        b = ShowInfo(venue="Pub", day_of_week="Saturday", time="9pm")
        assert show_key(a) != show_key(b)


class TestAggregate:
    def test_richer_duplicate_wins_and_keeps_provenance(self):
        sparse = ok("https://a.test/1", venue="O'Nelly's", day_of_week="Friday", time="9pm")
        rich = ok(
            "https://a.test/2",
            venue="O'Nelly's",
            day_of_week="friday",
            time="9 pm",
            address="123 Main St",
            city="Olympia",
        )
        result = aggregate([sparse, rich])

        assert len(result.shows) == 1
        show = result.shows[0]
        assert show.source == "https://a.test/2"
        assert show.address == "123 Main St"
        assert show.duplicate_sources == ["https://a.test/1"]

    def test_tie_keeps_earliest(self):
        first = ok("https://a.test/1", venue="Pub", day_of_week="Monday", time="8pm", city="Tacoma")
        second = ok("https://a.test/2", venue="Pub", day_of_week="Monday", time="8pm", city="Seattle")
        result = aggregate([first, second])

        assert [s.source for s in result.shows] == ["https://a.test/1"]
        assert result.shows[0].city == "Tacoma"
        assert result.shows[0].duplicate_sources == ["https://a.test/2"]

    def test_distinct_shows_kept_in_order(self):
        records = [
            ok("https://a.test/1", venue="Pub", day_of_week="Monday", time="8pm"),
            ok("https://a.test/2", venue="Pub", day_of_week="Tuesday", time="8pm"),
            ok("https://a.test/3", venue="Lounge", day_of_week="Monday", time="8pm"),
        ]
        result = aggregate(records)
        assert [s.source for s in result.shows] == [r.url for r in records]
        assert all(s.duplicate_sources == [] for s in result.shows)

    def test_failure_histogram(self):
        records = [
            ok("https://a.test/1", venue="Pub"),
            failed("https://a.test/2", ErrorKind.WORKER_TIMEOUT),
            failed("https://a.test/3", ErrorKind.EXTRACTION_SERVER_ERROR),
            failed("https://a.test/4", ErrorKind.EXTRACTION_SERVER_ERROR),
            StructuredRecord(url="https://a.test/5", success=False, source="https://a.test/5"),
        ]
        result = aggregate(records)

        assert result.failed_count == 4
        assert result.failure_reasons == {
            "worker_timeout": 1,
            "extraction_service:server_error": 2,
            NO_SHOW_DATA: 1,
        }
        assert result.total_urls == 5

    def test_idempotent_under_duplication(self):
        records = [
            ok("https://a.test/1", vendor="Sing Co", venue="Pub", day_of_week="Monday", time="8pm"),
            ok("https://a.test/2", venue="Pub", day_of_week="Monday", time="8pm", city="Tacoma"),
            failed("https://a.test/3", ErrorKind.NAVIGATION),
        ]
        once = aggregate(records)
        twice = aggregate(records + records)
        assert twice == once

    def test_vendor_and_dj_rollups(self):
        records = [
            ok("https://a.test/1", vendor="Sing Co", dj="DJ Mike", venue="Pub"),
            ok("https://a.test/2", vendor="sing co", dj="DJ Sarah", venue="Lounge"),
            ok("https://a.test/3", vendor=None, dj="DJ Mike ", venue="Bar"),
        ]
        result = aggregate(records)

        assert [(v.name, v.source) for v in result.vendors] == [("Sing Co", "https://a.test/1")]
        assert [d.name for d in result.djs] == ["DJ Mike", "DJ Sarah"]

    def test_empty(self):
        result = aggregate([])
        assert result.shows == []
        assert result.failed_count == 0
        assert result.failure_reasons == {}
