import asyncio
from datetime import date

from eotracker.errors import FetchTimeout
from eotracker.fetcher import FetchedPage
from eotracker.models import DocumentType, RawDocument
from eotracker.normalize import (
    build_identifier,
    enrich_documents,
    extract_order_number,
    normalize_document,
    resolve_type,
    strip_html,
    truncate,
    validate_document,
)

from tests.fakes import FakeFetcher, make_doc

FLOOR = date(2025, 1, 1)


def test_resolve_type_from_title_then_url():
    assert resolve_type("Executive Order 14100") is DocumentType.EXECUTIVE_ORDER
    assert resolve_type("Memorandum for the Secretary of State") is DocumentType.PRESIDENTIAL_MEMORANDUM
    assert resolve_type("National Day of Prayer, 2025") is DocumentType.EXECUTIVE_ORDER
    assert resolve_type(
        "National Day of Prayer, 2025",
        "https://www.whitehouse.gov/presidential-actions/2025/05/proclamation-national-day-of-prayer/",
    ) is DocumentType.PROCLAMATION


def test_order_number_extraction():
    assert extract_order_number("Executive Order 14321 on Border Security") == "14321"
    assert extract_order_number("Executive Order No. 14100") == "14100"
    assert extract_order_number("EO #14001: Something") == "14001"
    assert extract_order_number("Proclamation on Flags") is None
    assert extract_order_number("Anything", hint="14555") == "14555"


def test_identifier_is_deterministic():
    d = date(2025, 2, 14)
    assert build_identifier(DocumentType.EXECUTIVE_ORDER, "14200", d) == "EO-14200"
    assert build_identifier(DocumentType.PRESIDENTIAL_MEMORANDUM, "7", d) == "PM-7"
    assert build_identifier(DocumentType.PROCLAMATION, None, d) == "PROCLAMATION-2025-02-14"
    assert build_identifier(DocumentType.PROCLAMATION, None, d) == build_identifier(DocumentType.PROCLAMATION, None, d)


def test_strip_html_and_truncate():
    assert strip_html("<p>Hello&nbsp;<b>world</b></p>") == "Hello world"
    assert strip_html("plain &amp; simple") == "plain & simple"
    assert truncate("abcdef", 3) == "abc"
    assert truncate("short", 100) == "short"
    # code points, not bytes
    assert truncate("é" * 10, 4) == "éééé"


def test_normalize_document_full_mapping():
    raw = RawDocument(
        title="<span>Executive Order 14321 on Border Security</span>",
        date="March 3, 2025",
        url="https://www.whitehouse.gov/presidential-actions/2025/03/eo-14321/",
        content="The Department of Homeland Security shall secure the border. " * 40,
    )
    doc = normalize_document(raw, FLOOR)
    assert doc is not None
    assert doc.title == "Executive Order 14321 on Border Security"
    assert doc.identifier == "EO-14321"
    assert doc.number == "14321"
    assert doc.date == date(2025, 3, 3)
    assert "Immigration" in doc.categories
    assert "Department of Homeland Security" in doc.agencies
    assert len(doc.content) <= 1000
    assert len(doc.summary) <= 1000
    assert doc.is_new


def test_normalize_drops_undated_and_pre_floor():
    base = dict(title="Executive Order 1", url="https://x/1/")
    assert normalize_document(RawDocument(date="", **base), FLOOR) is None
    assert normalize_document(RawDocument(date="2024-12-31", **base), FLOOR) is None
    assert normalize_document(RawDocument(date="2025-01-01", **base), FLOOR) is not None


def test_validate_document():
    assert validate_document(make_doc(1))
    assert not validate_document(make_doc(2, title=""))
    assert not validate_document(make_doc(3, url=""))


def test_enrichment_failure_keeps_listing_fields():
    ok = make_doc(1, summary="listing summary")
    broken = make_doc(2, summary="kept as is", content="listing content")
    fetcher = FakeFetcher({
        ok.url: FetchedPage(url=ok.url, html='<div class="body-content">The Department of Energy will act.</div>'),
        broken.url: FetchTimeout("slow", url=broken.url),
    })

    enriched = asyncio.run(enrich_documents([ok, broken], fetcher, concurrency=5))

    assert enriched == 1
    assert ok.content == "The Department of Energy will act."
    assert "Department of Energy" in ok.agencies
    assert ok.summary == "listing summary"
    assert broken.content == "listing content"
    assert broken.summary == "kept as is"


def test_enrichment_runs_in_bounded_batches():
    docs = [make_doc(i) for i in range(7)]
    in_flight = 0
    peak = 0

    class SlowFetcher(FakeFetcher):
        async def fetch(self, url, wait_for=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return FetchedPage(url=url, html='<div class="body-content">text</div>')

    enriched = asyncio.run(enrich_documents(docs, SlowFetcher(), concurrency=3))
    assert enriched == 7
    assert peak <= 3
