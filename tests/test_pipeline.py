import asyncio
from datetime import date

import pytest

from eotracker.config import Settings
from eotracker.errors import BotDetectedError, FetchError, TransportError
from eotracker.fetcher import FetchedPage
from eotracker.models import DocumentType
from eotracker.pipeline import crawl_listing, run_ingestion

from tests.fakes import FakeFetcher, MemoryStore, article_html, listing_html, make_doc

BASE = "https://www.whitehouse.gov/presidential-actions/"
EO_URL = "https://www.whitehouse.gov/presidential-actions/2025/03/border-security/"


def _settings(**kw):
    values = dict(source_url=BASE, retry_count=1, retry_delay_seconds=0.0, max_pages=5)
    values.update(kw)
    return Settings(**values)


def _border_fetcher():
    return FakeFetcher({
        BASE: listing_html(article_html(
            "Executive Order 14321 on Border Security", EO_URL, "2025-03-10",
            excerpt="Securing the southern border.",
        )),
        EO_URL: FetchedPage(url=EO_URL, html=(
            '<html><body><div class="body-content">By the authority vested in me, '
            "the Department of Homeland Security shall secure the border.</div></body></html>"
        )),
    })


def test_end_to_end_border_security_order():
    store = MemoryStore()
    fetcher = _border_fetcher()

    result = asyncio.run(run_ingestion(fetcher, store, _settings(), page_delay=0))

    assert result.inserted == 1
    assert result.enriched == 1
    doc = store.documents[0]
    assert doc.type is DocumentType.EXECUTIVE_ORDER
    assert doc.number == "14321"
    assert doc.identifier == "EO-14321"
    assert "Immigration" in doc.categories
    assert "Department of Homeland Security" in doc.agencies
    assert result.new_documents == [{
        "type": "EXECUTIVE_ORDER",
        "title": "Executive Order 14321 on Border Security",
        "number": "EO-14321",
        "date": "2025-03-10",
    }]
    assert fetcher.closed == 1


def test_second_run_inserts_nothing():
    store = MemoryStore()
    asyncio.run(run_ingestion(_border_fetcher(), store, _settings(), page_delay=0))
    again = asyncio.run(run_ingestion(_border_fetcher(), store, _settings(), page_delay=0))

    assert again.inserted == 0
    assert again.existing == 1
    assert len(store.documents) == 1


def test_dry_run_writes_nothing():
    store = MemoryStore()
    result = asyncio.run(run_ingestion(_border_fetcher(), store, _settings(), dry_run=True, page_delay=0))
    assert result.dry_run
    assert result.new == 1
    assert store.documents == []
    assert result.new_documents[0]["number"] == "EO-14321"


def test_reconcile_updates_existing_documents():
    existing = make_doc(321, identifier="EO-14321", url=EO_URL, content="old text")
    store = MemoryStore([existing])
    result = asyncio.run(run_ingestion(_border_fetcher(), store, _settings(), reconcile=True, page_delay=0))
    assert result.inserted == 0
    assert result.updated == 1
    assert store.updated[0].content.startswith("By the authority vested in me")


def test_crawl_follows_pagination_until_no_next_link():
    page2 = BASE + "page/2/"
    fetcher = FakeFetcher({
        BASE: listing_html(article_html("Executive Order 14001", "/a/1/", "2025-02-01"), next_link=True),
        page2: listing_html(article_html("Executive Order 14002", "/a/2/", "2025-01-25")),
    })
    raws, pages = asyncio.run(crawl_listing(fetcher, _settings(), page_delay=0))
    assert pages == 2
    assert [r.title for r in raws] == ["Executive Order 14001", "Executive Order 14002"]
    assert fetcher.calls == [BASE, page2]


def test_crawl_stops_when_page_has_nothing_in_window():
    page2 = BASE + "page/2/"
    fetcher = FakeFetcher({
        BASE: listing_html(article_html("Executive Order 14001", "/a/1/", "2025-02-01"), next_link=True),
        page2: listing_html(article_html("Old Order", "/a/old/", "2024-11-01"), next_link=True),
    })
    raws, pages = asyncio.run(crawl_listing(fetcher, _settings(), page_delay=0))
    assert pages == 2
    assert len(raws) == 1


def test_mid_year_floor_stops_crawl_at_first_page_before_it():
    page2 = BASE + "page/2/"
    page3 = BASE + "page/3/"
    fetcher = FakeFetcher({
        BASE: listing_html(article_html("Executive Order 14100", "/a/1/", "2025-06-10"), next_link=True),
        page2: listing_html(article_html("Executive Order 14001", "/a/2/", "2025-03-01"), next_link=True),
        page3: listing_html(article_html("Executive Order 13999", "/a/3/", "2025-01-25")),
    })
    settings = _settings(floor_date=date(2025, 6, 1))

    raws, pages = asyncio.run(crawl_listing(fetcher, settings, page_delay=0))

    assert [r.date for r in raws] == ["2025-06-10"]
    assert pages == 2
    assert page3 not in fetcher.calls


def test_transient_listing_failure_is_retried():
    store = MemoryStore()
    fetcher = _border_fetcher()
    good = fetcher.pages[BASE]
    fetcher.pages[BASE] = TransportError("HTTP 503", url=BASE, status_code=503)
    real_fetch = fetcher.fetch

    async def fetch_then_recover(url, wait_for=None):
        try:
            return await real_fetch(url, wait_for)
        finally:
            fetcher.pages[BASE] = good

    fetcher.fetch = fetch_then_recover
    result = asyncio.run(run_ingestion(fetcher, store, _settings(), page_delay=0))
    assert fetcher.calls.count(BASE) == 2
    assert result.inserted == 1


def test_bot_detection_propagates_without_retry():
    fetcher = FakeFetcher({BASE: BotDetectedError("challenge", url=BASE)})
    with pytest.raises(BotDetectedError):
        asyncio.run(run_ingestion(fetcher, MemoryStore(), _settings(), page_delay=0))
    assert fetcher.calls == [BASE]
    assert fetcher.closed == 1


def test_client_errors_are_not_retried():
    fetcher = FakeFetcher({BASE: FetchError("HTTP 404 for listing", url=BASE)})
    with pytest.raises(FetchError):
        asyncio.run(run_ingestion(fetcher, MemoryStore(), _settings(retry_count=3), page_delay=0))
    assert fetcher.calls == [BASE]
