# eotracker/pipeline.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import Settings
from .extractor import extract_documents, has_next_page, listing_page_url
from .errors import FetchTimeout, TransportError
from .fetcher import Fetcher
from .models import CanonicalDocument, RawDocument
from .normalize import enrich_documents, normalize_documents, validate_document
from .retry import retry_async
from .store import DocumentStore, partition_documents

log = logging.getLogger(__name__)

# polite gap between listing page loads
PAGE_DELAY_SECONDS = 1.0


@dataclass
class IngestResult:
    started_at: str
    finished_at: Optional[str] = None
    pages: int = 0
    extracted: int = 0
    normalized: int = 0
    new: int = 0
    existing: int = 0
    enriched: int = 0
    inserted: int = 0
    updated: int = 0
    dry_run: bool = False
    new_documents: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Listing crawl
# =========================

async def crawl_listing(fetcher: Fetcher, settings: Settings, *, page_delay: float = PAGE_DELAY_SECONDS) -> tuple[List[RawDocument], int]:
    """
    Walk listing pages newest to oldest until a page yields nothing in the
    floor window, has no next link, or max_pages is reached.
    """
    raws: List[RawDocument] = []
    seen: set[str] = set()
    pages = 0

    for page_no in range(1, settings.max_pages + 1):
        url = listing_page_url(settings.source_url, page_no)
        page = await fetcher.fetch(url)
        pages += 1
        log.info("[WH][list] GET %s -> %s", url, page.status)

        docs = extract_documents(page, settings.floor_date)
        fresh = [d for d in docs if d.url not in seen]
        seen.update(d.url for d in fresh)
        raws.extend(fresh)

        # the rendering service returns the whole listing in one response
        if page.items:
            break
        if not fresh or not has_next_page(page.html):
            break
        if page_delay:
            await asyncio.sleep(page_delay)

    return raws, pages


async def collect_documents(fetcher: Fetcher, settings: Settings, result: IngestResult,
                            *, page_delay: float = PAGE_DELAY_SECONDS) -> List[CanonicalDocument]:
    raws, pages = await crawl_listing(fetcher, settings, page_delay=page_delay)
    result.pages = pages
    result.extracted = len(raws)

    docs = [d for d in normalize_documents(raws, settings.floor_date) if validate_document(d)]
    result.normalized = len(docs)
    if not docs:
        log.warning("[WH] listing yielded no documents on or after %s", settings.floor_date.isoformat())
    return docs


# =========================
# Ingest
# =========================

async def run_ingestion(
    fetcher: Fetcher,
    store: DocumentStore,
    settings: Settings,
    *,
    dry_run: bool = False,
    reconcile: bool = False,
    enrich: bool = True,
    page_delay: float = PAGE_DELAY_SECONDS,
) -> IngestResult:
    """
    One ingestion cycle: crawl -> normalize/classify -> dedup -> enrich -> persist.

    Listing collection goes through the retry wrapper. Persistence errors
    propagate to the caller; nothing is rolled back across store chunks.
    """
    result = IngestResult(started_at=_now_iso(), dry_run=dry_run)

    async with fetcher:
        documents = await retry_async(
            lambda: collect_documents(fetcher, settings, result, page_delay=page_delay),
            retries=settings.retry_count,
            delay=settings.retry_delay_seconds,
            backoff=True,
            retry_on=(FetchTimeout, TransportError),
            label="listing crawl",
        )

        known = await store.load_known_keys(settings.floor_date)
        part = partition_documents(documents, known)
        result.new = len(part.new)
        result.existing = len(part.existing)
        log.info("[WH] %d candidates: %d new, %d already known", len(documents), result.new, result.existing)

        to_enrich = part.new + (part.existing if reconcile else [])
        if enrich and to_enrich:
            result.enriched = await enrich_documents(to_enrich, fetcher, concurrency=settings.enrich_concurrency)

    if dry_run:
        result.new_documents = [d.log_entry() for d in part.new]
        result.finished_at = _now_iso()
        return result

    result.inserted = await store.insert_documents(part.new)
    if reconcile:
        result.updated = await store.update_documents(part.existing)

    if result.inserted:
        result.new_documents = [d.log_entry() for d in part.new]
        log.info("[WH] new documents found: %s", result.new_documents)

    result.finished_at = _now_iso()
    return result
