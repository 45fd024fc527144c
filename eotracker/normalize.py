# eotracker/normalize.py
from __future__ import annotations

import asyncio
import html as ihtml
import logging
import re
from datetime import date
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup

from .classify import classify
from .extractor import extract_detail_text, parse_source_date
from .fetcher import Fetcher
from .models import CanonicalDocument, DocumentType, RawDocument

log = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 1000
CONTENT_MAX_CHARS = 1000

_ORDER_NUMBER_RE = re.compile(
    r"\b(?:Executive\s+Order|Presidential\s+Memorandum|EO)[\s#:-]*(?:No\.\s*)?(\d+)\b",
    re.IGNORECASE,
)

_IDENTIFIER_PREFIX = {
    DocumentType.EXECUTIVE_ORDER: "EO",
    DocumentType.PRESIDENTIAL_MEMORANDUM: "PM",
    DocumentType.PROCLAMATION: "PR",
}


# =========================
# Text cleaning
# =========================

def _clean_text(s: str) -> str:
    if not s:
        return ""
    s = ihtml.unescape(s)
    s = s.replace("‘", "'").replace("’", "'").replace("“", '"').replace("”", '"')
    s = s.replace("\x00", "")
    s = re.sub(r"\s+", " ", s).strip()
    return s


def strip_html(s: Optional[str]) -> str:
    if not s:
        return ""
    if "<" not in s:
        return _clean_text(s)
    text = BeautifulSoup(s, "html.parser").get_text(" ", strip=True)
    return _clean_text(text)


def truncate(s: str, limit: int) -> str:
    # str slicing counts code points, so a multi-byte character is never split
    if limit <= 0 or len(s) <= limit:
        return s
    return s[:limit].rstrip()


# =========================
# Type / number / identifier
# =========================

def resolve_type(title: str, url: str = "") -> DocumentType:
    for text in (title or "", url or ""):
        t = text.lower().replace("-", " ")
        if "executive order" in t:
            return DocumentType.EXECUTIVE_ORDER
        if "memorandum" in t or "memoranda" in t:
            return DocumentType.PRESIDENTIAL_MEMORANDUM
        if "proclamation" in t:
            return DocumentType.PROCLAMATION
    log.debug("[normalize] no type marker in %r; defaulting to EXECUTIVE_ORDER", title)
    return DocumentType.EXECUTIVE_ORDER


def extract_order_number(title: str, hint: Optional[str] = None) -> Optional[str]:
    if hint is not None and str(hint).strip().isdigit():
        return str(hint).strip()
    m = _ORDER_NUMBER_RE.search(title or "")
    return m.group(1) if m else None


def build_identifier(doc_type: DocumentType, number: Optional[str], doc_date: date) -> str:
    if number:
        return f"{_IDENTIFIER_PREFIX[doc_type]}-{number}"
    return f"{doc_type.value}-{doc_date.isoformat()}"


# =========================
# Raw -> canonical
# =========================

def _summary_from(excerpt: str, content: str) -> str:
    if excerpt:
        return excerpt
    # first paragraph-ish chunk of the body
    first = re.split(r"(?<=[.!?])\s+", content, maxsplit=3)
    return " ".join(first[:3])


def normalize_document(raw: RawDocument, floor: date) -> Optional[CanonicalDocument]:
    """RawDocument -> CanonicalDocument, or None when undated / before the floor."""
    doc_date = parse_source_date(raw.date)
    if doc_date is None:
        log.debug("[normalize] unparsable date %r for %s", raw.date, raw.url)
        return None
    if doc_date < floor:
        return None

    title = strip_html(raw.title)
    if not title:
        return None
    content = strip_html(raw.content)
    excerpt = strip_html(raw.excerpt)

    doc_type = resolve_type(title, raw.url)
    number = extract_order_number(title, raw.order_number)
    labels = classify(" ".join(p for p in (title, excerpt, content) if p))

    return CanonicalDocument(
        identifier=build_identifier(doc_type, number, doc_date),
        type=doc_type,
        title=title,
        date=doc_date,
        url=raw.url,
        number=number,
        summary=truncate(_summary_from(excerpt, content), SUMMARY_MAX_CHARS),
        content=truncate(content, CONTENT_MAX_CHARS),
        categories=labels.categories,
        agencies=labels.agencies,
        is_new=True,
    )


def normalize_documents(raws: Iterable[RawDocument], floor: date) -> List[CanonicalDocument]:
    out: List[CanonicalDocument] = []
    for raw in raws:
        doc = normalize_document(raw, floor)
        if doc is not None:
            out.append(doc)
    return out


def validate_document(doc: CanonicalDocument) -> bool:
    missing = [
        name for name, ok in (
            ("title", bool(doc.title)),
            ("date", doc.date is not None),
            ("url", bool(doc.url)),
            ("identifier", bool(doc.identifier)),
            ("type", isinstance(doc.type, DocumentType)),
        ) if not ok
    ]
    if missing:
        log.warning("[normalize] invalid document %s: missing %s", doc.url or doc.title, ", ".join(missing))
        return False
    return True


# =========================
# Detail-page enrichment
# =========================

def _merge(a: List[str], b: List[str]) -> List[str]:
    out = list(a)
    for x in b:
        if x not in out:
            out.append(x)
    return out


async def _enrich_one(doc: CanonicalDocument, fetcher: Fetcher, max_chars: int) -> bool:
    try:
        page = await fetcher.fetch(doc.url)
        text = extract_detail_text(page, max_chars=max_chars)
    except Exception as e:
        log.warning("[WH][detail] keeping listing fields for %s: %s: %s", doc.url, type(e).__name__, e)
        return False
    if not text:
        return False

    doc.content = truncate(text, max_chars)
    if not doc.summary:
        doc.summary = truncate(_summary_from("", text), SUMMARY_MAX_CHARS)
    labels = classify(f"{doc.title} {doc.summary} {text}")
    doc.categories = _merge(doc.categories, labels.categories)
    doc.agencies = _merge(doc.agencies, labels.agencies)
    return True


async def enrich_documents(
    documents: List[CanonicalDocument],
    fetcher: Fetcher,
    *,
    concurrency: int = 5,
    max_chars: int = CONTENT_MAX_CHARS,
) -> int:
    """
    Re-fetch each document's detail page, `concurrency` at a time, and replace
    its content with the page body. A failed fetch leaves the document as is.
    Returns the number of documents enriched.
    """
    enriched = 0
    size = max(1, concurrency)
    for i in range(0, len(documents), size):
        batch = documents[i : i + size]
        results = await asyncio.gather(*(_enrich_one(d, fetcher, max_chars) for d in batch))
        enriched += sum(1 for ok in results if ok)
        log.info("[WH][detail] enriched %d/%d (batch %d)", enriched, min(i + size, len(documents)), i // size + 1)
    return enriched
