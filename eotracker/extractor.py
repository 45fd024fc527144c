# eotracker/extractor.py
from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from .fetcher import FetchedPage
from .models import RawDocument

log = logging.getLogger(__name__)


# =========================
# Configuration
# =========================

# Embedded WordPress block JSON, most specific first
JSON_MARKERS = [
    'script[data-js="block-query:wp-loop"]',
    "script#wp-block-data",
    'script[data-type="wp-block-data"]',
    'script[type="application/json"]',
]

POST_LIST_KEYS = ("posts", "items", "data")

ARTICLE_SELECTORS = "article, li.wp-block-post, .news-item, .briefing-room__card"
TITLE_SELECTORS = [".news-item__title", ".wp-block-post-title", "h2", "h3"]
DATE_SELECTORS = ["time[datetime]", "time", ".news-item__date", ".wp-block-post-date", ".date", ".entry-date"]

DETAIL_SELECTORS = [
    ".body-content",
    "div.entry-content",
    "div.wp-block-post-content",
    "article",
    "main",
]

NEXT_PAGE_SELECTORS = [".pagination-next", "a.next", "a[rel=next]", "link[rel=next]", ".wp-block-query-pagination-next"]

_DATE_FORMATS = (
    "%B %d, %Y",      # January 20, 2025
    "%b %d, %Y",      # Jan 20, 2025
    "%b. %d, %Y",     # Jan. 20, 2025
    "%m/%d/%Y",
    "%Y-%m-%d",
)

_WS_RE = re.compile(r"\s+")


# =========================
# Helpers
# =========================

def _norm_abs(u: str) -> str:
    """Normalize URL: drop query/fragment; keep path and scheme/host."""
    parts = urlsplit(u)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _text(s: str) -> str:
    return _WS_RE.sub(" ", s or "").strip()


def parse_source_date(s: Optional[str]) -> Optional[date]:
    """Best-effort date parse for the shapes the source emits; None if unparsable."""
    if not s:
        return None
    s = _text(str(s))
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    # "Published January 20, 2025" and similar wrappers
    m = re.search(r"([A-Z][a-z]{2,8}\.? \d{1,2}, \d{4})", s)
    if m and m.group(1) != s:
        return parse_source_date(m.group(1))
    return None


def _within_floor(raw_date: str, floor: date) -> bool:
    d = parse_source_date(raw_date)
    return d is not None and d >= floor


def _string_value(field: Any) -> str:
    """WordPress fields come as plain strings or {rendered, raw} pairs."""
    if not field:
        return ""
    if isinstance(field, str):
        return field
    if isinstance(field, dict):
        return str(field.get("rendered") or field.get("raw") or "")
    return str(field)


# =========================
# Strategy (a): embedded JSON
# =========================

def find_post_list(payload: Any) -> Optional[List[Any]]:
    """
    Locate the post list inside an embedded JSON payload.

    Heuristic, in order: the payload itself when it is a list; a list under
    one of the well-known keys (posts, items, data); otherwise the longest
    list among the payload's top-level values. Returns None when nothing
    list-shaped is found.
    """
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return None
    for key in POST_LIST_KEYS:
        v = payload.get(key)
        if isinstance(v, list):
            return v
    candidates = [v for v in payload.values() if isinstance(v, list)]
    if not candidates:
        return None
    return max(candidates, key=len)


def _load_marker_json(soup: BeautifulSoup) -> Any:
    for selector in JSON_MARKERS:
        for el in soup.select(selector):
            text = el.string or el.get_text() or ""
            if not text.strip():
                continue
            try:
                return json.loads(text)
            except ValueError:
                log.debug("[extract][json] unparsable JSON under %s", selector)
                continue
    return None


def _post_to_raw(post: Dict[str, Any]) -> Optional[RawDocument]:
    title = _string_value(post.get("title"))
    url = str(post.get("link") or post.get("url") or "")
    raw_date = str(post.get("date") or post.get("date_gmt") or "")
    if not title or not url:
        return None
    meta = post.get("metadata") if isinstance(post.get("metadata"), dict) else {}
    return RawDocument(
        title=title,
        date=raw_date,
        url=_norm_abs(url),
        content=_string_value(post.get("content")),
        excerpt=_string_value(post.get("excerpt")),
        order_number=(meta or {}).get("orderNumber"),
        metadata={"id": post.get("id"), "slug": post.get("slug"), "src": "json"},
    )


def extract_structured(html: str) -> List[RawDocument]:
    """Strategy (a). Never raises; any failure means 'no structured data'."""
    try:
        soup = BeautifulSoup(html or "", "html.parser")
        payload = _load_marker_json(soup)
        if payload is None:
            log.debug("[extract][json] no JSON marker found")
            return []
        posts = find_post_list(payload)
        if not posts:
            log.info("[extract][json] JSON found but no post list inside")
            return []
        out: List[RawDocument] = []
        for post in posts:
            if not isinstance(post, dict):
                continue
            doc = _post_to_raw(post)
            if doc is not None:
                out.append(doc)
        return out
    except Exception as e:
        log.warning("[extract][json] structured extraction failed: %s: %s", type(e).__name__, e)
        return []


# =========================
# Strategy (b): HTML articles
# =========================

def _first(container, selectors: List[str]):
    for sel in selectors:
        el = container.select_one(sel)
        if el is not None:
            return el
    return None


def extract_html(html: str, base_url: str = "") -> List[RawDocument]:
    soup = BeautifulSoup(html or "", "html.parser")
    out: List[RawDocument] = []
    seen: set[str] = set()

    for container in soup.select(ARTICLE_SELECTORS):
        heading = _first(container, TITLE_SELECTORS)
        title = _text(heading.get_text(" ", strip=True)) if heading is not None else ""

        link = None
        if heading is not None:
            link = heading if heading.name == "a" else heading.find("a", href=True)
        if link is None or not link.get("href"):
            link = container.find("a", href=True)
        url = _norm_abs(urljoin(base_url, link["href"])) if link is not None else ""

        date_el = _first(container, DATE_SELECTORS)
        raw_date = ""
        if date_el is not None:
            raw_date = date_el.get("datetime") or _text(date_el.get_text(" ", strip=True))

        # an incomplete card is skipped, not an error
        if not (title and url and raw_date):
            continue
        if url in seen:
            continue
        seen.add(url)

        excerpt_el = container.select_one(".news-item__excerpt, .wp-block-post-excerpt, p")
        out.append(RawDocument(
            title=title,
            date=raw_date,
            url=url,
            excerpt=_text(excerpt_el.get_text(" ", strip=True)) if excerpt_el is not None else "",
            metadata={"src": "html"},
        ))
    return out


# =========================
# Rendering-service records
# =========================

def documents_from_render_items(items: List[Dict[str, Any]]) -> List[RawDocument]:
    out: List[RawDocument] = []
    for item in items:
        title = str(item.get("title") or "")
        url = str(item.get("url") or "")
        if not title or not url:
            continue
        text = str(item.get("text") or "")
        meta = item.get("metadata") if isinstance(item.get("metadata"), dict) else {}
        out.append(RawDocument(
            title=title,
            date=str(item.get("date") or ""),
            url=_norm_abs(url),
            content=text,
            excerpt=text.split("\n", 1)[0],
            order_number=(meta or {}).get("orderNumber"),
            metadata={"src": "render_service", "type": (meta or {}).get("type")},
        ))
    return out


# =========================
# Entry points
# =========================

def extract_documents(page: FetchedPage, floor: date) -> List[RawDocument]:
    """
    Listing page -> RawDocuments dated on or after `floor`.

    Structured JSON first, HTML articles second; the first strategy that
    yields anything wins. An empty list is a valid outcome.
    """
    docs: List[RawDocument] = []
    strategy = ""
    if page.items:
        docs, strategy = documents_from_render_items(page.items), "render_service"
    if not docs:
        docs, strategy = extract_structured(page.html), "json"
    if not docs:
        log.info("[extract] no structured data on %s, falling back to HTML", page.url)
        docs, strategy = extract_html(page.html, base_url=page.url), "html"

    if not docs:
        log.warning("[extract] no documents found on %s (all strategies exhausted)", page.url)
        return []

    kept = [d for d in docs if _within_floor(d.date, floor)]
    dropped = len(docs) - len(kept)
    log.info("[extract] %s: %d documents via %s (%d before %s or undated dropped)",
             page.url, len(kept), strategy, dropped, floor.isoformat())
    return kept


def has_next_page(html: str) -> bool:
    soup = BeautifulSoup(html or "", "html.parser")
    return any(soup.select_one(sel) is not None for sel in NEXT_PAGE_SELECTORS)


def listing_page_url(base: str, page: int) -> str:
    if page <= 1:
        return base
    return f"{base.rstrip('/')}/page/{page}/"


def extract_detail_text(page: FetchedPage, max_chars: int = 1000) -> str:
    """Main body text of a detail page (or the rendering service's text)."""
    if page.items:
        return _text(str(page.items[0].get("text") or ""))[:max_chars]

    soup = BeautifulSoup(page.html or "", "html.parser")
    for tag in soup(["script", "style", "noscript", "svg", "nav", "header", "footer"]):
        tag.decompose()
    for sel in DETAIL_SELECTORS:
        el = soup.select_one(sel)
        if el is not None:
            txt = _text(el.get_text(" ", strip=True))
            if txt:
                return txt[:max_chars]
    return ""
