# eotracker/fetcher.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .config import Settings
from .errors import (
    BotDetectedError,
    ConfigError,
    FetchError,
    FetchTimeout,
    MalformedPageError,
    TransportError,
)

log = logging.getLogger(__name__)


# =========================
# Configuration
# =========================

BROWSER_UA_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.8",
    "Referer": "https://www.whitehouse.gov/",
    "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
}

# Titles / markers of challenge pages served instead of content
INTERSTITIAL_MARKERS = (
    "just a moment",
    "attention required",
    "access denied",
    "verify you are human",
    "captcha",
)

BLOCKED_RESOURCE_TYPES = ("image", "font", "media")

DEFAULT_MIN_CONTENT_CHARS = 500


@dataclass
class FetchedPage:
    url: str
    html: str = ""
    status: int = 200
    # pre-extracted records (hosted rendering API only)
    items: List[Dict[str, Any]] = field(default_factory=list)


def detect_block(html: str, title: str = "", min_chars: int = DEFAULT_MIN_CONTENT_CHARS) -> Optional[str]:
    """Return a reason string if the page looks like an anti-bot interstitial, else None."""
    t = (title or "").strip().lower()
    for marker in INTERSTITIAL_MARKERS:
        if marker in t:
            return f"interstitial title {title!r}"
    body = html or ""
    if len(body) < min_chars:
        return f"content implausibly short ({len(body)} chars)"
    head = body[:2000].lower()
    if "cf-challenge" in head or "challenge-platform" in head:
        return "challenge script in page head"
    return None


def _raise_for_status(url: str, status: int) -> None:
    if status >= 500 or status == 429:
        raise TransportError(f"HTTP {status} for {url}", url=url, status_code=status)
    if status >= 400:
        raise FetchError(f"HTTP {status} for {url}", url=url)


class Fetcher:
    """
    Loads a rendered page. Implementations hold their own resources;
    use as `async with fetcher:` so they are released on every path.
    """

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def fetch(self, url: str, wait_for: Optional[str] = None) -> FetchedPage:
        raise NotImplementedError

    async def __aenter__(self) -> "Fetcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


# =========================
# Local headless browser
# =========================

async def _block_heavy(route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class BrowserFetcher(Fetcher):
    def __init__(
        self,
        *,
        timeout: float = 45.0,
        min_content_chars: int = DEFAULT_MIN_CONTENT_CHARS,
        headless: bool = True,
    ):
        self.timeout_ms = int(timeout * 1000)
        self.min_content_chars = min_content_chars
        self.headless = headless
        self._pw = None
        self._browser = None

    async def start(self) -> None:
        if self._browser is not None:
            return
        self._pw = await async_playwright().start()
        try:
            self._browser = await self._pw.chromium.launch(headless=self.headless)
        except Exception:
            await self._pw.stop()
            self._pw = None
            raise
        log.debug("[fetch] chromium launched")

    async def close(self) -> None:
        browser, pw = self._browser, self._pw
        self._browser = None
        self._pw = None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if pw is not None:
                await pw.stop()

    async def fetch(self, url: str, wait_for: Optional[str] = None) -> FetchedPage:
        await self.start()
        ctx = await self._browser.new_context(
            extra_http_headers={k: v for k, v in BROWSER_UA_HEADERS.items() if k != "User-Agent"},
            user_agent=BROWSER_UA_HEADERS["User-Agent"],
            java_script_enabled=True,
        )
        try:
            page = await ctx.new_page()
            await page.route("**/*", _block_heavy)

            try:
                resp = await page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
            except PlaywrightTimeoutError as e:
                raise FetchTimeout(f"navigation timed out after {self.timeout_ms}ms: {url}", url=url) from e
            except PlaywrightError as e:
                raise TransportError(f"navigation failed for {url}: {e}", url=url) from e

            status = resp.status if resp is not None else 0
            if status:
                _raise_for_status(url, status)

            if wait_for:
                try:
                    await page.wait_for_selector(wait_for, timeout=self.timeout_ms)
                except PlaywrightTimeoutError as e:
                    raise MalformedPageError(f"selector {wait_for!r} never appeared on {url}", url=url) from e

            html = await page.content()
            title = await page.title()
        finally:
            await ctx.close()

        reason = detect_block(html, title, self.min_content_chars)
        if reason:
            raise BotDetectedError(f"blocked page at {url}: {reason}", url=url)
        return FetchedPage(url=url, html=html, status=status or 200)


# =========================
# Hosted rendering API
# =========================

class RenderServiceFetcher(Fetcher):
    """
    POST {url, options:{waitForSelector, javascript, timeout}} with a bearer key;
    the service answers {data:[{title, text, date, url, metadata}]}.
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        *,
        timeout: float = 45.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ConfigError("RENDER_API_KEY is not set")
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                # the service itself waits up to `timeout` for the page
                timeout=httpx.Timeout(self.timeout + 15.0, connect=15.0),
                transport=self._transport,
            )

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def fetch(self, url: str, wait_for: Optional[str] = None) -> FetchedPage:
        await self.start()
        options: Dict[str, Any] = {"javascript": True, "timeout": int(self.timeout * 1000)}
        if wait_for:
            options["waitForSelector"] = wait_for

        try:
            r = await self._client.post(
                self.api_url,
                json={"url": url, "options": options},
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise FetchTimeout(f"rendering service timed out for {url}", url=url) from e
        except httpx.HTTPError as e:
            raise TransportError(f"rendering service unreachable: {type(e).__name__}: {e}", url=url) from e

        _raise_for_status(url, r.status_code)

        try:
            payload = r.json()
        except ValueError as e:
            raise MalformedPageError(f"rendering service returned non-JSON for {url}", url=url) from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise MalformedPageError(f"invalid response format from rendering service for {url}", url=url)

        return FetchedPage(url=url, status=r.status_code, items=[d for d in data if isinstance(d, dict)])


def build_fetcher(settings: Settings) -> Fetcher:
    if settings.fetcher == "render_service":
        return RenderServiceFetcher(
            settings.render_api_url,
            settings.render_api_key,
            timeout=settings.fetch_timeout_seconds,
        )
    return BrowserFetcher(timeout=settings.fetch_timeout_seconds)
