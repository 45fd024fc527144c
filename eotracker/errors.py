# eotracker/errors.py
from __future__ import annotations

from typing import Optional


class IngestError(Exception):
    """Base class for everything the ingestion pipeline raises on purpose."""


class ConfigError(IngestError):
    pass


# =========================
# Fetch errors
# =========================

class FetchError(IngestError):
    def __init__(self, message: str, url: str = ""):
        super().__init__(message)
        self.url = url


class FetchTimeout(FetchError):
    """Navigation or request did not settle within the per-operation timeout."""


class TransportError(FetchError):
    """Connection failure, 5xx or 429 from the source or the rendering service."""

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None):
        super().__init__(message, url)
        self.status_code = status_code


class PageRejectedError(FetchError):
    """The page loaded but is not usable. Never retried."""


class BotDetectedError(PageRejectedError):
    """Interstitial / challenge page or implausibly short content."""


class MalformedPageError(PageRejectedError):
    """Expected selector never appeared, or the rendering service returned an unexpected shape."""


# =========================
# Persistence errors
# =========================

class PersistenceError(IngestError):
    pass


class ChunkWriteError(PersistenceError):
    def __init__(self, chunk_index: int, chunk_size: int, total_chunks: int, cause: Exception):
        super().__init__(
            f"bulk write failed on chunk {chunk_index + 1}/{total_chunks} "
            f"({chunk_size} items): {type(cause).__name__}: {cause}"
        )
        self.chunk_index = chunk_index
        self.chunk_size = chunk_size
        self.total_chunks = total_chunks
        self.cause = cause
