# eotracker/retry.py
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from .errors import PageRejectedError

log = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    delay: float = 5.0,
    backoff: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (PageRejectedError,),
    label: str = "operation",
) -> T:
    """
    Call fn(); on failure re-invoke it up to `retries` more times.

    Waits `delay` seconds between attempts, doubled per attempt when
    `backoff` is set. The last failure is re-raised unchanged. Exceptions in
    `give_up_on` are raised immediately.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except give_up_on:
            raise
        except retry_on as e:
            if attempt >= retries:
                log.error("[retry] %s failed after %d attempts: %s", label, attempt + 1, e)
                raise
            wait = delay * (2 ** attempt) if backoff else delay
            attempt += 1
            log.warning(
                "[retry] %s failed (%s: %s); retrying in %.1fs. Retries left: %d",
                label, type(e).__name__, e, wait, retries - attempt,
            )
            await asyncio.sleep(wait)
