import asyncio
import logging

import aiohttp
import discord

logger = logging.getLogger("Retry")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def retry_after_of(error):
    """Server-supplied retry hint in seconds, if any."""
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        return float(retry_after)
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("Retry-After") if hasattr(headers, "get") else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def is_transient(error):
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientConnectionError, ConnectionError)):
        return True
    if isinstance(error, discord.HTTPException):
        # Forbidden/NotFound are HTTPException subclasses but never transient
        return getattr(error, "status", None) in RETRYABLE_STATUS
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status in RETRYABLE_STATUS
    return False


async def with_retry(func, *args, retries=3, delay=1.0, **kwargs):
    """Await func(*args, **kwargs), retrying transient failures with exponential backoff.

    Honors a retry-after hint when the error carries one. Non-transient errors
    propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if attempt >= retries or not is_transient(e):
                raise
            wait = delay * (2 ** attempt)
            hint = retry_after_of(e)
            if hint is not None:
                wait = max(wait, hint + 1)
            attempt += 1
            logger.warning(f"[RETRY] {getattr(func, '__name__', func)} failed ({e}); retry {attempt}/{retries} in {wait:.1f}s")
            await asyncio.sleep(wait)
