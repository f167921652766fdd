#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aiohttp

from .errors import TransientError
from .pool import USER_AGENT
from .timeouts import Deadline

LOG = logging.getLogger("doujinmirror.fetcher")

FETCH_TIMEOUT = 20.0
MAX_RETRIES = 3
RETRY_BASE_SEC = 1.0

Sleeper = Callable[[float], Awaitable[None]]


async def _get_bytes(session: aiohttp.ClientSession, url: str, referer: str) -> bytes:
    headers = {"Referer": referer, "User-Agent": USER_AGENT}
    async with session.get(url, headers=headers) as resp:
        if resp.status < 200 or resp.status >= 300:
            raise TransientError(f"Failed to fetch image: {resp.status}")
        return await resp.read()


async def fetch_bytes(
    session: aiohttp.ClientSession,
    url: str,
    referer: str,
    *,
    timeout: float = FETCH_TIMEOUT,
    retries: int = MAX_RETRIES,
    base_delay: float = RETRY_BASE_SEC,
    sleep: Optional[Sleeper] = None,
) -> bytes:
    """Fetch *url* with a per-attempt deadline, retrying with 1s, 2s, 4s... backoff.

    The initial attempt plus ``retries`` retries are made; the last failure
    propagates to the caller.
    """
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            async with Deadline(timeout, f"fetch {url}") as deadline:
                return await deadline.run(_get_bytes(session, url, referer))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= retries:
                LOG.warning("Giving up on %s after %d attempts: %s", url, attempt + 1, exc)
                raise
            delay = base_delay * (2 ** attempt)
            attempt += 1
            LOG.info("Retrying fetch for %s (attempt %d) in %.0fs: %s", url, attempt, delay, exc)
            await sleep(delay)
