#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from .parsing import image_extension

LOG = logging.getLogger("doujinmirror.ingest")

BATCH_SIZE = 3
MAX_UPLOAD_RETRIES = 2
UPLOAD_RETRY_BASE_SEC = 1.0
CDN_FOLDER = "DOUJINSHI"

Fetcher = Callable[[str], Awaitable[bytes]]
Uploader = Callable[[bytes, str], Awaitable[str]]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class IngestResult:
    slug: str
    total: int
    uploaded: List[str] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return len(self.uploaded) != self.total


def image_path(slug: str, index: int, source_url: str) -> str:
    ext = image_extension(source_url)
    return f"{CDN_FOLDER}/{slug}/{slug}_{index + 1}{ext}"


async def _ingest_one(
    slug: str,
    index: int,
    url: str,
    total: int,
    fetch: Fetcher,
    upload: Uploader,
    retries: int,
    sleep: Sleeper,
) -> Optional[str]:
    attempt = 0
    while True:
        try:
            LOG.debug("Processing image %d/%d for %s", index + 1, total, slug)
            data = await fetch(url)
            cdn_url = await upload(data, image_path(slug, index, url))
            LOG.debug("Uploaded image %d for %s", index + 1, slug)
            return cdn_url
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            attempt += 1
            if attempt > retries:
                LOG.error(
                    "Failed to upload image %d of %s after %d retries: %s", index + 1, slug, retries, exc
                )
                return None
            LOG.info("Retry %d/%d for image %d of %s: %s", attempt, retries, index + 1, slug, exc)
            await sleep(UPLOAD_RETRY_BASE_SEC * attempt)


async def ingest_images(
    slug: str,
    image_urls: Sequence[str],
    *,
    fetch: Fetcher,
    upload: Uploader,
    batch_size: int = BATCH_SIZE,
    retries: int = MAX_UPLOAD_RETRIES,
    sleep: Optional[Sleeper] = None,
) -> IngestResult:
    """Re-host every image of a chapter, a few at a time.

    One image failing never stops the others; the result keeps the
    successfully uploaded CDN URLs in page order.
    """
    sleep = sleep or asyncio.sleep
    urls = list(image_urls)
    result = IngestResult(slug=slug, total=len(urls))
    for start in range(0, len(urls), batch_size):
        batch = urls[start : start + batch_size]
        uploaded = await asyncio.gather(
            *(
                _ingest_one(slug, start + offset, url, len(urls), fetch, upload, retries, sleep)
                for offset, url in enumerate(batch)
            )
        )
        for offset, cdn_url in enumerate(uploaded):
            if cdn_url:
                result.uploaded.append(cdn_url)
            else:
                result.failed.append(start + offset + 1)
    if result.failed:
        LOG.warning("%s: %d/%d images failed: %s", slug, len(result.failed), result.total, result.failed)
    else:
        LOG.info("%s: all %d images uploaded", slug, result.total)
    return result
