#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Dict, List, Optional, Tuple

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from . import parsing
from .errors import InvalidRequest, NotFoundError, StructuralError, TransientError
from .pool import BrowserPool, build_headers

LOG = logging.getLogger("doujinmirror.scraper")

NAV_TIMEOUT_SEC = 10.0
REHOST_TIMEOUT_SEC = 30.0

Record = Dict[str, Optional[str]]


class Scraper:
    """Page-level operations; each one borrows a pooled browser for its whole duration."""

    def __init__(
        self,
        pool: BrowserPool,
        base_url: str,
        nav_timeout: float = NAV_TIMEOUT_SEC,
        rehost_timeout: float = REHOST_TIMEOUT_SEC,
    ):
        self.pool = pool
        self.base_url = base_url.rstrip("/") + "/"
        self.nav_timeout_ms = int(nav_timeout * 1000)
        self.rehost_timeout_ms = int(rehost_timeout * 1000)
        self.headers = build_headers(self.base_url)

    @contextlib.asynccontextmanager
    async def _page(self, intercept: bool = True) -> AsyncIterator[Page]:
        async with self.pool.session() as session:
            page = await session.open_page(self.headers, intercept=intercept)
            try:
                yield page
            finally:
                try:
                    await page.close()
                except Exception as exc:
                    LOG.debug("Error closing page: %s", exc)

    async def _goto(self, page: Page, url: str, marker: Optional[str] = None) -> None:
        await page.goto(url, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
        if marker:
            await self._wait_marker(page, url, marker)

    async def _wait_marker(self, page: Page, url: str, marker: str) -> None:
        try:
            await page.wait_for_selector(marker, timeout=self.nav_timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise StructuralError(f"Content marker {marker!r} not found at {url}") from exc

    async def listing(self, page_number: str) -> Tuple[List[Record], int]:
        target = parsing.build_listing_url(self.base_url, page_number)
        if not parsing.is_valid_listing_url(target, self.base_url):
            raise InvalidRequest("Invalid URL format")
        async with self._page() as page:
            await self._goto(page, target, parsing.LISTING_MARKER)
            html = await page.content()
        return parsing.parse_listing(html, self.base_url), parsing.parse_total_pages(html)

    async def search(self, query: str, page_number: int) -> Tuple[List[Record], int]:
        target = parsing.build_search_url(self.base_url, query, page_number)
        async with self._page() as page:
            await self._goto(page, target)
            html = await page.content()
        return parsing.parse_search(html, self.base_url), parsing.parse_total_pages(html)

    async def detail(self, slug_or_url: str) -> Dict[str, object]:
        target = parsing.build_detail_url(self.base_url, slug_or_url)
        async with self._page() as page:
            await self._goto(page, target, parsing.DETAIL_MARKER)
            chapters_html, page_html = await asyncio.gather(
                page.eval_on_selector(parsing.DETAIL_MARKER, "el => el.outerHTML"),
                page.content(),
            )
        detail = parsing.parse_detail_meta(page_html, self.base_url)
        detail["chapters"] = parsing.parse_chapters(chapters_html)
        return detail

    async def comic_images(self, slug: str) -> Tuple[str, List[str]]:
        """Return the chapter URL and the absolute image URLs of its reader."""
        target = parsing.build_comic_url(self.base_url, slug)
        # images must load for their URLs to resolve, so no resource blocking here
        async with self._page(intercept=False) as page:
            await page.goto(target, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
            if parsing.is_missing_page(await page.title()):
                raise NotFoundError("Comic not found")
            await self._wait_marker(page, target, parsing.COMIC_MARKER)
            html = await page.content()
        return target, parsing.parse_comic_images(html)

    async def capture_image(self, url: str) -> Tuple[str, bytes]:
        """Load *url* in a real browser and return the final URL plus the raw bytes."""
        async with self._page() as page:
            await page.goto(url, wait_until="networkidle", timeout=self.rehost_timeout_ms)
            final_url = page.url
            response = await page.goto(final_url, timeout=self.rehost_timeout_ms)
            if response is None:
                raise TransientError(f"No response while loading {final_url}")
            if not response.ok:
                raise TransientError(f"Image request failed with status {response.status}")
            body = await response.body()
        return final_url, body
