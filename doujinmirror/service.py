#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import aiohttp

from . import parsing
from .cache import TTLCache
from .errors import InvalidRequest, NotFoundError, ScrapeError
from .fetcher import fetch_bytes
from .ingest import ingest_images
from .pool import USER_AGENT
from .scraper import Scraper
from .store import ComicStore
from .timeouts import Deadline

LOG = logging.getLogger("doujinmirror.service")

PROXY_CHUNK_SIZE = 64 * 1024
REHOST_FOLDER = "IMAGES"
PROXY_FOLDER = "proxy"

WARN_PARTIAL = "Some images failed to upload"
WARN_EMPTY = "No images could be uploaded"
WARN_NOT_PERSISTED = "Images uploaded but not recorded in the database"

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def parse_int(value: Any, default: int) -> int:
    """Leading-integer parse; anything unparseable or zero falls back to *default*."""
    if value is None:
        return default
    m = _LEADING_INT_RE.match(str(value))
    if not m:
        return default
    return int(m.group(1)) or default


@dataclass
class ProxyResult:
    redirect_url: Optional[str] = None
    content_type: Optional[str] = None
    body: Optional[AsyncIterator[bytes]] = None
    release: Optional[Callable[[], Any]] = None


class DoujinService:
    def __init__(
        self,
        scraper: Scraper,
        store: ComicStore,
        storage,
        cache: TTLCache,
        http: aiohttp.ClientSession,
        *,
        base_url: str,
        image_fetch_timeout: float = 20.0,
        proxy_timeout: float = 15.0,
        proxy_promote_after: int = 3,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.scraper = scraper
        self.store = store
        self.storage = storage
        self.cache = cache
        self.http = http
        self.base_url = base_url.rstrip("/") + "/"
        self.image_fetch_timeout = image_fetch_timeout
        self.proxy_timeout = proxy_timeout
        self.proxy_promote_after = proxy_promote_after
        self._sleep = sleep or asyncio.sleep

    # ----- listing / search / detail -----

    async def listing(self, page_param: Any = None) -> Dict[str, Any]:
        page_number = str(page_param if page_param not in (None, "") else 1).strip()
        target = parsing.build_listing_url(self.base_url, page_number)
        if not parsing.is_valid_listing_url(target, self.base_url):
            raise InvalidRequest("Invalid URL format")

        cache_key = f"doujin_page_{page_number}"
        cached = self.cache.get(cache_key)
        if cached:
            return {
                "status": "success",
                "data": cached["results"],
                "totalPages": cached["totalPages"],
                "source": "cache",
            }

        results, total_pages = await self.scraper.listing(page_number)
        self.cache.set(cache_key, {"results": results, "totalPages": total_pages})
        return {"status": "success", "data": results, "totalPages": total_pages, "source": "fresh"}

    async def search(self, query: Optional[str], page_param: Any = None) -> Dict[str, Any]:
        if not query:
            raise InvalidRequest("Query required")
        page_number = parse_int(page_param, 1)
        cache_key = f"search-{query}-{page_number}"
        cached = self.cache.get(cache_key)
        if cached:
            return dict(cached, cached=True)

        results, total_pages = await self.scraper.search(query, page_number)
        response = {
            "success": True,
            "page": page_number,
            "totalPages": total_pages,
            "results": results,
            "cached": False,
        }
        self.cache.set(cache_key, response)
        return response

    async def detail(self, url: Optional[str]) -> Dict[str, Any]:
        if not url:
            raise InvalidRequest("Parameter url is required")
        cache_key = f"detail-{url}"
        cached = self.cache.get(cache_key)
        if cached:
            return dict(cached, cached=True)

        detail = await self.scraper.detail(url)
        response = {"success": True, "detail": detail, "cached": False}
        self.cache.set(cache_key, response)
        return response

    # ----- comic retrieval + ingestion -----

    async def fetch_image(self, url: str) -> bytes:
        return await fetch_bytes(
            self.http, url, self.base_url, timeout=self.image_fetch_timeout, sleep=self._sleep
        )

    async def get_comic(self, raw: Optional[str]) -> Dict[str, Any]:
        slug = parsing.clean_slug(raw)
        if not slug:
            raise InvalidRequest("Parameter url/slug is required")

        images = await self.store.get_comic(slug)
        if images:
            return {"success": True, "images": images, "cached": True, "source": "database"}

        cache_key = f"comic-{slug}"
        cached = self.cache.get(cache_key)
        if cached:
            return cached

        try:
            response = await self._scrape_comic(slug)
        except (InvalidRequest, NotFoundError):
            raise
        except Exception:
            # a concurrent request may have finished the same slug meanwhile
            images = await self.store.get_comic(slug)
            if images:
                LOG.info("Recovered %s from database after a failed scrape", slug)
                return {
                    "success": True,
                    "images": images,
                    "cached": True,
                    "source": "database (race condition recovery)",
                }
            raise

        if response["images"]:
            self.cache.set(cache_key, response)
        return response

    async def _scrape_comic(self, slug: str) -> Dict[str, Any]:
        full_url, image_urls = await self.scraper.comic_images(slug)
        LOG.info("Found %d images for %s", len(image_urls), slug)

        result = await ingest_images(
            slug, image_urls, fetch=self.fetch_image, upload=self.storage.put, sleep=self._sleep
        )

        response: Dict[str, Any] = {
            "success": True,
            "images": result.uploaded,
            "cached": False,
            "source": "freshly scraped",
        }
        if not result.uploaded:
            response["warning"] = WARN_EMPTY
            return response

        persisted = await self.store.save_comic(slug, full_url, result.uploaded)
        response["persisted"] = persisted
        if result.partial:
            response["warning"] = WARN_PARTIAL
        elif not persisted:
            response["warning"] = WARN_NOT_PERSISTED
        return response

    # ----- single image rehost -----

    async def rehost(self, image_url: Optional[str]) -> str:
        if not image_url:
            raise InvalidRequest("Image URL is required")
        if not image_url.startswith(("http://", "https://")):
            raise InvalidRequest("Invalid image URL")
        filename = parsing.filename_from_url(image_url)
        if not filename:
            raise InvalidRequest("Could not derive a filename from the image URL")

        existing = await self.store.get_thumbnail(filename)
        if existing:
            return existing

        final_url, data = await self.scraper.capture_image(image_url)
        LOG.debug("Captured %d bytes for %s (final %s)", len(data), image_url, final_url)
        cdn_url = await self.storage.put(data, f"{REHOST_FOLDER}/{filename}")
        await self.store.save_thumbnail(filename, image_url, cdn_url)
        return cdn_url

    # ----- pass-through proxy -----

    async def proxy(self, image_url: Optional[str]) -> ProxyResult:
        """Serve an arbitrary image, promoting it to the CDN once it proves popular."""
        if not image_url:
            raise InvalidRequest("Image URL is required")

        url_hash = hashlib.md5(image_url.encode("utf-8")).hexdigest()
        cache_key = f"proxy-{url_hash}"
        count_key = f"proxy-count-{url_hash}"

        cached_url = self.cache.get(cache_key)
        if cached_url:
            return ProxyResult(redirect_url=cached_url)

        filename = f"proxy_{url_hash}.jpg"
        existing = await self.store.get_thumbnail(filename, source_url=image_url)
        if existing:
            self.cache.set(cache_key, existing)
            return ProxyResult(redirect_url=existing)

        headers = {"Referer": self.base_url, "User-Agent": USER_AGENT}
        async with Deadline(self.proxy_timeout, f"proxy {image_url}") as deadline:
            resp = await deadline.run(self._open(image_url, headers))
            try:
                if resp.status < 200 or resp.status >= 300:
                    raise ScrapeError(f"Image not found (status: {resp.status})")
                content_type = resp.headers.get("Content-Type", "")
                if not content_type.startswith("image/"):
                    raise ScrapeError("URL does not point to a valid image")

                count = self.cache.get(count_key, 0)
                if count <= self.proxy_promote_after:
                    self.cache.set(count_key, count + 1)
                    return ProxyResult(content_type=content_type, body=self._stream(resp), release=resp.release)

                data = await deadline.run(resp.read())
            except BaseException:
                resp.release()
                raise
            resp.release()

        try:
            cdn_url = await self.storage.put(data, f"{PROXY_FOLDER}/{filename}")
            await self.store.save_thumbnail(filename, image_url, cdn_url)
        except Exception:
            LOG.exception("Failed to promote proxied image %s; serving it directly", image_url)
            return ProxyResult(content_type=content_type, body=_once(data))
        self.cache.set(cache_key, cdn_url)
        return ProxyResult(redirect_url=cdn_url)

    async def _open(self, url: str, headers: Dict[str, str]) -> aiohttp.ClientResponse:
        return await self.http.get(url, headers=headers)

    @staticmethod
    async def _stream(resp: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
        try:
            async for chunk in resp.content.iter_chunked(PROXY_CHUNK_SIZE):
                yield chunk
        finally:
            resp.release()


async def _once(data: bytes) -> AsyncIterator[bytes]:
    yield data
