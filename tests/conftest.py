# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from doujinmirror.cache import TTLCache
from doujinmirror.errors import NotFoundError
from doujinmirror.service import DoujinService
from doujinmirror.store import ComicStore

BASE_URL = "https://doujindesu.tv/"


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class FakeBrowser:
    def __init__(self):
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeStorage:
    """Records uploads; paths listed in ``failing`` always raise."""

    def __init__(self, failing: Optional[Set[str]] = None):
        self.failing = set(failing or ())
        self.objects: Dict[str, bytes] = {}
        self.attempts: List[str] = []

    async def put(self, data: bytes, path: str) -> str:
        self.attempts.append(path)
        if path in self.failing:
            raise ConnectionError(f"upload of {path} refused")
        self.objects[path] = data
        return f"https://cdn.test/uploads/{path}"


class FakeScraper:
    def __init__(self):
        self.listing_pages: Dict[str, Tuple[List[dict], int]] = {}
        self.search_pages: Dict[Tuple[str, int], Tuple[List[dict], int]] = {}
        self.details: Dict[str, dict] = {}
        self.comics: Dict[str, List[str]] = {}
        self.images: Dict[str, bytes] = {}
        self.calls: List[Tuple[str, Any]] = []

    async def listing(self, page_number: str):
        self.calls.append(("listing", page_number))
        return self.listing_pages.get(page_number, ([], 1))

    async def search(self, query: str, page_number: int):
        self.calls.append(("search", (query, page_number)))
        return self.search_pages.get((query, page_number), ([], 1))

    async def detail(self, slug_or_url: str):
        self.calls.append(("detail", slug_or_url))
        if slug_or_url not in self.details:
            raise RuntimeError(f"no detail for {slug_or_url}")
        return self.details[slug_or_url]

    async def comic_images(self, slug: str):
        self.calls.append(("comic", slug))
        if slug not in self.comics:
            raise NotFoundError("Comic not found")
        return f"{BASE_URL}{slug}/", list(self.comics[slug])

    async def capture_image(self, url: str):
        self.calls.append(("capture", url))
        return url, self.images.get(url, b"\x89PNG fake")

    def count(self, kind: str) -> int:
        return sum(1 for name, _ in self.calls if name == kind)


def make_service(scraper, store, storage, *, fetch=None, cache=None) -> DoujinService:
    service = DoujinService(
        scraper,
        store,
        storage,
        cache or TTLCache(),
        None,
        base_url=BASE_URL,
        sleep=no_sleep,
    )

    async def default_fetch(url: str) -> bytes:
        return f"bytes of {url}".encode()

    service.fetch_image = fetch or default_fetch
    return service


@pytest.fixture
def store(tmp_path):
    return ComicStore(tmp_path / "test.db", sleep=no_sleep)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def scraper():
    return FakeScraper()


@pytest.fixture
def service(scraper, store, storage):
    return make_service(scraper, store, storage)
