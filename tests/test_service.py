# -*- coding: utf-8 -*-
import asyncio
import hashlib
from unittest import mock

import pytest
from conftest import FakeStorage, make_service

from doujinmirror.errors import InvalidRequest, NotFoundError, ScrapeError
from doujinmirror.service import WARN_EMPTY, WARN_PARTIAL, parse_int

ENTRIES = [{"title": f"T{n}", "link": f"t{n}"} for n in range(3)]


def test_parse_int_is_lenient():
    assert parse_int("3abc", 1) == 3
    assert parse_int("abc", 1) == 1
    assert parse_int("0", 1) == 1
    assert parse_int(None, 7) == 7


def test_listing_is_cached(service, scraper):
    scraper.listing_pages["2"] = (ENTRIES, 5)

    first = asyncio.run(service.listing("2"))
    second = asyncio.run(service.listing("2"))

    assert first == {"status": "success", "data": ENTRIES, "totalPages": 5, "source": "fresh"}
    assert second["source"] == "cache"
    assert second["data"] == ENTRIES
    assert scraper.count("listing") == 1


def test_listing_rejects_malformed_page(service):
    with pytest.raises(InvalidRequest):
        asyncio.run(service.listing("2/../../etc"))


def test_search_requires_query_and_caches(service, scraper):
    scraper.search_pages[("abc", 1)] = (ENTRIES[:1], 2)
    with pytest.raises(InvalidRequest):
        asyncio.run(service.search("", 1))

    fresh = asyncio.run(service.search("abc", "x"))
    cached = asyncio.run(service.search("abc", 1))
    assert fresh["cached"] is False and fresh["page"] == 1 and fresh["totalPages"] == 2
    assert cached["cached"] is True
    assert scraper.count("search") == 1


def test_get_comic_persists_partial_upload_with_warning(scraper, store):
    scraper.comics["foo"] = [f"https://img.src/foo/{n}.jpg" for n in range(1, 6)]
    storage = FakeStorage(failing={"DOUJINSHI/foo/foo_2.jpg"})
    service = make_service(scraper, store, storage)

    body = asyncio.run(service.get_comic("foo"))

    assert body["success"] is True
    assert body["source"] == "freshly scraped"
    assert body["warning"] == WARN_PARTIAL
    assert len(body["images"]) == 4
    row = store.comic_row("foo")
    assert row["total_images"] == 4
    assert row["image_url"].split(",") == body["images"]


def test_get_comic_prefers_database(service, scraper, store):
    store.upsert_comic("bar", "https://doujindesu.tv/bar/", ["https://cdn.test/bar_1.jpg"])
    body = asyncio.run(service.get_comic("/bar/"))
    assert body == {
        "success": True,
        "images": ["https://cdn.test/bar_1.jpg"],
        "cached": True,
        "source": "database",
    }
    assert scraper.count("comic") == 0


def test_zero_image_result_is_not_cached(scraper, store):
    scraper.comics["empty"] = ["https://img.src/e/1.jpg"]
    storage = FakeStorage(failing={"DOUJINSHI/empty/empty_1.jpg"})
    service = make_service(scraper, store, storage)

    first = asyncio.run(service.get_comic("empty"))
    asyncio.run(service.get_comic("empty"))

    assert first["images"] == []
    assert first["warning"] == WARN_EMPTY
    assert scraper.count("comic") == 2
    assert store.comic_row("empty") is None


def test_get_comic_not_found_and_missing_slug(service):
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_comic("nope"))
    with pytest.raises(InvalidRequest):
        asyncio.run(service.get_comic(""))


def test_get_comic_recovers_from_concurrent_ingest(service, scraper, store):
    async def racing(slug):
        store.upsert_comic(slug, "u", ["https://cdn.test/race_1.jpg"])
        raise RuntimeError("navigation failed")

    with mock.patch.object(scraper, "comic_images", racing):
        body = asyncio.run(service.get_comic("race"))
    assert body["source"] == "database (race condition recovery)"
    assert body["images"] == ["https://cdn.test/race_1.jpg"]


def test_rehost_uploads_once(service, scraper, storage, store):
    url = "https://img.src/covers/45673.jpg"
    first = asyncio.run(service.rehost(url))
    second = asyncio.run(service.rehost(url))
    assert first == second == "https://cdn.test/uploads/IMAGES/45673.jpg"
    assert scraper.count("capture") == 1
    assert store.query_thumbnail("45673.jpg", url) == first


def test_rehost_rejects_bad_urls(service):
    with pytest.raises(InvalidRequest):
        asyncio.run(service.rehost("not-a-url"))
    with pytest.raises(InvalidRequest):
        asyncio.run(service.rehost("https://img.src/"))


class FakeResponse:
    def __init__(self, status=200, content_type="image/jpeg", body=b"jpegdata"):
        self.status = status
        self.headers = {"Content-Type": content_type}
        self._body = body
        self.released = False
        self.content = self

    async def read(self):
        return self._body

    async def iter_chunked(self, _size):
        yield self._body

    def release(self):
        self.released = True


async def _drain(result):
    return b"".join([chunk async for chunk in result.body])


def test_proxy_streams_then_promotes(service, storage, store):
    url = "https://img.src/hot.jpg"
    responses = []

    async def opener(_url, _headers):
        resp = FakeResponse()
        responses.append(resp)
        return resp

    async def scenario():
        bodies = []
        with mock.patch.object(service, "_open", opener):
            for _ in range(4):
                result = await service.proxy(url)
                assert result.redirect_url is None
                bodies.append(await _drain(result))
            promoted = await service.proxy(url)
            again = await service.proxy(url)
        return bodies, promoted, again

    bodies, promoted, again = asyncio.run(scenario())
    digest = hashlib.md5(url.encode()).hexdigest()
    assert bodies == [b"jpegdata"] * 4
    assert promoted.redirect_url == f"https://cdn.test/uploads/proxy/proxy_{digest}.jpg"
    assert again.redirect_url == promoted.redirect_url
    assert len(responses) == 5
    assert all(r.released for r in responses)
    assert store.query_thumbnail(f"proxy_{digest}.jpg", url) == promoted.redirect_url


def test_proxy_rejects_non_images(service):
    async def opener(_url, _headers):
        return FakeResponse(content_type="text/html")

    with mock.patch.object(service, "_open", opener):
        with pytest.raises(ScrapeError) as info:
            asyncio.run(service.proxy("https://img.src/page.html"))
    assert "valid image" in str(info.value)
