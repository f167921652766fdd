# -*- coding: utf-8 -*-
import asyncio
import sqlite3
from unittest import mock

import pytest

from doujinmirror.errors import PersistenceError


def test_comic_upsert_is_idempotent(store):
    urls = ["https://cdn.test/a_1.jpg", "https://cdn.test/a_2.jpg"]

    async def scenario():
        assert await store.save_comic("a", "https://doujindesu.tv/a/", urls)
        assert await store.save_comic("a", "https://doujindesu.tv/a/", urls)
        return await store.get_comic("a")

    assert asyncio.run(scenario()) == urls
    assert store.count_comics() == 1
    assert store.comic_row("a")["total_images"] == 2


def test_empty_image_list_is_never_written(store):
    assert asyncio.run(store.save_comic("b", "https://doujindesu.tv/b/", [])) is False
    assert store.comic_row("b") is None
    assert asyncio.run(store.get_comic("b")) is None


def test_thumbnail_lookup_can_require_source(store):
    async def scenario():
        await store.save_thumbnail("proxy_x.jpg", "https://img/x.jpg", "https://cdn.test/proxy/proxy_x.jpg")
        return (
            await store.get_thumbnail("proxy_x.jpg"),
            await store.get_thumbnail("proxy_x.jpg", source_url="https://img/x.jpg"),
            await store.get_thumbnail("proxy_x.jpg", source_url="https://img/other.jpg"),
        )

    any_source, same, other = asyncio.run(scenario())
    assert any_source == same == "https://cdn.test/proxy/proxy_x.jpg"
    assert other is None


def test_lookup_degrades_to_absent_after_retries(store):
    broken = mock.Mock(side_effect=sqlite3.OperationalError("database is locked"))
    with mock.patch.object(store, "query_comic", broken):
        assert asyncio.run(store.get_comic("c")) is None
    assert broken.call_count == 3


def test_save_reports_failure_after_retries(store):
    broken = mock.Mock(side_effect=sqlite3.OperationalError("disk I/O error"))
    with mock.patch.object(store, "upsert_comic", broken):
        assert asyncio.run(store.save_comic("d", "u", ["https://cdn.test/d_1.jpg"])) is False
    assert broken.call_count == 3


def test_retry_exhaustion_raises_persistence_error(store):
    broken = mock.Mock(side_effect=sqlite3.OperationalError("database is locked"))

    async def scenario():
        return await store._retrying(
            "lookup of e", broken, "e", retries=1, base_delay=0
        )

    with pytest.raises(PersistenceError) as info:
        asyncio.run(scenario())
    assert isinstance(info.value.__cause__, sqlite3.OperationalError)
    assert "lookup of e" in str(info.value)
    assert broken.call_count == 2
