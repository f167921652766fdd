# -*- coding: utf-8 -*-
from doujinmirror.cache import TTLCache


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = TTLCache(ttl=1800, clock=clock)
    cache.set("doujin_page_2", {"totalPages": 5})
    clock.now += 1799
    assert cache.get("doujin_page_2") == {"totalPages": 5}
    clock.now += 1
    assert cache.get("doujin_page_2") is None
    assert "doujin_page_2" not in cache


def test_per_entry_ttl_and_prune():
    clock = Clock()
    cache = TTLCache(ttl=60, clock=clock)
    cache.set("short", 1, ttl=5)
    cache.set("long", 2)
    clock.now += 10
    assert cache.prune() == 1
    assert len(cache) == 1
    assert cache.get("long") == 2
    assert cache.get("missing", 0) == 0


def test_writes_sweep_expired_entries_once_per_ttl():
    clock = Clock()
    cache = TTLCache(ttl=10, clock=clock)
    for n in range(100):
        cache.set(f"proxy-count-{n}", 1)
    clock.now += 5
    cache.set("fresh", 1)
    assert len(cache) == 101

    clock.now += 95
    for n in range(100):
        cache.set(f"search-q-{n}", {"results": []})
    assert len(cache) == 100
    assert cache.get("proxy-count-0") is None
