# -*- coding: utf-8 -*-
from doujinmirror.ratelimit import RateLimiter


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_limit_applies_per_client_and_window():
    clock = Clock()
    limiter = RateLimiter(limit=3, window=60, clock=clock)
    assert [limiter.hit("10.0.0.1") for _ in range(4)] == [True, True, True, False]
    assert limiter.hit("10.0.0.2")
    clock.now += 61
    assert limiter.hit("10.0.0.1")


def test_stale_clients_are_pruned():
    clock = Clock()
    limiter = RateLimiter(limit=5, window=10, clock=clock)
    limiter.hit("a")
    limiter.hit("b")
    clock.now += 11
    limiter.hit("c")
    assert len(limiter) == 1
