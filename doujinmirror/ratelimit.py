#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Tuple


class RateLimiter:
    """Fixed-window request counter per client address.

    Best effort only: counts are not shared between processes and the map
    is pruned lazily once per window.
    """

    def __init__(self, limit: int = 60, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.limit = int(limit)
        self.window = float(window)
        self._clock = clock
        self._hits: Dict[str, Tuple[int, float]] = {}
        self._next_prune = clock() + self.window

    def hit(self, client: str) -> bool:
        """Count one request for *client*; False once it is over the limit."""
        now = self._clock()
        if now >= self._next_prune:
            self.prune(now)
        entry = self._hits.get(client)
        if entry is None or now > entry[1]:
            self._hits[client] = (1, now + self.window)
            return True
        count = entry[0] + 1
        self._hits[client] = (count, entry[1])
        return count <= self.limit

    def prune(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        stale = [client for client, (_, reset_at) in self._hits.items() if now > reset_at]
        for client in stale:
            del self._hits[client]
        self._next_prune = now + self.window
        return len(stale)

    def __len__(self) -> int:
        return len(self._hits)
