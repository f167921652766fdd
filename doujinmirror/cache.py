#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple

DEFAULT_TTL_SEC = 1800


class TTLCache:
    """In-memory key/value store where every entry expires after a fixed TTL."""

    def __init__(self, ttl: float = DEFAULT_TTL_SEC, clock: Callable[[], float] = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._next_prune = clock() + self.ttl

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return default
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        if now >= self._next_prune:
            self.prune(now)
        self._data[key] = (now + (self.ttl if ttl is None else ttl), value)

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._data)

    def prune(self, now: Optional[float] = None) -> int:
        """Drop expired entries; runs on its own from set() once per TTL."""
        now = self._clock() if now is None else now
        stale = [key for key, (expires_at, _) in self._data.items() if now >= expires_at]
        for key in stale:
            self._data.pop(key, None)
        self._next_prune = now + self.ttl
        return len(stale)

    def clear(self) -> None:
        self._data.clear()


_MISSING = object()
