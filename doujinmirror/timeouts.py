#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Scoped deadlines for outbound work.

A :class:`Deadline` is the cancellation handle shared by everything that
belongs to one logical operation (a single fetch, or a whole batch run).
It schedules its own trigger on the running loop and must be cleared on
every exit path; using it as an ``async with`` block does that.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from .errors import OperationAborted

LOG = logging.getLogger("doujinmirror.timeouts")

T = TypeVar("T")


class Deadline:
    def __init__(self, seconds: float, label: str = "operation"):
        self.seconds = float(seconds)
        self.label = label
        self._event = asyncio.Event()
        self._handle: Optional[asyncio.TimerHandle] = None

    def start(self) -> "Deadline":
        if self._handle is None and not self._event.is_set():
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.seconds, self._fire)
        return self

    def _fire(self) -> None:
        self._handle = None
        if not self._event.is_set():
            LOG.info("Deadline of %.0fs reached for %s", self.seconds, self.label)
            self._event.set()

    def abort(self) -> None:
        self.clear()
        self._event.set()

    def clear(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise OperationAborted(f"{self.label} aborted after {self.seconds:.0f}s")

    async def run(self, aw: Awaitable[T]) -> T:
        """Await *aw* unless the deadline fires first, then cancel it and raise."""
        self.raise_if_aborted()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        raise OperationAborted(f"{self.label} aborted after {self.seconds:.0f}s")

    async def __aenter__(self) -> "Deadline":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.clear()


async def with_timeout(aw: Awaitable[T], seconds: float, label: str = "operation") -> T:
    """Bound *aw* to *seconds*, always clearing the timer before returning."""
    async with Deadline(seconds, label) as deadline:
        return await deadline.run(aw)
